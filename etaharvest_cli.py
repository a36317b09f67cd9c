import argparse
import json
import logging
from pathlib import Path

import uvicorn

from etaharvest import BrowserRuntime, Config, HarvestOptions, load_config, records_frame
from etaharvest.web import create_app

logger = logging.getLogger(__name__)


def main() -> None:
    ap = argparse.ArgumentParser(description="Harvest invoices from the e-invoicing portal")
    ap.add_argument("--cfg", type=str, default="", help="Path to config JSON")
    ap.add_argument("--usr", help="Session username (for session keying)")
    ap.add_argument("--out", type=str, default="", help="Optional path to export JSON")
    ap.add_argument("--max-pages", type=int, default=0, help="Stop after N pages")
    ap.add_argument("--serve", action="store_true", help="Run the HTTP adapter instead")
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=8000)
    args = ap.parse_args()

    cfg = load_config(args.cfg) if args.cfg else Config()
    logging.basicConfig(level=getattr(logging, cfg.log_level.upper(), logging.INFO))
    if args.usr:
        cfg.session.user = args.usr

    if args.serve:
        uvicorn.run(create_app(cfg=cfg), host=args.host, port=args.port)
        return

    runtime = BrowserRuntime(cfg)
    try:
        if not runtime.open_portal():
            logger.error("Login was not completed; nothing harvested")
            return
        result = runtime.harvester().harvest_all(
            lambda u: logger.info("%.0f%% %s", u.percentage, u.message),
            HarvestOptions(max_pages=args.max_pages),
        )
    finally:
        runtime.close()

    dframe = records_frame(result.records)
    logger.info(
        "Invoices: %s | Expected: %s | Pages: %s | Stop: %s",
        len(result.records),
        result.requested_total,
        result.pages_visited,
        result.stop_reason.value if result.stop_reason else "?",
    )
    if not dframe.empty:
        cols = [
            c
            for c in ("serialNumber", "electronicNumber", "issueDate", "totalAmount")
            if c in dframe
        ]
        logger.info("\n%s", dframe[cols].head(10).to_string(index=False))

    if args.out:
        out = Path(args.out)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(
            json.dumps(result.to_wire(), ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
        logger.info("Saved JSON to: %s", out)


if __name__ == "__main__":
    main()
