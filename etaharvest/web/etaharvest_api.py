import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from pydantic import BaseModel, ConfigDict

from etaharvest.etaactions import ActionHandler
from etaharvest.etaconfig import Config, load_config

from .etaharvest_log import BrokerLogHandler, broker
from .etaharvest_mgr import BrowserWorker
from .etaharvest_wsr import router

logger = logging.getLogger(__name__)

CONFIG_ENV = "ETAHARVEST_CONFIG"


class ActionRequest(BaseModel):
    """One request on the message channel; unknown keys are passed through."""

    model_config = ConfigDict(extra="allow")

    action: str
    options: dict[str, Any] | None = None
    invoiceId: str | None = None  # noqa: N815 - wire name


def config_from_env() -> Config:
    path = os.environ.get(CONFIG_ENV, "")
    if not path:
        return Config()
    logger.info("Loading config from %s", path)
    return load_config(path)


def create_app(
    handler: ActionHandler | None = None,
    cfg: Config | None = None,
) -> FastAPI:
    """
    Build the HTTP adapter.

    Without ``handler`` a :class:`BrowserWorker` is created from ``cfg``, or
    from the config named by ``ETAHARVEST_CONFIG`` when ``cfg`` is None. The
    browser itself starts on the first action that needs it and is closed on
    shutdown.
    """
    worker: BrowserWorker | None = None
    if handler is None:
        worker = BrowserWorker(cfg or config_from_env())
        handler = ActionHandler(worker.harvester, notify=broker.publish_json, run=worker.run)
    elif handler.notify is None:
        handler.notify = broker.publish_json

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        log_handler = BrokerLogHandler(broker)
        pkg_logger = logging.getLogger("etaharvest")
        pkg_logger.addHandler(log_handler)
        try:
            yield
        finally:
            pkg_logger.removeHandler(log_handler)
            if worker is not None:
                worker.close()

    app = FastAPI(title="etaharvest", lifespan=lifespan)
    app.state.handler = handler

    @app.post("/actions")
    def actions(body: ActionRequest) -> dict[str, Any]:
        return handler.handle(body.model_dump(exclude_none=True))

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", "busy": handler.busy}

    app.include_router(router)
    return app
