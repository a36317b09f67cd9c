"""
etaharvest.etaharvester.

Top-level harvest loop and the Playwright runtime that hosts it.

The public contract:

- ``InvoiceHarvester(dom, cfg, observer).harvest_all(progress, options)``
  -> :class:`~etaharvest.etamodels.HarvestResult`
- ``InvoiceHarvester.snapshot(force_scan)`` -> one
  :class:`~etaharvest.etamodels.PageSnapshot` of the current view
- ``InvoiceHarvester.invoice_details(invoice_id)`` -> line items
- ``BrowserRuntime(cfg)`` opens the portal (reusing the saved session) and
  builds a harvester bound to its page.

A harvest runs as a single flight: a second call while one is running raises
:class:`HarvestInProgressError`. Per-run state (network cache, pagination
state, page signatures) lives in a :class:`HarvestSession` built at the start
of the run and torn down at its end.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, replace
from typing import Any

import pandas as pd
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from .etaconfig import Config, SelectorSet
from .etadom import PortalDom
from .etaextract import FieldExtractor, extract_line_item
from .etamodels import (
    HarvestResult,
    InvoiceLineItem,
    InvoiceRecord,
    NetworkItem,
    PageSnapshot,
    PaginationState,
    ProgressUpdate,
    StopReason,
)
from .etanetwork import (
    NetworkCache,
    NetworkObserver,
    PlaywrightNetworkObserver,
    detail_lines,
)
from .etapaginate import PagerStatus, PaginationController
from .etareconcile import SourceReconciler
from .etasession import is_logged_in, load_context, save_context, state_file, wait_until

logger = logging.getLogger(__name__)

ProgressSink = Callable[[ProgressUpdate], None]


class HarvestInProgressError(RuntimeError):
    """Raised when a harvest is requested while another one is running."""


@dataclass
class HarvestOptions:
    """
    Per-run options.

    ``max_pages`` of 0 means the configured cap. ``start_from_first`` returns
    to page 1 before scanning; ``use_network`` allows intercepted payloads to
    be used instead of the structural scan.
    """

    max_pages: int = 0
    start_from_first: bool = True
    use_network: bool = True

    @classmethod
    def from_wire(cls, raw: Mapping[str, Any] | None) -> HarvestOptions:
        raw = raw or {}
        return cls(
            max_pages=int(raw.get("maxPages") or 0),
            start_from_first=bool(raw.get("startFromFirst", True)),
            use_network=bool(raw.get("useNetwork", True)),
        )


class RecordAccumulator:
    """Ordered, de-duplicated record store keyed by identity key."""

    def __init__(self) -> None:
        self.records: list[InvoiceRecord] = []
        self._seen: set[str] = set()

    def __len__(self) -> int:
        return len(self.records)

    def merge(self, records: Iterable[InvoiceRecord]) -> int:
        """Append unseen records and renumber serials; return how many were new."""
        added = 0
        for record in records:
            key = record.identity_key()
            if key in self._seen:
                continue
            self._seen.add(key)
            self.records.append(record)
            added += 1
        if added:
            self.records = [
                replace(r, serial_number=str(i))
                for i, r in enumerate(self.records, start=1)
            ]
        return added


class HarvestSession:
    """
    State owned by one harvest run.

    Subscribes the network cache to ``observer`` on construction;
    :meth:`close` unsubscribes and clears the cache.
    """

    def __init__(
        self,
        dom: PortalDom,
        cfg: Config,
        observer: NetworkObserver | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_pages: int = 0,
    ) -> None:
        pagination = cfg.pagination
        if max_pages > 0:
            pagination = replace(pagination, max_pages=max_pages)
        self.max_pages = pagination.max_pages
        self.cache = NetworkCache(cfg.network, clock=clock)
        self.state = PaginationState()
        self.extractor = FieldExtractor(cfg.extraction, max_workers=cfg.scan.max_workers)
        self.reconciler = SourceReconciler(dom, self.cache, self.extractor, cfg.scan)
        self.controller = PaginationController(dom, self.state, pagination)
        self.pages_visited = 0
        self._unsubscribe = observer.subscribe(self.cache.put) if observer else None

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.cache.clear()


class InvoiceHarvester:
    """
    Orchestrate snapshots and full harvests over one portal page.

    ``clock`` is used for navigation marks handed to the reconciler so that a
    payload captured before the last click is never taken for the new page.
    """

    def __init__(
        self,
        dom: PortalDom,
        cfg: Config,
        observer: NetworkObserver | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.dom = dom
        self.cfg = cfg
        self.observer = observer
        self.clock = clock
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        # Idle-time session used by snapshot() and invoice_details().
        self._idle = HarvestSession(dom, cfg, observer, clock)

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def stop(self) -> bool:
        """Request cooperative cancellation; honoured between page cycles."""
        if not self.is_running:
            return False
        logger.info("Stop requested")
        self._cancel.set()
        return True

    def close(self) -> None:
        self._idle.close()

    # ---- single page

    def snapshot(self, force_scan: bool = False) -> PageSnapshot:
        """
        Acquire the current page view.

        ``force_scan`` drops cached payloads and reads the rendered page.
        """
        if not self._lock.acquire(blocking=False):
            raise HarvestInProgressError("Already processing")
        try:
            session = self._idle
            if force_scan:
                session.cache.clear()
            snap = session.reconciler.acquire_page(
                session.state.current_page,
                use_network=not force_scan,
            )
            logger.info(
                "Snapshot: %d records from %s (total=%s)",
                len(snap.records),
                snap.source.value,
                snap.hints.total_count or "?",
            )
            return snap
        finally:
            self._lock.release()

    def wire_snapshot(self, force_scan: bool = False) -> dict[str, Any]:
        snap = self.snapshot(force_scan)
        ctrl = PaginationController(self.dom, PaginationState(), self.cfg.pagination)
        ctrl.locate(snap)
        return snap.to_wire(ctrl.state)

    # ---- full harvest

    def harvest_all(
        self,
        progress: ProgressSink | None = None,
        options: HarvestOptions | None = None,
    ) -> HarvestResult:
        """
        Walk every page and return the accumulated, de-duplicated records.

        Faults inside the loop are logged and returned as an unsuccessful
        result carrying the records collected so far.
        """
        options = options or HarvestOptions()
        if not self._lock.acquire(blocking=False):
            raise HarvestInProgressError("Already processing")
        self._cancel.clear()
        acc = RecordAccumulator()
        session: HarvestSession | None = None
        try:
            session = HarvestSession(
                self.dom,
                self.cfg,
                self.observer if options.use_network else None,
                self.clock,
                max_pages=options.max_pages,
            )
            reason = self._run(session, acc, progress, options)
        except Exception as exc:  # noqa: BLE001 - partial results are returned on any fault
            pages = session.pages_visited if session is not None else 0
            total = session.state.total_count if session is not None else 0
            logger.exception("Harvest failed after %d pages", pages)
            return HarvestResult(
                acc.records,
                total or len(acc),
                pages,
                StopReason.ERROR,
                success=False,
                error=str(exc) or type(exc).__name__,
            )
        finally:
            if session is not None:
                session.close()
            self._cancel.clear()
            self._lock.release()
        logger.info(
            "Harvest finished: %d records over %d pages (%s, expected %s)",
            len(acc),
            session.pages_visited,
            reason.value,
            session.state.total_count or "?",
        )
        return HarvestResult(
            acc.records,
            session.state.total_count or len(acc),
            session.pages_visited,
            reason,
        )

    def _run(
        self,
        session: HarvestSession,
        acc: RecordAccumulator,
        progress: ProgressSink | None,
        options: HarvestOptions,
    ) -> StopReason:
        ctrl = session.controller
        state = session.state
        pcfg = ctrl.cfg
        mark: float | None = None
        if options.start_from_first:
            mark = self.clock()
            ctrl.first_page()
        empty_pages = 0

        while True:
            if self._cancel.is_set():
                return StopReason.CANCELLED
            if session.pages_visited >= session.max_pages:
                return StopReason.MAX_PAGES

            snap = session.reconciler.acquire_page(
                state.current_page,
                since=mark,
                use_network=options.use_network,
            )
            session.pages_visited += 1
            ctrl.locate(snap)
            added = acc.merge(snap.records)
            if snap.records:
                empty_pages = 0
                ctrl.observe(snap.signature())
            else:
                empty_pages += 1
            logger.info(
                "Page %d/%s via %s: %d rows, %d new, %d total",
                state.current_page,
                state.total_pages or "?",
                snap.source.value,
                len(snap.records),
                added,
                len(acc),
            )
            self._emit(
                progress,
                ProgressUpdate(
                    state.current_page,
                    state.total_pages,
                    f"Processed page {state.current_page}: {len(acc)} invoices",
                ),
            )

            if reason := ctrl.check_exhausted(len(acc)):
                return reason
            if empty_pages >= pcfg.max_empty_pages:
                return StopReason.EMPTY_PAGES
            if ctrl.status is PagerStatus.STUCK:
                return StopReason.STUCK

            mark = self.clock()
            if not ctrl.next_page():
                return StopReason.NAVIGATION_FAILED
            self.dom.wait(pcfg.pacing_ms)

    def _emit(self, progress: ProgressSink | None, update: ProgressUpdate) -> None:
        if progress is None:
            return
        try:
            progress(update)
        except Exception as exc:  # noqa: BLE001 - a broken observer must not end the run
            logger.warning("progress sink failed: %s", exc)

    # ---- details

    def invoice_details(self, invoice_id: str) -> list[InvoiceLineItem]:
        """
        Best-effort line items of one invoice.

        A fresh cached details payload for ``invoice_id`` is used first;
        otherwise the details view is opened, read (payload or table) and
        left again. Returns ``[]`` when nothing can be read.
        """
        if not invoice_id:
            return []
        if not self._lock.acquire(blocking=False):
            raise HarvestInProgressError("Already processing")
        try:
            return self._details(invoice_id)
        except (PlaywrightError, PlaywrightTimeoutError, ValueError, TypeError) as exc:
            logger.warning("Details for %s unavailable: %s", invoice_id, exc)
            return []
        finally:
            self._lock.release()

    def _cached_lines(self, invoice_id: str) -> list[InvoiceLineItem]:
        entry = self._idle.cache.find(
            lambda e: invoice_id in e.url and bool(detail_lines(e.payload)),
        )
        if entry is None:
            return []
        lines = [
            extract_line_item(NetworkItem(i, dict(line)))
            for i, line in enumerate(detail_lines(entry.payload))
        ]
        return [line for line in lines if not line.is_empty()]

    def _details(self, invoice_id: str) -> list[InvoiceLineItem]:
        if lines := self._cached_lines(invoice_id):
            return lines
        scan = self.cfg.scan
        link = scan.details_link.format(invoice_id=invoice_id)
        if not self.dom.click(SelectorSet.of(link)):
            logger.info("No details link for %s", invoice_id)
            return []
        try:
            self.dom.wait(self.cfg.pagination.settle_ms)
            if lines := self._cached_lines(invoice_id):
                return lines
            for cand in scan.details_rows.candidates:
                rows = [r for r in self.dom.collect_rows(cand, scan.cells) if r.visible]
                lines = [line for line in map(extract_line_item, rows) if not line.is_empty()]
                if lines:
                    return lines
            return []
        finally:
            self.dom.go_back()
            self.dom.wait(self.cfg.pagination.settle_ms)


def records_frame(records: list[InvoiceRecord]) -> pd.DataFrame:
    """Tabulate records with wire (camelCase) column names."""
    if not records:
        return pd.DataFrame()
    return pd.DataFrame([r.to_wire() for r in records])


# ----------------------------
# Browser runtime
# ----------------------------


class BrowserRuntime:
    """
    Manage the Playwright lifecycle around the portal page.

    Responsibilities:

    - start Playwright and launch the configured browser, headed on the
      first run so the user can log in manually
    - reuse or persist storage_state per :class:`SessionConfig`
    - wait for the logged-in guard, then hand out an
      :class:`InvoiceHarvester` bound to the page.
    """

    def __init__(self, cfg: Config) -> None:
        self.cfg = cfg
        self._play = sync_playwright().start()

        session_exists = bool(cfg.session.reuse and state_file(cfg).exists())
        headless = cfg.headless
        if not session_exists and cfg.session.headed_on_first_run:
            headless = False
            logger.info("No saved session; launching headed browser for login")

        browser_type = getattr(self._play, cfg.browser)
        self.browser = browser_type.launch(headless=headless)
        self.context, self._state_reused = load_context(self.browser, cfg)
        self.page = self.context.new_page()
        self._harvester: InvoiceHarvester | None = None

    def open_portal(self) -> bool:
        """
        Navigate to the documents view and wait for an authenticated page.

        Saves the storage state after a fresh login. Returns False when the
        login wait timed out.
        """
        self.page.goto(self.cfg.base_url, wait_until="domcontentloaded")
        if is_logged_in(self.page, self.cfg):
            return True
        logger.info(
            "Waiting up to %ss for login at %s",
            self.cfg.session.auth_timeout_s,
            self.page.url,
        )
        ok = wait_until(
            lambda: is_logged_in(self.page, self.cfg),
            self.cfg.session.auth_timeout_s,
            sleep=lambda s: self.page.wait_for_timeout(s * 1000),
        )
        if not ok:
            logger.warning("Login not detected within %ss", self.cfg.session.auth_timeout_s)
            return False
        if not self._state_reused:
            save_context(self.context, self.cfg)
        if self.cfg.base_url not in self.page.url:
            self.page.goto(self.cfg.base_url, wait_until="domcontentloaded")
        return True

    def harvester(self) -> InvoiceHarvester:
        if self._harvester is None:
            self._harvester = InvoiceHarvester(
                PortalDom(self.page),
                self.cfg,
                PlaywrightNetworkObserver(self.page, self.cfg.network),
            )
        return self._harvester

    def close(self) -> None:
        """Shut down the browser context and stop the driver."""
        try:
            if self._harvester is not None:
                self._harvester.close()
            self.context.close()
            self.browser.close()
        finally:
            self._play.stop()
