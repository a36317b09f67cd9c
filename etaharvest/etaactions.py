"""
etaharvest.etaactions.

Transport-agnostic request/response dispatcher.

Messages are plain mappings ``{"action": name, ...}``; replies are plain
mappings with a ``success`` flag. Progress updates of a running harvest are
pushed through ``notify`` as::

    {"action": "progressUpdate", "progress": {...}}

``run`` executes browser-touching work. It defaults to a direct call; the HTTP
adapter passes a function that hops onto the browser thread. ``ping`` and
``stopHarvest`` never go through ``run``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

from .etaharvester import HarvestInProgressError, HarvestOptions, InvoiceHarvester
from .etamodels import ProgressUpdate

logger = logging.getLogger(__name__)

T = TypeVar("T")
Reply = dict[str, Any]
Notify = Callable[[Reply], None]
Runner = Callable[[Callable[[], T]], T]

BUSY_MESSAGE = "Already processing"
UNKNOWN_MESSAGE = "Unknown action"


def _direct(fn: Callable[[], T]) -> T:
    return fn()


def progress_message(update: ProgressUpdate) -> Reply:
    return {"action": "progressUpdate", "progress": update.to_wire()}


class ActionHandler:
    """
    Map action names to harvester calls.

    ``harvester`` is a zero-argument factory so the browser can be opened
    lazily on the first action that needs it.
    """

    def __init__(
        self,
        harvester: Callable[[], InvoiceHarvester],
        notify: Notify | None = None,
        run: Runner | None = None,
    ) -> None:
        self._factory = harvester
        self._harvester: InvoiceHarvester | None = None
        self._flight = threading.Lock()
        self.notify = notify
        self.run = run or _direct
        self._routes: dict[str, Callable[[Mapping[str, Any]], Reply]] = {
            "ping": self._ping,
            "getInvoiceData": self._invoice_data,
            "getAllPagesData": self._all_pages,
            "getInvoiceDetails": self._details,
            "rescanPage": self._rescan,
            "stopHarvest": self._stop,
        }

    @property
    def busy(self) -> bool:
        if self._flight.locked():
            return True
        return self._harvester is not None and self._harvester.is_running

    def _get(self) -> InvoiceHarvester:
        if self._harvester is None:
            self._harvester = self._factory()
        return self._harvester

    def handle(self, message: Mapping[str, Any]) -> Reply:
        action = str(message.get("action") or "")
        route = self._routes.get(action)
        if route is None:
            logger.warning("Unknown action %r", action)
            return {"success": False, "error": UNKNOWN_MESSAGE}
        try:
            return route(message)
        except HarvestInProgressError:
            return {"success": False, "error": BUSY_MESSAGE}
        except Exception as exc:  # noqa: BLE001 - every failure becomes a reply
            logger.exception("Action %s failed", action)
            return {"success": False, "error": str(exc) or type(exc).__name__}

    # ---- routes

    def _ping(self, _message: Mapping[str, Any]) -> Reply:
        return {
            "success": True,
            "ready": not self.busy,
            "message": "Harvest in progress" if self.busy else "Ready",
        }

    def _guard(self) -> None:
        if self.busy:
            raise HarvestInProgressError(BUSY_MESSAGE)

    def _invoice_data(self, _message: Mapping[str, Any]) -> Reply:
        self._guard()
        data = self.run(lambda: self._get().wire_snapshot())
        return {"success": True, "data": data}

    def _rescan(self, _message: Mapping[str, Any]) -> Reply:
        self._guard()
        data = self.run(lambda: self._get().wire_snapshot(force_scan=True))
        return {"success": True, "data": data}

    def _all_pages(self, message: Mapping[str, Any]) -> Reply:
        options = HarvestOptions.from_wire(message.get("options"))
        if not self._flight.acquire(blocking=False):
            raise HarvestInProgressError(BUSY_MESSAGE)
        try:
            result = self.run(lambda: self._get().harvest_all(self._push, options))
        finally:
            self._flight.release()
        return result.to_wire()

    def _details(self, message: Mapping[str, Any]) -> Reply:
        invoice_id = str(message.get("invoiceId") or "")
        if not invoice_id:
            return {"success": True, "data": []}
        self._guard()
        lines = self.run(lambda: self._get().invoice_details(invoice_id))
        return {"success": True, "data": [line.to_wire() for line in lines]}

    def _stop(self, _message: Mapping[str, Any]) -> Reply:
        stopping = self._harvester.stop() if self._harvester is not None else False
        return {"success": True, "stopping": stopping}

    def _push(self, update: ProgressUpdate) -> None:
        if self.notify is not None:
            self.notify(progress_message(update))
