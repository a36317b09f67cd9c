import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import TypeVar

from etaharvest.etaconfig import Config
from etaharvest.etaharvester import BrowserRuntime, InvoiceHarvester

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BrowserWorker:
    """
    Own the Playwright runtime on one dedicated thread.

    Playwright's sync objects are bound to the thread that created them, so
    every browser-touching call is submitted through :meth:`run`. The runtime
    is started lazily by :meth:`harvester`, which must itself be called on
    the worker (the action handler does so from inside ``run``).
    """

    def __init__(
        self,
        cfg: Config,
        runtime_factory: Callable[[Config], BrowserRuntime] = BrowserRuntime,
    ) -> None:
        self.cfg = cfg
        self._factory = runtime_factory
        self._runtime: BrowserRuntime | None = None
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="etaharvest-browser")
        self._lock = threading.Lock()

    def run(self, fn: Callable[[], T]) -> T:
        return self._pool.submit(fn).result()

    def harvester(self) -> InvoiceHarvester:
        with self._lock:
            if self._runtime is None:
                logger.info("Starting %s browser", self.cfg.browser)
                runtime = self._factory(self.cfg)
                if not runtime.open_portal():
                    runtime.close()
                    msg = "Portal login was not completed"
                    raise RuntimeError(msg)
                self._runtime = runtime
            return self._runtime.harvester()

    def _close_runtime(self) -> None:
        with self._lock:
            if self._runtime is not None:
                self._runtime.close()
                self._runtime = None

    def close(self) -> None:
        try:
            self._pool.submit(self._close_runtime).result()
        except RuntimeError:
            logger.exception("Error closing browser runtime")
        finally:
            self._pool.shutdown(wait=True)
