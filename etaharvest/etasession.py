"""
etaharvest.etasession.

Utilities for persisting and restoring Playwright ``storage_state`` files
and helpers used to decide whether the portal page is an authenticated
view.

Helpers
-------
- state_file(cfg): return the expected storage_state Path for a given
    :class:`etaharvest.etaconfig.Config`.
- load_context(browser, cfg): attempt to create a new browser context
    using a saved storage_state if present.
- save_context(ctx, cfg): persist a BrowserContext's storage_state to
    disk (atomic via temporary file + replace).
- is_login_page(url): detect the portal's identity provider pages.
- is_logged_in(page, cfg): guard selector or URL heuristic.
- wait_until(pred, timeout_s): polling helper used while the user logs in.
"""

import contextlib
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from pathlib import Path

from playwright.sync_api import Browser, BrowserContext, Page
from playwright.sync_api import Error as PlaywrightError

from .etaconfig import Config

logger = logging.getLogger(__name__)

LOGIN_HOSTS = ("id.eta.gov.eg",)
LOGIN_PATHS = ("/account/login", "/connect/authorize")


def state_file(cfg: Config) -> Path:
    """
    Return the path where storage_state for ``cfg`` should be stored.

    ``cfg.session.path`` wins when set. Otherwise the file is
    ``~/.etaharvest/sessions/{site_host}/{user or 'default'}.json``.
    """
    if cfg.session.path:
        return cfg.session.path
    base = Path.home() / ".etaharvest" / "sessions"
    return base / cfg.session.site_host / f"{cfg.session.user or 'default'}.json"


def load_context(browser: Browser, cfg: Config) -> tuple[BrowserContext, bool]:
    """
    Attempt to open a browser context using the saved storage state.

    Returns ``(context, reused)``. A corrupt state file is renamed with the
    ``.bad`` suffix and a fresh context is returned.
    """
    spath = state_file(cfg)
    if cfg.session.reuse and spath.exists():
        try:
            return browser.new_context(storage_state=str(spath)), True
        except (PlaywrightError, OSError):
            with contextlib.suppress(OSError):
                spath.rename(spath.with_suffix(".bad"))
            logger.exception("Failed to load storage_state, starting fresh context")
    return browser.new_context(), False


def save_context(ctx: BrowserContext, cfg: Config) -> None:
    """Persist the context storage_state atomically (no-op when disabled)."""
    if not cfg.session.save_on_success:
        return
    spath = state_file(cfg)
    spath.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_path = tempfile.mkstemp(dir=spath.parent)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            json.dump(ctx.storage_state(), f)
    except (OSError, TypeError):
        with contextlib.suppress(OSError):
            os.close(tmp_fd)
        raise
    Path(tmp_path).replace(spath)
    logger.info("Saved session state to %s", spath)


def is_login_page(url: str) -> bool:
    url = (url or "").lower()
    return any(h in url for h in LOGIN_HOSTS) or any(p in url for p in LOGIN_PATHS)


def is_logged_in(page: Page, cfg: Config) -> bool:
    """
    Best-effort check that ``page`` shows the authenticated portal.

    A configured ``logged_in_guard`` selector is authoritative; otherwise the
    URL must be on the portal host and not on a login page.
    """
    guard = cfg.session.logged_in_guard
    if guard:
        try:
            return page.locator(guard).first.is_visible(timeout=1000)
        except PlaywrightError:
            return False
    url = page.url or ""
    return not is_login_page(url) and cfg.session.site_host in url


def wait_until(
    pred: Callable[[], bool],
    timeout_s: float,
    poll_ms: int = 250,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """
    Poll ``pred`` until it returns True or ``timeout_s`` elapses.

    ``sleep`` receives seconds; pass ``lambda s: page.wait_for_timeout(s * 1000)``
    so Playwright keeps dispatching page events while waiting. Exceptions
    raised by ``pred`` count as a False result.
    """
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        try:
            if pred():
                return True
        except Exception as exc:  # noqa: BLE001 - predicate may raise during navigation
            logger.debug("wait_until: predicate raised an exception: %s", exc)
        sleep(poll_ms / 1000)
    return False
