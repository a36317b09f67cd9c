"""
etaharvest.etanetwork.

Passive observation of the portal's own listing traffic.

The harvester never issues requests itself. A :class:`NetworkObserver`
pushes ``(url, payload)`` pairs for responses the page already made; the
session stores them in a :class:`NetworkCache` keyed by a normalized request
signature and only trusts entries younger than the freshness window.

Helpers
-------
- request_signature(url, volatile): stable cache key for a request URL.
- is_listing_url(url, cfg): host/path filter applied before parsing.
- looks_like_listing(payload): shape test for an invoice listing.
- listing_items(payload) / listing_hints(payload): items and pagination.
- detail_lines(payload): line items of a single-document payload.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Page, Response

from .etaconfig import NetworkConfig
from .etamodels import NetworkCacheEntry, PaginationHints

logger = logging.getLogger(__name__)

LIST_KEYS = ("result", "data", "documents", "items", "content", "records")
IDENTIFIER_KEYS = ("uuid", "electronicNumber", "documentId", "internalId", "internalNumber")
LINE_KEYS = ("invoiceLines", "lines", "invoiceLineItems")
META_KEYS = ("metadata", "pagination", "meta", "page")

PayloadCallback = Callable[[str, Any], None]


def request_signature(url: str, volatile: list[str] | tuple[str, ...] = ()) -> str:
    """
    Return ``url`` without volatile query parameters and with sorted query.

    Two requests for the same listing page that differ only by a
    cache-busting parameter map to the same signature.
    """
    parts = urlsplit(url)
    drop = {v.casefold() for v in volatile}
    query = sorted(
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k.casefold() not in drop
    )
    return urlunsplit(
        (parts.scheme, parts.netloc.lower(), parts.path, urlencode(query), ""),
    )


def is_listing_url(url: str, cfg: NetworkConfig) -> bool:
    parts = urlsplit(url or "")
    if cfg.host and cfg.host not in (parts.hostname or ""):
        return False
    path = parts.path.casefold()
    return any(token.casefold() in path for token in cfg.path_tokens)


def _has_identifier(item: Any) -> bool:
    if not isinstance(item, Mapping):
        return False
    keys = {str(k).casefold() for k in item}
    return any(k.casefold() in keys for k in IDENTIFIER_KEYS)


def listing_items(payload: Any) -> list[Any]:
    """Return the invoice list inside ``payload`` or ``[]``."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        for key in LIST_KEYS:
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return []


def looks_like_listing(payload: Any) -> bool:
    """
    Return True when ``payload`` is shaped like an invoice listing.

    A mapping qualifies when any of :data:`LIST_KEYS` holds a list; a bare
    list qualifies when its first element carries an identifier property.
    """
    if isinstance(payload, Mapping):
        return any(isinstance(payload.get(k), list) for k in LIST_KEYS)
    if isinstance(payload, list) and payload:
        return _has_identifier(payload[0])
    return False


def _int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        n = int(value)
    except (TypeError, ValueError):
        return None
    return n if n > 0 else None


def _first_int(sources: list[Mapping[str, Any]], keys: tuple[str, ...]) -> int | None:
    for src in sources:
        for key in keys:
            if (n := _int(src.get(key))) is not None:
                return n
    return None


def listing_hints(payload: Any) -> PaginationHints:
    """Read advertised pagination fields, top level first, then metadata."""
    if not isinstance(payload, Mapping):
        return PaginationHints()
    sources: list[Mapping[str, Any]] = [payload]
    sources.extend(
        payload[k] for k in META_KEYS if isinstance(payload.get(k), Mapping)
    )
    total = _first_int(sources, ("totalElements", "totalCount", "total", "count"))
    size = _first_int(sources, ("size", "pageSize", "perPage"))
    pages = _first_int(sources, ("totalPages", "pageCount"))
    current = _first_int(sources, ("currentPage", "page", "pageNumber", "pageNo"))
    if pages is None and total and size:
        pages = -(-total // size)
    return PaginationHints(
        total_count=total,
        current_page=current,
        total_pages=pages,
        page_size=size,
    )


def detail_lines(payload: Any) -> list[Mapping[str, Any]]:
    """Return the line items of a single-document payload or ``[]``."""
    if not isinstance(payload, Mapping):
        return []
    for node in (payload, payload.get("document"), payload.get("data")):
        if not isinstance(node, Mapping):
            continue
        for key in LINE_KEYS:
            lines = node.get(key)
            if isinstance(lines, list):
                return [line for line in lines if isinstance(line, Mapping)]
    return []


class NetworkCache:
    """
    Freshness-bounded store of intercepted payloads.

    ``clock`` returns seconds (monotonic); tests inject a fake clock.
    Expired entries are purged on every write and ignored on every read.
    """

    def __init__(
        self,
        cfg: NetworkConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cfg = cfg or NetworkConfig()
        self.clock = clock
        self._entries: dict[str, NetworkCacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def put(self, url: str, payload: Any) -> NetworkCacheEntry:
        sig = request_signature(url, self.cfg.volatile_params)
        entry = NetworkCacheEntry(sig, url, payload, self.clock())
        self._entries[sig] = entry
        self.purge()
        logger.debug("cached response %s (%d entries)", sig, len(self._entries))
        return entry

    def purge(self) -> None:
        now = self.clock()
        for sig in [
            s
            for s, e in self._entries.items()
            if not e.is_fresh(now, self.cfg.freshness_s)
        ]:
            del self._entries[sig]

    def fresh(self, since: float | None = None) -> list[NetworkCacheEntry]:
        """Fresh entries, newest first, optionally captured after ``since``."""
        now = self.clock()
        entries = [
            e
            for e in self._entries.values()
            if e.is_fresh(now, self.cfg.freshness_s)
            and (since is None or e.captured_at >= since)
        ]
        return sorted(entries, key=lambda e: e.captured_at, reverse=True)

    def latest_listing(self, since: float | None = None) -> NetworkCacheEntry | None:
        return next(
            (e for e in self.fresh(since) if looks_like_listing(e.payload)),
            None,
        )

    def find(self, predicate: Callable[[NetworkCacheEntry], bool]) -> NetworkCacheEntry | None:
        return next((e for e in self.fresh() if predicate(e)), None)

    def clear(self) -> None:
        self._entries.clear()


class NetworkObserver(Protocol):
    """
    Push-style source of intercepted payloads.

    ``subscribe`` registers ``callback(url, payload)`` and returns a
    zero-argument function that removes the subscription.
    """

    def subscribe(self, callback: PayloadCallback) -> Callable[[], None]: ...


class PlaywrightNetworkObserver:
    """
    Observe listing responses of a Playwright :class:`Page`.

    Only responses passing :func:`is_listing_url` are parsed; bodies that
    are not JSON are ignored.
    """

    def __init__(self, page: Page, cfg: NetworkConfig) -> None:
        self.page = page
        self.cfg = cfg

    def subscribe(self, callback: PayloadCallback) -> Callable[[], None]:
        def on_response(response: Response) -> None:
            url = response.url
            if not is_listing_url(url, self.cfg):
                return
            try:
                payload = response.json()
            except (PlaywrightError, ValueError) as exc:
                logger.debug("ignoring non-JSON response %s: %s", url, exc)
                return
            callback(url, payload)

        self.page.on("response", on_response)

        def unsubscribe() -> None:
            try:
                self.page.remove_listener("response", on_response)
            except (PlaywrightError, ValueError, KeyError):
                logger.debug("response listener already removed")

        return unsubscribe
