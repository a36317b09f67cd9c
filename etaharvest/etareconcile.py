"""
etaharvest.etareconcile.

Per-cycle choice between the two extraction channels.

A fresh listing payload from the network cache is preferred and its
advertised pagination is authoritative. Otherwise the rendered DOM is
scanned: the primary row selectors are tried in order, then the looser
fallback list, and the first selector yielding at least one visible row
carrying data wins. Pagination hints are then read from the page text.

The selector cascade (:func:`select_rows`) and the text parsers
(:func:`parse_pagination_text`, :func:`parse_results_count`) are pure and
are tested against fixture data without a browser.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import replace

from .etaconfig import ScanConfig, SelectorCandidate, SelectorSet
from .etadom import PortalDom
from .etaextract import (
    AMOUNT_CURRENCY_RE,
    IDENTIFIER_RE,
    FieldExtractor,
    ascii_digits,
    classify_token,
)
from .etamodels import (
    ExtractionSource,
    NetworkCacheEntry,
    NetworkItem,
    PageSnapshot,
    PaginationHints,
    RowHandle,
)
from .etanetwork import NetworkCache, listing_hints, listing_items

logger = logging.getLogger(__name__)

RESULTS_RE = re.compile(
    r"(?:Results|النتائج|نتيجة|عدد النتائج)\s*[:：]?\s*(\d[\d,]*)",
    re.IGNORECASE,
)
RANGE_RE = re.compile(
    r"(\d[\d,]*)\s*[-–—]\s*(\d[\d,]*)\s*(?:of|من)\s*(\d[\d,]*)",
    re.IGNORECASE,
)
PAGE_RE = re.compile(
    r"(?<!per\s)\b(?:Page|صفحة)\b\s*(\d+)(?:\s*(?:of|/|من)\s*(\d+))?",
    re.IGNORECASE,
)

RowCollector = Callable[[SelectorCandidate], list[RowHandle]]
RowCheck = Callable[[RowHandle], bool]


def _to_int(token: str) -> int:
    return int(token.replace(",", ""))


def parse_results_count(text: str) -> int | None:
    """Return N from ``Results: N`` style counters, or None."""
    m = RESULTS_RE.search(ascii_digits(text or ""))
    return _to_int(m.group(1)) if m else None


def parse_pagination_text(text: str) -> PaginationHints:
    """
    Parse pagination facts from a results counter or pagination region.

    Understands ``Results: N``, ``X–Y of Z`` (also ``من``) and
    ``Page N of M`` / ``صفحة N``. A range ending on the last record only
    yields the total: its width says nothing about the page size.
    """
    text = ascii_digits(text or "")
    hints = PaginationHints(total_count=parse_results_count(text))
    if m := RANGE_RE.search(text):
        start, end, total = (_to_int(g) for g in m.groups())
        hints.total_count = hints.total_count or total
        if start >= 1 and start <= end < total:
            hints.page_size = end - start + 1
            hints.current_page = (start - 1) // hints.page_size + 1
    if m := PAGE_RE.search(text):
        if hints.current_page is None:
            hints.current_page = int(m.group(1))
        if m.group(2):
            hints.total_pages = int(m.group(2))
    return hints


def is_visible(row: RowHandle) -> bool:
    return row.visible


def has_data(row: RowHandle) -> bool:
    """True when the row carries an identifier, an amount or a reference."""
    tokens = [c for c in row.cells if c] + [v for _, v in row.fields if v]
    for token in tokens:
        kind = classify_token(token)
        if kind in ("identifier", "amount"):
            return True
        if kind == "reference" and len(token.strip()) >= 4:
            return True
    text = ascii_digits(row.text)
    return bool(IDENTIFIER_RE.search(text) or AMOUNT_CURRENCY_RE.search(text))


def select_rows(
    collect: RowCollector,
    selsets: list[SelectorSet],
    accept: RowCheck,
) -> tuple[SelectorCandidate | None, list[RowHandle]]:
    """
    First-success selector cascade.

    Candidates of every set are tried in order; the first one with at least
    one accepted row wins and only its accepted rows are returned.
    """
    for selset in selsets:
        for cand in selset.candidates:
            rows = [r for r in collect(cand) if accept(r)]
            if rows:
                return cand, rows
    return None, []


class SourceReconciler:
    """
    Produce one :class:`PageSnapshot` per scan cycle.

    Row checks are memoised within one structural scan, where the primary
    and fallback selectors often match the same rows.
    """

    def __init__(
        self,
        dom: PortalDom,
        cache: NetworkCache,
        extractor: FieldExtractor,
        scan: ScanConfig,
    ) -> None:
        self.dom = dom
        self.cache = cache
        self.extractor = extractor
        self.scan = scan
        self._checked: dict[RowHandle, bool] = {}

    def acquire_page(
        self,
        page_index: int = 1,
        since: float | None = None,
        use_network: bool = True,
    ) -> PageSnapshot:
        entry = self.cache.latest_listing(since) if use_network else None
        if entry is not None:
            return self._from_network(entry, page_index)
        return self._from_dom(page_index)

    def _from_network(self, entry: NetworkCacheEntry, page_index: int) -> PageSnapshot:
        items = [i for i in listing_items(entry.payload) if isinstance(i, Mapping)]
        sources = [NetworkItem(i, dict(item)) for i, item in enumerate(items)]
        records = [r for r in self.extractor.extract_many(sources) if r.is_valid()]
        hints = listing_hints(entry.payload)
        logger.debug(
            "network snapshot from %s: %d/%d valid, hints=%s",
            entry.signature,
            len(records),
            len(sources),
            hints,
        )
        return PageSnapshot(
            records,
            page_index,
            ExtractionSource.NETWORK,
            hints,
            authoritative=True,
        )

    def _accept(self, row: RowHandle) -> bool:
        if row not in self._checked:
            self._checked[row] = is_visible(row) and has_data(row)
        return self._checked[row]

    def _from_dom(self, page_index: int) -> PageSnapshot:
        self._checked.clear()
        self.wait_for_content()
        cand, rows = select_rows(
            lambda c: self.dom.collect_rows(c, self.scan.cells),
            [self.scan.rows, self.scan.fallback_rows],
            self._accept,
        )
        rows = [replace(r, index=i) for i, r in enumerate(rows)]
        records = [r for r in self.extractor.extract_many(rows) if r.is_valid()]
        hints = self.read_hints()
        logger.debug(
            "dom snapshot via %s: %d/%d valid, hints=%s",
            cand.selector if cand else None,
            len(records),
            len(rows),
            hints,
        )
        return PageSnapshot(records, page_index, ExtractionSource.DOM, hints)

    def read_hints(self) -> PaginationHints:
        counter = self.dom.first_text(self.scan.results_text)
        region = self.dom.first_text(self.scan.pagination_region)
        hints = parse_pagination_text("\n".join(t for t in (counter, region) if t))
        if not hints.total_count:
            hints.total_count = parse_results_count(self.dom.page_text())
        return hints

    def wait_for_content(self) -> bool:
        """
        Poll for any primary row selector, up to the configured timeout.

        Returns False on timeout; the scan then proceeds anyway.
        """
        poll = max(1, self.scan.ready_poll_ms)
        for _ in range(max(1, self.scan.ready_timeout_ms // poll)):
            if self.dom.any_present(self.scan.rows):
                self.dom.wait(self.scan.ready_settle_ms)
                return True
            self.dom.wait(poll)
        logger.info(
            "rows not rendered after %d ms, scanning anyway",
            self.scan.ready_timeout_ms,
        )
        return False
