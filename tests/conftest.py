from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

import pytest

from etaharvest.etaconfig import Config, SelectorCandidate, SelectorSet
from etaharvest.etamodels import RowHandle

ROW_SELECTOR = "table tbody tr"
RESULTS_SELECTOR = ".results-count"
DETAIL_ROW_SELECTOR = ".invoice-lines tbody tr"


def electronic_id(n: int) -> str:
    return f"7QX3ZK9M0B1N2P4R5S6T7V8W{n:02d}"


def make_row(n: int, *, total: str = "114.00 EGP", visible: bool = True) -> dict[str, Any]:
    """Raw row snapshot as produced by the in-page row script."""
    cells = [
        electronic_id(n),
        f"INV-{n:04d}",
        "12/05/2024 10:30 AM",
        "13/05/2024",
        "Invoice",
        "1.0",
        "Valid",
        "100.00",
        "14.00",
        total,
    ]
    return {
        "cells": cells,
        "fields": [],
        "text": " ".join(cells),
        "visible": visible,
        "links": [],
    }


def make_page(
    start: int,
    count: int,
    *,
    results: str = "",
    pagination: str = "",
) -> dict[str, Any]:
    texts = {}
    if results:
        texts[RESULTS_SELECTOR] = results
    if pagination:
        texts[".pagination"] = pagination
    return {"rows": [make_row(n) for n in range(start, start + count)], "texts": texts}


def listing_payload(start: int, count: int, total: int, size: int = 10) -> dict[str, Any]:
    return {
        "result": [
            {
                "uuid": electronic_id(n),
                "internalId": f"INV-{n:04d}",
                "dateTimeIssued": "2024-05-12T10:30:00Z",
                "total": 114.0,
                "issuerName": "Acme Trading",
                "receiverName": "Nile Foods",
            }
            for n in range(start, start + count)
        ],
        "metadata": {"totalCount": total, "totalPages": -(-total // size)},
    }


class FakePortalDom:
    """
    In-memory stand-in for :class:`etaharvest.etadom.PortalDom`.

    ``pages`` is a list of ``{"rows": [...], "texts": {selector: text}}``.
    ``advance`` controls what a click on the next control does: ``"normal"``
    moves to the following page while one exists, ``"stuck"`` reports a
    click without changing the view, ``"dead"`` finds no usable control.
    """

    def __init__(
        self,
        pages: list[dict[str, Any]],
        *,
        advance: str = "normal",
        has_first: bool = False,
        on_navigate: Callable[[int], None] | None = None,
        details: dict[str, list[dict[str, Any]]] | None = None,
    ) -> None:
        self.pages = pages
        self.index = 0
        self.advance = advance
        self.has_first = has_first
        self.on_navigate = on_navigate
        self.details = details or {}
        self.in_details: str | None = None
        self.next_clicks = 0
        self.first_clicks = 0
        self.labelled_attempts: list[str] = []
        self.waits: list[int] = []
        self.backs = 0
        self.fail_on_page: int | None = None

    @property
    def current(self) -> dict[str, Any]:
        return self.pages[self.index]

    # ---- reading

    def collect_rows(self, cand: SelectorCandidate, _cells: str) -> list[RowHandle]:
        if self.fail_on_page is not None and self.index == self.fail_on_page:
            msg = "malformed row payload"
            raise RuntimeError(msg)
        if self.in_details is not None:
            if cand.selector != DETAIL_ROW_SELECTOR:
                return []
            raw = self.details.get(self.in_details, [])
        elif cand.selector == ROW_SELECTOR:
            raw = self.current.get("rows", [])
        else:
            raw = []
        return [RowHandle.from_snapshot(i, r) for i, r in enumerate(raw)]

    def first_text(self, selset: SelectorSet) -> str:
        texts = self.current.get("texts", {})
        for cand in selset.candidates:
            if cand.selector in texts:
                return texts[cand.selector]
        return ""

    def page_text(self) -> str:
        return self.current.get("body", "")

    def any_present(self, selset: SelectorSet) -> bool:
        return ROW_SELECTOR in selset.selectors and bool(self.current.get("rows"))

    # ---- acting

    def click(self, selset: SelectorSet) -> bool:
        selectors = selset.selectors
        if ".next-page" in selectors:
            return self._next()
        if ".pagination-first" in selectors:
            if not self.has_first:
                return False
            self.first_clicks += 1
            self._goto(0)
            return True
        for invoice_id in self.details:
            if any(invoice_id in s for s in selectors):
                self.in_details = invoice_id
                return True
        return False

    def click_labelled(self, selset: SelectorSet, pattern: re.Pattern[str]) -> bool:
        self.labelled_attempts.append(pattern.pattern)
        return False

    def _next(self) -> bool:
        if self.advance == "dead":
            return False
        self.next_clicks += 1
        if self.advance == "stuck":
            return True
        if self.index + 1 >= len(self.pages):
            return False
        self._goto(self.index + 1)
        return True

    def _goto(self, index: int) -> None:
        self.index = index
        if self.on_navigate is not None:
            self.on_navigate(index)

    def wait(self, ms: int) -> None:
        self.waits.append(ms)

    def go_back(self) -> None:
        self.backs += 1
        self.in_details = None


class FakeObserver:
    """Network observer whose payloads are pushed by the test."""

    def __init__(self) -> None:
        self.callbacks: list[Callable[[str, Any], None]] = []

    def subscribe(self, callback: Callable[[str, Any], None]) -> Callable[[], None]:
        self.callbacks.append(callback)

        def unsubscribe() -> None:
            self.callbacks.remove(callback)

        return unsubscribe

    def push(self, url: str, payload: Any) -> None:
        for cb in list(self.callbacks):
            cb(url, payload)


class FakeClock:
    def __init__(self, start: float = 1000.0, step: float = 0.01) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


@pytest.fixture
def cfg() -> Config:
    c = Config()
    c.pagination.settle_ms = 0
    c.pagination.pacing_ms = 0
    c.scan.ready_settle_ms = 0
    return c


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
