"""
etaharvest.etamodels.

Value types shared by the extraction, reconciliation, pagination and
orchestration layers.

- :class:`RowHandle` / :class:`NetworkItem`: the two record sources. Both
  are consumed by the same extraction interface and are distinguished by
  their ``kind`` tag.
- :class:`InvoiceRecord`: the canonical harvested unit.
- :class:`PageSnapshot`: one page view worth of records plus the pagination
  hints observed alongside it.
- :class:`PaginationState`: process-lifetime page/total bookkeeping.
- :class:`NetworkCacheEntry`: one cached listing response.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Literal


class ExtractionSource(str, Enum):
    NETWORK = "network"
    DOM = "dom"


@dataclass(frozen=True)
class RowHandle:
    """
    A detached snapshot of one rendered row.

    ``fields`` holds ``(declared_key, text)`` pairs read from attributes such
    as ``data-field`` or ``data-automation-key``; ``cells`` holds the cell
    texts in document order. The handle is immutable and hashable so row
    checks can be memoised.
    """

    index: int
    cells: tuple[str, ...] = ()
    fields: tuple[tuple[str, str], ...] = ()
    text: str = ""
    visible: bool = True
    links: tuple[str, ...] = ()
    kind: Literal["row"] = "row"

    @classmethod
    def from_snapshot(cls, index: int, raw: dict[str, Any]) -> RowHandle:
        return cls(
            index=index,
            cells=tuple(str(c or "") for c in raw.get("cells") or ()),
            fields=tuple(
                (str(k), str(v or "")) for k, v in raw.get("fields") or () if k
            ),
            text=str(raw.get("text") or ""),
            visible=bool(raw.get("visible", True)),
            links=tuple(str(h) for h in raw.get("links") or ()),
        )


@dataclass(frozen=True)
class NetworkItem:
    """One element of an intercepted listing payload."""

    index: int
    payload: dict[str, Any] = field(default_factory=dict, hash=False, compare=True)
    kind: Literal["network"] = "network"


RecordSource = RowHandle | NetworkItem


# Field name -> camelCase key used on the message channel.
WIRE_NAMES: dict[str, str] = {
    "serial_number": "serialNumber",
    "electronic_number": "electronicNumber",
    "internal_number": "internalNumber",
    "submission_id": "submissionId",
    "document_type": "documentType",
    "document_version": "documentVersion",
    "status": "status",
    "issue_date": "issueDate",
    "issue_time": "issueTime",
    "submission_date": "submissionDate",
    "invoice_currency": "invoiceCurrency",
    "total_amount": "totalAmount",
    "vat_amount": "vatAmount",
    "invoice_value": "invoiceValue",
    "tax_discount": "taxDiscount",
    "seller_name": "sellerName",
    "seller_tax_number": "sellerTaxNumber",
    "seller_address": "sellerAddress",
    "buyer_name": "buyerName",
    "buyer_tax_number": "buyerTaxNumber",
    "buyer_address": "buyerAddress",
    "purchase_order_ref": "purchaseOrderRef",
    "purchase_order_desc": "purchaseOrderDesc",
    "sales_order_ref": "salesOrderRef",
    "external_link": "externalLink",
    "source": "source",
}


@dataclass
class InvoiceRecord:
    """
    A normalized invoice.

    Every field is a string; unresolved fields are empty. ``invoice_value``
    is the net value and ``total_amount`` the gross total. When only the
    gross total was observed, ``vat_amount`` and ``invoice_value`` are
    back-computed from a fixed tax rate (see :mod:`etaharvest.etaextract`).
    """

    serial_number: str = ""
    electronic_number: str = ""
    internal_number: str = ""
    submission_id: str = ""
    document_type: str = ""
    document_version: str = ""
    status: str = ""
    issue_date: str = ""
    issue_time: str = ""
    submission_date: str = ""
    invoice_currency: str = ""
    total_amount: str = ""
    vat_amount: str = ""
    invoice_value: str = ""
    tax_discount: str = ""
    seller_name: str = ""
    seller_tax_number: str = ""
    seller_address: str = ""
    buyer_name: str = ""
    buyer_tax_number: str = ""
    buyer_address: str = ""
    purchase_order_ref: str = ""
    purchase_order_desc: str = ""
    sales_order_ref: str = ""
    external_link: str = ""
    source: str = ""

    def is_valid(self) -> bool:
        return bool(self.electronic_number or self.internal_number or self.total_amount)

    def identity_key(self) -> str:
        if self.electronic_number:
            return self.electronic_number
        return f"row:{self.internal_number}|{self.issue_date}|{self.total_amount}"

    def to_wire(self) -> dict[str, str]:
        return {WIRE_NAMES[k]: v for k, v in asdict(self).items()}


@dataclass
class InvoiceLineItem:
    item_code: str = ""
    description: str = ""
    unit_code: str = ""
    unit_name: str = ""
    quantity: str = ""
    unit_price: str = ""
    total_value: str = ""
    tax_amount: str = ""
    vat_amount: str = ""
    total_with_vat: str = ""

    def is_empty(self) -> bool:
        return not any(asdict(self).values())

    def to_wire(self) -> dict[str, str]:
        return {_camel(k): v for k, v in asdict(self).items()}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.title() for p in rest)


@dataclass
class PaginationHints:
    """Pagination facts observed with one page; ``None`` means not seen."""

    total_count: int | None = None
    current_page: int | None = None
    total_pages: int | None = None
    page_size: int | None = None

    def merged(self, other: PaginationHints) -> PaginationHints:
        """Return a copy where fields missing here are taken from ``other``."""
        return PaginationHints(
            total_count=self.total_count or other.total_count,
            current_page=self.current_page or other.current_page,
            total_pages=self.total_pages or other.total_pages,
            page_size=self.page_size or other.page_size,
        )


@dataclass
class PageSnapshot:
    records: list[InvoiceRecord]
    page_index: int
    source: ExtractionSource
    hints: PaginationHints = field(default_factory=PaginationHints)
    authoritative: bool = False

    def signature(self, leading: int = 3) -> str:
        """Cheap page fingerprint: the identity keys of the leading records."""
        return "|".join(r.identity_key() for r in self.records[:leading])

    def to_wire(self, state: PaginationState | None = None) -> dict[str, Any]:
        total = (state.total_count if state else 0) or self.hints.total_count
        return {
            "invoices": [r.to_wire() for r in self.records],
            "totalCount": total or len(self.records),
            "currentPage": (state.current_page if state else 0)
            or self.hints.current_page
            or self.page_index,
            "totalPages": (state.total_pages if state else 0)
            or self.hints.total_pages
            or 1,
            "source": self.source.value,
        }


@dataclass
class PaginationState:
    """
    Mutable page bookkeeping for one harvest session.

    Fields written by an authoritative source (an intercepted listing
    payload) are remembered in ``authoritative`` and are never overwritten
    by heuristics. A heuristic never lowers a positive ``total_count``.
    """

    current_page: int = 1
    total_pages: int = 0
    total_count: int = 0
    page_size: int = 0
    authoritative: set[str] = field(default_factory=set)

    def apply(self, hints: PaginationHints, *, authoritative: bool) -> None:
        for name in ("total_count", "current_page", "total_pages", "page_size"):
            value = getattr(hints, name)
            if not value or value < 0:
                continue
            if authoritative:
                setattr(self, name, value)
                self.authoritative.add(name)
                continue
            if name in self.authoritative:
                continue
            if name == "total_count" and value < self.total_count:
                continue
            if name == "page_size" and value < self.page_size:
                continue
            setattr(self, name, value)

    def note_rows(self, count: int) -> None:
        """Widen a heuristic page size to the largest page seen so far."""
        if "page_size" in self.authoritative:
            return
        self.page_size = max(self.page_size, count)

    def note_advanced(self) -> None:
        self.current_page += 1

    def resolve_total_pages(self, default_size: int, max_pages: int) -> int:
        if "total_pages" not in self.authoritative and self.total_count:
            size = self.page_size or default_size
            self.total_pages = math.ceil(self.total_count / size)
        if self.total_pages:
            self.total_pages = min(self.total_pages, max_pages)
        return self.total_pages


@dataclass
class NetworkCacheEntry:
    signature: str
    url: str
    payload: Any
    captured_at: float

    def age(self, now: float) -> float:
        return now - self.captured_at

    def is_fresh(self, now: float, window_s: float) -> bool:
        return self.age(now) <= window_s


@dataclass
class ProgressUpdate:
    current_page: int
    total_pages: int
    message: str

    @property
    def percentage(self) -> float:
        if self.total_pages <= 0:
            return 0.0
        return min(100.0, self.current_page / self.total_pages * 100)

    def to_wire(self) -> dict[str, Any]:
        return {
            "currentPage": self.current_page,
            "totalPages": self.total_pages,
            "percentage": self.percentage,
            "message": self.message,
        }


class StopReason(str, Enum):
    TOTAL_REACHED = "total_reached"
    LAST_PAGE = "last_page"
    EMPTY_PAGES = "empty_pages"
    STUCK = "stuck"
    NAVIGATION_FAILED = "navigation_failed"
    MAX_PAGES = "max_pages"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class HarvestResult:
    records: list[InvoiceRecord]
    requested_total: int
    pages_visited: int = 0
    stop_reason: StopReason | None = None
    success: bool = True
    error: str = ""

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": self.success,
            "data": [r.to_wire() for r in self.records],
            "totalProcessed": len(self.records),
            "expectedTotal": self.requested_total,
            "stopReason": self.stop_reason.value if self.stop_reason else None,
        }
        if not self.success:
            body["error"] = self.error
        return body
