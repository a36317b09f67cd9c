"""
etaharvest.etaextract.

Field extraction: turns one :class:`~etaharvest.etamodels.RowHandle` or
:class:`~etaharvest.etamodels.NetworkItem` into an
:class:`~etaharvest.etamodels.InvoiceRecord`.

Three ordered strategies run over the source, each filling only the fields
that are still empty:

1. keyed attributes: declared DOM field keys or payload properties,
   matched through :data:`FIELD_SYNONYMS`;
2. positional: a fixed window of cells/properties classified by shape
   (identifier, date, amount, version, status, document type, reference);
3. free text: regular expressions over the whole record text.

Extraction never raises. Missing fields stay empty and validity is judged by
the caller. The extractor is a pure function of its input, so repeated calls
return identical records and rows may be processed concurrently.

Amount derivation
-----------------
When a gross total is known but VAT is not, VAT and net value are
back-computed with a single fixed rate ``r``::

    tax = gross * r / (1 + r)
    net = gross - tax

This is an approximation: mixed-rate or zero-rated invoices cannot be
detected from a listing and will be split incorrectly.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import fields
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from .etaconfig import ExtractionConfig
from .etamodels import (
    ExtractionSource,
    InvoiceLineItem,
    InvoiceRecord,
    NetworkItem,
    RecordSource,
    RowHandle,
)

logger = logging.getLogger(__name__)

_DIGITS = str.maketrans("٠١٢٣٤٥٦٧٨٩٫٬", "0123456789.,")
_CENT = Decimal("0.01")

_CURRENCIES = r"EGP|USD|EUR|GBP|SAR|AED|ج\.\s?م\.?|جنيه"
IDENTIFIER_RE = re.compile(r"(?<![A-Z0-9])[A-Z0-9]{20,30}(?![A-Z0-9])")
DATE_RE = re.compile(
    r"(?<!\d)(\d{1,2}/\d{1,2}/\d{4})"
    r"(?:[ T,]+(\d{1,2}:\d{2}(?::\d{2})?(?:\s*[AaPp][Mm])?))?",
)
ISO_DATE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})(?:[T ](\d{2}:\d{2}(?::\d{2})?))?")
AMOUNT_CURRENCY_RE = re.compile(rf"(-?\d[\d,]*(?:\.\d+)?)\s*({_CURRENCIES})")
CURRENCY_RE = re.compile(rf"{_CURRENCIES}|[$€£]")
NUMERIC_RE = re.compile(r"^-?(?:\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+\.\d{1,4})$")
VERSION_RE = re.compile(r"^v?\d{1,2}\.\d$")
REFERENCE_RE = re.compile(r"^(?=\S*\d)[A-Za-z0-9][\w\-/.#]{0,29}$")
INTERNAL_LABEL_RE = re.compile(
    r"(?:Internal\s*(?:ID|No\.?|Number)|الرقم الداخلي)\s*[:#]?\s*([\w\-/]+)",
    re.IGNORECASE,
)

CURRENCY_ALIASES = {
    "ج.م": "EGP",
    "ج. م": "EGP",
    "ج.م.": "EGP",
    "جنيه": "EGP",
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
}

STATUS_WORDS = frozenset(
    w.casefold()
    for w in (
        "Valid",
        "Invalid",
        "Rejected",
        "Cancelled",
        "Canceled",
        "Submitted",
        "Pending",
        "صالحة",
        "صالح",
        "غير صالحة",
        "مرفوضة",
        "ملغاة",
        "ملغي",
        "مقدمة",
    )
)

DOCUMENT_TYPE_WORDS = frozenset(
    w.casefold()
    for w in (
        "Invoice",
        "Credit Note",
        "Debit Note",
        "Export Invoice",
        "فاتورة",
        "إشعار دائن",
        "إشعار مدين",
        "اشعار دائن",
        "اشعار مدين",
    )
)

# Target field -> source keys, most specific first. Dotted keys address
# nested objects (``seller.name`` -> payload["seller"]["name"]).
FIELD_SYNONYMS: dict[str, tuple[str, ...]] = {
    "electronic_number": ("electronicNumber", "uuid", "documentUUID", "documentId"),
    "internal_number": ("internalNumber", "internalId", "referenceNumber"),
    "submission_id": ("submissionId", "submissionUUID", "longId"),
    "document_type": (
        "documentType",
        "typeName",
        "documentTypeNamePrimaryLang",
        "type",
    ),
    "document_version": ("documentVersion", "typeVersionName", "version"),
    "status": ("status", "state", "documentStatus"),
    "issue_date": ("issueDate", "dateTimeIssued", "createdDate"),
    "submission_date": ("submissionDate", "dateTimeReceived", "submittedDate"),
    "invoice_currency": ("invoiceCurrency", "currency", "currencyCode"),
    "total_amount": ("totalAmount", "totalSalesAmount", "total"),
    "vat_amount": ("vatAmount", "taxAmount", "vat", "totalTax"),
    "invoice_value": ("invoiceValue", "netAmount", "amount", "netTotal"),
    "tax_discount": ("taxDiscount", "discount", "totalDiscount"),
    "seller_name": ("sellerName", "issuerName", "seller.name", "issuer.name"),
    "seller_tax_number": (
        "sellerTaxNumber",
        "issuerId",
        "seller.taxNumber",
        "issuer.id",
    ),
    "seller_address": ("sellerAddress", "seller.address", "issuer.address"),
    "buyer_name": ("buyerName", "receiverName", "buyer.name", "receiver.name"),
    "buyer_tax_number": (
        "buyerTaxNumber",
        "receiverId",
        "buyer.taxNumber",
        "receiver.id",
    ),
    "buyer_address": ("buyerAddress", "buyer.address", "receiver.address"),
    "purchase_order_ref": (
        "purchaseOrderRef",
        "poReference",
        "purchaseOrderReference",
    ),
    "purchase_order_desc": (
        "purchaseOrderDesc",
        "poDescription",
        "purchaseOrderDescription",
    ),
    "sales_order_ref": ("salesOrderRef", "soReference", "salesOrderReference"),
}

LINE_SYNONYMS: dict[str, tuple[str, ...]] = {
    "item_code": ("itemCode", "itemPrimaryCode", "internalCode", "code"),
    "description": ("description", "itemPrimaryName", "itemDescription", "name"),
    "unit_code": ("unitType", "unitCode"),
    "unit_name": ("unitName", "unitTypeName", "unitTypeNamePrimaryLang"),
    "quantity": ("quantity", "qty"),
    "unit_price": ("unitPrice", "unitValue.amountEGP", "unitValue.amountSold"),
    "total_value": ("salesTotal", "netTotal", "totalValue"),
    "tax_amount": ("taxAmount", "totalTaxableFees"),
    "vat_amount": ("vatAmount",),
    "total_with_vat": ("totalWithVat", "total", "totalAmount"),
}

LINE_POSITIONS = (
    "item_code",
    "description",
    "unit_code",
    "quantity",
    "unit_price",
    "total_value",
    "vat_amount",
    "total_with_vat",
)

AMOUNT_FIELDS = ("total_amount", "vat_amount", "invoice_value", "tax_discount")
RECORD_FIELDS = tuple(f.name for f in fields(InvoiceRecord))

Strategy = Callable[[RecordSource, dict[str, str], ExtractionConfig], None]


# ----------------------------
# Token helpers
# ----------------------------


def _norm_key(key: str) -> str:
    return re.sub(r"[^0-9a-z]", "", key.casefold())


def ascii_digits(text: str) -> str:
    return text.translate(_DIGITS)


def _text(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, Mapping):
        return ", ".join(t for t in (_text(v) for v in value.values()) if t)
    return ""


def _lookup(payload: Mapping[str, Any], path: str) -> Any:
    node: Any = payload
    for part in path.split("."):
        if not isinstance(node, Mapping):
            return None
        wanted = _norm_key(part)
        node = next(
            (v for k, v in node.items() if _norm_key(str(k)) == wanted),
            None,
        )
    return node


def _fill(values: dict[str, str], name: str, value: str) -> None:
    if value and not values.get(name):
        values[name] = value


def classify_token(token: str) -> str:
    """
    Classify a single cell/property value by its shape.

    Returns one of ``identifier``, ``date``, ``version``, ``amount``,
    ``status``, ``document_type``, ``reference`` or ``text``.
    """
    t = ascii_digits(token.strip())
    if not t:
        return "text"
    if IDENTIFIER_RE.fullmatch(t):
        return "identifier"
    if DATE_RE.fullmatch(t) or ISO_DATE_RE.fullmatch(t.rstrip("Z")):
        return "date"
    if VERSION_RE.fullmatch(t):
        return "version"
    if (CURRENCY_RE.search(t) and re.search(r"\d", t)) or NUMERIC_RE.fullmatch(t):
        return "amount"
    folded = t.casefold()
    if folded in STATUS_WORDS:
        return "status"
    if folded in DOCUMENT_TYPE_WORDS:
        return "document_type"
    if REFERENCE_RE.fullmatch(t):
        return "reference"
    return "text"


def clean_amount(token: str) -> str:
    """Strip currency markers, whitespace and thousands separators."""
    t = CURRENCY_RE.sub("", ascii_digits(token or "")).strip()
    t = re.sub(r"\s+", "", t).replace(",", "")
    try:
        Decimal(t)
    except InvalidOperation:
        return (token or "").strip()
    return t


def parse_amount(token: str) -> Decimal | None:
    if not token:
        return None
    try:
        return Decimal(clean_amount(token))
    except InvalidOperation:
        return None


def currency_of(token: str) -> str:
    m = CURRENCY_RE.search(token or "")
    if not m:
        return ""
    marker = m.group(0)
    return CURRENCY_ALIASES.get(marker, marker)


def split_datetime(value: str) -> tuple[str, str]:
    """Split ``"12/05/2024 10:31 AM"`` or ISO ``"2024-05-12T10:31:00Z"``."""
    v = ascii_digits(value.strip())
    if m := DATE_RE.match(v):
        return m.group(1), (m.group(2) or "").strip()
    if m := ISO_DATE_RE.match(v):
        return m.group(1), m.group(2) or ""
    return value.strip(), ""


def derive_amounts(values: dict[str, str], tax_rate: float) -> None:
    """
    Back-compute VAT and net value from the gross total when missing.

    Only fields that are empty are written. The result always satisfies
    ``vat + net == gross`` to the cent.
    """
    gross = parse_amount(values.get("total_amount", ""))
    if gross is None:
        return
    tax = parse_amount(values.get("vat_amount", ""))
    net = parse_amount(values.get("invoice_value", ""))
    if tax is None and net is not None:
        tax = gross - net
    elif tax is None:
        rate = Decimal(str(tax_rate))
        tax = gross * rate / (1 + rate)
    tax = tax.quantize(_CENT, rounding=ROUND_HALF_UP)
    _fill(values, "vat_amount", str(tax))
    _fill(values, "invoice_value", str((gross - tax).quantize(_CENT, ROUND_HALF_UP)))


def share_link(electronic: str, submission: str, base: str) -> str:
    """
    Build the public share link of an invoice.

    The link is a deterministic function of the two identifiers: the
    submission id is used when it is longer than 10 characters, otherwise
    the electronic number reduced to 26 alphanumerics stands in for it.
    """
    if not electronic:
        return ""
    if len(submission) > 10:
        share_id = submission
    else:
        share_id = re.sub(r"[^A-Za-z0-9]", "", electronic)[:26]
    return f"{base.rstrip('/')}/documents/{electronic}/share/{share_id}"


# ----------------------------
# Strategies
# ----------------------------


def _keyed_index(source: RecordSource) -> Mapping[str, Any]:
    if isinstance(source, NetworkItem):
        return source.payload
    index: dict[str, str] = {}
    for key, text in source.fields:
        index.setdefault(key, text)
    return index


def keyed_strategy(
    source: RecordSource,
    values: dict[str, str],
    _cfg: ExtractionConfig,
) -> None:
    index = _keyed_index(source)
    if not index:
        return
    for name, synonyms in FIELD_SYNONYMS.items():
        if values.get(name):
            continue
        for key in synonyms:
            value = _text(_lookup(index, key))
            if value:
                values[name] = value
                break


def _window(source: RecordSource, size: int) -> list[str]:
    if isinstance(source, RowHandle):
        return list(source.cells[:size])
    scalars = [
        v for v in source.payload.values() if not isinstance(v, (Mapping, list))
    ]
    return [_text(v) for v in scalars[:size]]


def positional_strategy(
    source: RecordSource,
    values: dict[str, str],
    cfg: ExtractionConfig,
) -> None:
    buckets: dict[str, list[str]] = {}
    for token in _window(source, cfg.positional_window):
        token = token.strip()
        if token:
            buckets.setdefault(classify_token(token), []).append(token)

    if ids := buckets.get("identifier"):
        _fill(values, "electronic_number", ids[0])
    if dates := buckets.get("date"):
        _fill(values, "issue_date", dates[0])
        if len(dates) > 1:
            _fill(values, "submission_date", split_datetime(dates[1])[0])
    if refs := buckets.get("reference"):
        _fill(values, "internal_number", refs[0])
    if versions := buckets.get("version"):
        _fill(values, "document_version", versions[0])
    if statuses := buckets.get("status"):
        _fill(values, "status", statuses[0])
    if types := buckets.get("document_type"):
        _fill(values, "document_type", types[0])

    amounts = buckets.get("amount") or []
    if amounts:
        _fill(values, "total_amount", amounts[-1])
        _fill(values, "invoice_currency", currency_of(amounts[-1]))
    if len(amounts) >= 2:
        _fill(values, "invoice_value", amounts[0])
    if len(amounts) >= 3:
        _fill(values, "vat_amount", amounts[1])


def _full_text(source: RecordSource) -> str:
    if isinstance(source, RowHandle):
        return source.text or " ".join(source.cells)
    return " ".join(
        _text(v) for v in source.payload.values() if not isinstance(v, list)
    )


def free_text_strategy(
    source: RecordSource,
    values: dict[str, str],
    _cfg: ExtractionConfig,
) -> None:
    text = ascii_digits(_full_text(source))
    if not text:
        return
    if m := IDENTIFIER_RE.search(text):
        _fill(values, "electronic_number", m.group(0))
    dates = DATE_RE.findall(text)
    if dates:
        date, time = dates[0]
        _fill(values, "issue_date", f"{date} {time}".strip())
    if len(dates) > 1:
        _fill(values, "submission_date", dates[1][0])
    amounts = AMOUNT_CURRENCY_RE.findall(text)
    if amounts:
        amount, currency = amounts[-1]
        _fill(values, "total_amount", amount)
        _fill(values, "invoice_currency", CURRENCY_ALIASES.get(currency, currency))
    if m := INTERNAL_LABEL_RE.search(text):
        _fill(values, "internal_number", m.group(1))


STRATEGIES: tuple[Strategy, ...] = (
    keyed_strategy,
    positional_strategy,
    free_text_strategy,
)


def _is_valid(values: dict[str, str]) -> bool:
    return bool(
        values["electronic_number"] or values["internal_number"] or values["total_amount"],
    )


def _normalize(values: dict[str, str]) -> None:
    for name in AMOUNT_FIELDS:
        if values[name]:
            _fill(values, "invoice_currency", currency_of(values[name]))
            values[name] = clean_amount(values[name])
    if values["issue_date"]:
        date, time = split_datetime(values["issue_date"])
        values["issue_date"] = date
        _fill(values, "issue_time", time)
    if values["submission_date"]:
        values["submission_date"] = split_datetime(values["submission_date"])[0]
    currency = values["invoice_currency"]
    values["invoice_currency"] = CURRENCY_ALIASES.get(currency, currency)


# ----------------------------
# Extractor
# ----------------------------


class FieldExtractor:
    """
    Resolve invoice fields from rows or payload items.

    ``max_workers`` bounds the thread pool used by :meth:`extract_many`.
    """

    def __init__(
        self,
        cfg: ExtractionConfig | None = None,
        max_workers: int = 4,
    ) -> None:
        self.cfg = cfg or ExtractionConfig()
        self.max_workers = max(1, max_workers)

    def extract(self, source: RecordSource) -> InvoiceRecord:
        values = dict.fromkeys(RECORD_FIELDS, "")
        for strategy in STRATEGIES:
            # Payload items only fall back to shape heuristics when their
            # named properties did not yield a valid record.
            if (
                isinstance(source, NetworkItem)
                and strategy is not keyed_strategy
                and _is_valid(values)
            ):
                break
            try:
                strategy(source, values, self.cfg)
            except (TypeError, ValueError, AttributeError) as exc:
                logger.debug("%s failed on item %s: %s", strategy.__name__, source.index, exc)

        _normalize(values)
        derive_amounts(values, self.cfg.tax_rate)
        values["external_link"] = share_link(
            values["electronic_number"],
            values["submission_id"],
            self.cfg.share_link_base,
        )
        for name, default in self.cfg.field_defaults.items():
            if name in values:
                _fill(values, name, str(default))
        values["serial_number"] = str(source.index + 1)
        values["source"] = (
            ExtractionSource.NETWORK.value
            if isinstance(source, NetworkItem)
            else ExtractionSource.DOM.value
        )
        return InvoiceRecord(**values)

    def extract_many(self, sources: Sequence[RecordSource]) -> list[InvoiceRecord]:
        """Extract every source, fanning out over threads; order is preserved."""
        if len(sources) <= 1 or self.max_workers == 1:
            return [self.extract(s) for s in sources]
        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(sources)),
            thread_name_prefix="etaharvest-extract",
        ) as pool:
            return list(pool.map(self.extract, sources))


def _vat_from_taxable_items(payload: Mapping[str, Any]) -> str:
    items = _lookup(payload, "taxableItems")
    if not isinstance(items, list):
        return ""
    total = Decimal(0)
    found = False
    for item in items:
        if isinstance(item, Mapping) and _text(_lookup(item, "taxType")).upper() == "T1":
            amount = parse_amount(_text(_lookup(item, "amount")))
            if amount is not None:
                total += amount
                found = True
    return str(total) if found else ""


def extract_line_item(source: RecordSource) -> InvoiceLineItem:
    """Map one detail payload line or detail-table row to a line item."""
    values = dict.fromkeys((f.name for f in fields(InvoiceLineItem)), "")
    index = _keyed_index(source)
    for name, synonyms in LINE_SYNONYMS.items():
        for key in synonyms:
            if value := _text(_lookup(index, key)):
                values[name] = value
                break
    if isinstance(source, NetworkItem):
        _fill(values, "vat_amount", _vat_from_taxable_items(source.payload))
    else:
        for name, cell in zip(LINE_POSITIONS, source.cells, strict=False):
            _fill(values, name, cell.strip())
    for name in ("unit_price", "total_value", "tax_amount", "vat_amount", "total_with_vat"):
        if values[name]:
            values[name] = clean_amount(values[name])
    return InvoiceLineItem(**values)
