"""
etaharvest.etaconfig
=================================

Configuration dataclasses and helpers used to coerce a JSON configuration
into Python objects consumed by the harvester runtime.

The primary public surface is :class:`Config`, which mirrors the JSON
structure users author. :func:`load_config` reads a JSON file and returns a
typed :class:`Config` instance. Every field has a default tuned for the
e-invoicing portal, so an empty JSON object is a valid configuration.
"""

import json
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from pathlib import Path
from types import UnionType
from typing import Any, Literal, Union, get_args, get_origin, get_type_hints


@dataclass
class SelectorCandidate:
    """
    An individual selector candidate.

    A selector candidate is one of the ordered fallbacks attempted when
    resolving an element.

    Fields
    ------
    selector: CSS or XPath selector string.
    engine: either ``css`` or ``xpath``. Defaults to ``css``.
    allow_unstable: when True, allows selectors that are heuristically
        considered brittle (positional CSS, text-equality XPath).
    """

    selector: str
    engine: Literal["css", "xpath"] = "css"
    allow_unstable: bool = False


@dataclass
class SelectorSet:
    """
    A container for an ordered list of :class:`SelectorCandidate`.

    Selector sets are tried first-success: the first candidate producing a
    usable result wins.
    """

    candidates: list[SelectorCandidate]

    @classmethod
    def of(cls, *selectors: str) -> "SelectorSet":
        return cls([SelectorCandidate(s) for s in selectors])

    @property
    def selectors(self) -> list[str]:
        return [c.selector for c in self.candidates]


def _selectors(*selectors: str) -> Any:
    return field(default_factory=lambda: SelectorSet.of(*selectors))


@dataclass
class ScanConfig:
    """
    Structural scan settings.

    ``rows`` is tried before ``fallback_rows``; ``cells`` is evaluated inside
    every row. The ``ready_*`` values bound the content-ready poll that runs
    before each structural scan.
    """

    rows: SelectorSet = _selectors(
        "table tbody tr",
        ".invoice-row",
        "[data-testid='invoice-row']",
        ".document-row",
        ".ms-DetailsRow",
    )
    fallback_rows: SelectorSet = _selectors(
        "tr[role='row']",
        "[role='row']",
        "[class*='row'][class*='document']",
        "tr",
    )
    cells: str = "td, .cell, [data-testid*='cell'], [role='gridcell']"
    results_text: SelectorSet = _selectors(
        ".results-count",
        "[data-testid='results-count']",
        "[class*='results']",
    )
    pagination_region: SelectorSet = _selectors(
        ".pagination",
        "[role='navigation']",
        "[class*='pagination']",
        "[class*='paging']",
    )
    details_link: str = "a[href*='{invoice_id}'], [data-id='{invoice_id}']"
    details_rows: SelectorSet = _selectors(
        ".invoice-lines tbody tr",
        "[data-testid='invoice-line']",
        "table tbody tr",
    )
    ready_timeout_ms: int = 5000
    ready_poll_ms: int = 100
    ready_settle_ms: int = 200
    max_workers: int = 4


@dataclass
class PaginationConfig:
    """
    Pagination controls and loop limits.

    Navigation strategies run in order: ``next_button`` candidates, a
    numbered control inside ``numbered_controls``, then any control in
    ``labelled_controls`` whose label matches one of ``next_tokens``.
    """

    next_button: SelectorSet = _selectors(
        "button[aria-label*='next' i]",
        "button[title*='next' i]",
        ".next-page",
        ".pagination-next",
        "[data-testid='next-page']",
        ".page-link[aria-label*='Next']",
    )
    first_button: SelectorSet = _selectors(
        "button[aria-label*='first' i]",
        "button[title*='first' i]",
        ".pagination-first",
        "[data-testid='first-page']",
    )
    numbered_controls: SelectorSet = _selectors(
        ".pagination button",
        ".pagination a",
        "[role='navigation'] button",
        "[class*='pagination'] button",
    )
    labelled_controls: SelectorSet = _selectors("button", "a", "[role='button']")
    next_tokens: list[str] = field(
        default_factory=lambda: ["next", "التالي", "›", "»"],
    )
    default_page_size: int = 10
    max_pages: int = 100
    settle_ms: int = 300
    pacing_ms: int = 100
    max_stuck_pages: int = 3
    max_empty_pages: int = 3


@dataclass
class NetworkConfig:
    """
    Network observation settings.

    Only responses whose host contains ``host`` and whose path contains one
    of ``path_tokens`` are cached. ``volatile_params`` are stripped from the
    request signature.
    """

    host: str = "invoicing.eta.gov.eg"
    path_tokens: list[str] = field(
        default_factory=lambda: ["documents", "search", "list"],
    )
    freshness_s: float = 15.0
    volatile_params: list[str] = field(
        default_factory=lambda: [
            "_",
            "_t",
            "t",
            "ts",
            "timestamp",
            "cb",
            "cachebuster",
            "nocache",
        ],
    )


@dataclass
class ExtractionConfig:
    # tax_rate drives the gross -> (net, tax) approximation; see etaextract.
    tax_rate: float = 0.14
    share_link_base: str = "https://invoicing.eta.gov.eg"
    positional_window: int = 12
    field_defaults: dict[str, str] = field(default_factory=dict)


@dataclass
class SessionConfig:
    """
    Session and storage_state configuration.

    ``path`` may override the default storage state location. Other fields
    control reuse, saving, and how long to wait for a (manual) login.
    """

    path: Path | None = None
    user: str = ""
    site_host: str = "invoicing.eta.gov.eg"
    reuse: bool = True
    save_on_success: bool = True
    auth_timeout_s: int = 180
    headed_on_first_run: bool = True  # the portal login is manual
    logged_in_guard: str = ""


@dataclass
class Config:
    """
    Top-level runtime configuration.

    Mirrors the keys accepted by the JSON configuration files; see
    ``config-eta.json`` for a complete example.
    """

    browser: Literal["chromium", "firefox", "webkit"] = "chromium"
    headless: bool = False
    base_url: str = "https://invoicing.eta.gov.eg/documents/recent"
    log_level: str = "INFO"

    session: SessionConfig = field(default_factory=SessionConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    pagination: PaginationConfig = field(default_factory=PaginationConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)


def _unwrap_optional(t: Any) -> Any:
    """
    Return the inner type if ``t`` is Optional[...] else ``t``.

    This helper is used when coercing JSON values into typed dataclass
    fields so Optional[...] annotations are handled correctly.
    """
    if get_origin(t) in (Union, UnionType):
        non_none = [a for a in get_args(t) if a is not type(None)]
        if len(non_none) == 1:
            return non_none[0]
    return t


def coerce_value(val: Any, target_type: type[Any]) -> Any:
    inner_type = _unwrap_optional(target_type)

    # Selector shorthands: "css" or ["css", ...] instead of full objects
    if inner_type is SelectorCandidate and isinstance(val, str):
        return SelectorCandidate(val)
    if inner_type is SelectorSet and isinstance(val, list):
        return SelectorSet([coerce_value(v, SelectorCandidate) for v in val])

    if is_dataclass(inner_type) and isinstance(val, dict):
        return coerce_nested(val, inner_type)

    if inner_type is Path and isinstance(val, str):
        return Path(val).expanduser()

    origin = get_origin(inner_type)
    args = get_args(inner_type)

    if origin in (list, tuple) and args:
        inner_arg = args[0]
        return type(val)(coerce_value(v, inner_arg) for v in val)

    if origin is dict and len(args) == 2:
        key_type, value_type = args
        return {
            coerce_value(k, key_type): coerce_value(v, value_type)
            for k, v in val.items()
        }

    return val


def coerce_nested(obj: dict, cls: type[Any]) -> Any:
    if not is_dataclass(cls):
        return obj

    hints = get_type_hints(cls)
    kwargs = {}
    for f in fields(cls):
        if f.name not in obj:
            continue
        val = obj[f.name]
        if val is MISSING:
            continue
        kwargs[f.name] = coerce_value(val, hints.get(f.name, f.type))

    return cls(**kwargs)


def load_config(path: str | Path) -> Config:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return coerce_nested(raw, Config)
