"""
etaharvest.etapaginate.

Pagination state machine and navigation strategies.

States::

    unknown -> located -> navigating -> located | stuck | exhausted

Navigation is simulated interaction only; page numbers are never written
into URLs. Strategies are tried in order and the first that finds a
visible, enabled control wins:

1. :class:`NextButtonPaginator`: structural "next" selectors;
2. :class:`NumberedPaginator`: the numbered control for ``current + 1``;
3. :class:`NextTokenPaginator`: any control labelled with a next-like token
   (English or Arabic).

A click is taken as success; the new page is only verified by the next scan
cycle. Every click is followed by the same fixed settle delay.
"""

from __future__ import annotations

import logging
import re
from enum import Enum

from .etaconfig import PaginationConfig, SelectorSet
from .etadom import PortalDom
from .etamodels import PageSnapshot, PaginationState, StopReason

logger = logging.getLogger(__name__)


class PagerStatus(str, Enum):
    UNKNOWN = "unknown"
    LOCATED = "located"
    NAVIGATING = "navigating"
    STUCK = "stuck"
    EXHAUSTED = "exhausted"


def next_token_pattern(tokens: list[str]) -> re.Pattern[str]:
    """
    Build the label pattern for next-like controls.

    Alphabetic tokens match as words, single symbols (``›``, ``»``) must be
    the whole label, anything else matches as a substring.
    """
    parts = []
    for token in tokens:
        if token.isascii() and token.isalpha():
            parts.append(rf"\b{re.escape(token)}\b")
        elif len(token) == 1:
            parts.append(rf"^\s*{re.escape(token)}\s*$")
        else:
            parts.append(re.escape(token))
    return re.compile("|".join(parts) or r"(?!)", re.IGNORECASE)


def page_number_pattern(n: int) -> re.Pattern[str]:
    return re.compile(rf"^\s*{n}\s*$")


class Paginator:
    """
    Abstract navigation strategy.

    ``next_page`` returns True when a click on a usable control was issued.
    """

    def next_page(self, current: int) -> bool:  # pragma: no cover
        raise NotImplementedError


class NextButtonPaginator(Paginator):
    def __init__(self, dom: PortalDom, button: SelectorSet) -> None:
        self.dom = dom
        self.button = button

    def next_page(self, current: int) -> bool:
        return self.dom.click(self.button)


class NumberedPaginator(Paginator):
    def __init__(self, dom: PortalDom, controls: SelectorSet) -> None:
        self.dom = dom
        self.controls = controls

    def next_page(self, current: int) -> bool:
        return self.dom.click_labelled(self.controls, page_number_pattern(current + 1))


class NextTokenPaginator(Paginator):
    def __init__(self, dom: PortalDom, controls: SelectorSet, tokens: list[str]) -> None:
        self.dom = dom
        self.controls = controls
        self.pattern = next_token_pattern(tokens)

    def next_page(self, current: int) -> bool:
        return self.dom.click_labelled(self.controls, self.pattern)


class PaginationController:
    """
    Track page position and drive navigation for one harvest session.

    The controller owns no timers beyond the fixed ``settle_ms`` delay
    after each click; there is no exponential backoff.
    """

    def __init__(
        self,
        dom: PortalDom,
        state: PaginationState,
        cfg: PaginationConfig,
        paginators: list[Paginator] | None = None,
    ) -> None:
        self.dom = dom
        self.state = state
        self.cfg = cfg
        self.paginators = paginators or [
            NextButtonPaginator(dom, cfg.next_button),
            NumberedPaginator(dom, cfg.numbered_controls),
            NextTokenPaginator(dom, cfg.labelled_controls, cfg.next_tokens),
        ]
        self.status = PagerStatus.UNKNOWN
        self.navigations = 0
        self._last_signature: str | None = None
        self._repeats = 0

    def locate(self, snapshot: PageSnapshot) -> None:
        """Fold the hints of ``snapshot`` into the state and recompute totals."""
        self.state.apply(snapshot.hints, authoritative=snapshot.authoritative)
        if snapshot.records:
            self.state.note_rows(len(snapshot.records))
        self.state.resolve_total_pages(self.cfg.default_page_size, self.cfg.max_pages)
        if self.status is not PagerStatus.STUCK:
            self.status = PagerStatus.LOCATED

    def observe(self, signature: str) -> PagerStatus:
        """
        Record the signature of the page just scanned.

        ``max_stuck_pages`` consecutive repeats of the previous signature move
        the controller to ``stuck``.
        """
        if signature and signature == self._last_signature:
            self._repeats += 1
            logger.info(
                "page content unchanged after navigation (%d/%d)",
                self._repeats,
                self.cfg.max_stuck_pages,
            )
            if self._repeats >= self.cfg.max_stuck_pages:
                self.status = PagerStatus.STUCK
        else:
            self._repeats = 0
            self._last_signature = signature
        return self.status

    def check_exhausted(self, accumulated: int) -> StopReason | None:
        st = self.state
        if st.total_count > 0 and accumulated >= st.total_count:
            self.status = PagerStatus.EXHAUSTED
            return StopReason.TOTAL_REACHED
        if st.total_pages > 0 and st.current_page >= st.total_pages:
            self.status = PagerStatus.EXHAUSTED
            return StopReason.LAST_PAGE
        return None

    def first_page(self) -> bool:
        """
        Return to page 1 when a first-page or numbered ``1`` control exists.

        Without such a control the view is assumed to be on page 1 already.
        """
        clicked = self.dom.click(self.cfg.first_button) or self.dom.click_labelled(
            self.cfg.numbered_controls,
            page_number_pattern(1),
        )
        if clicked:
            self.dom.wait(self.cfg.settle_ms)
        self.state.current_page = 1
        return clicked

    def next_page(self) -> bool:
        if self.status in (PagerStatus.STUCK, PagerStatus.EXHAUSTED):
            return False
        self.status = PagerStatus.NAVIGATING
        current = self.state.current_page
        for paginator in self.paginators:
            if paginator.next_page(current):
                self.dom.wait(self.cfg.settle_ms)
                self.state.note_advanced()
                self.navigations += 1
                logger.debug(
                    "advanced to page %d via %s",
                    self.state.current_page,
                    type(paginator).__name__,
                )
                return True
        logger.info("no usable next control on page %d", current)
        self.status = PagerStatus.LOCATED
        return False
