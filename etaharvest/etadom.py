"""
etaharvest.etadom.

Playwright-facing DOM access for the harvester.

:class:`PortalDom` is the single seam between the harvesting logic and the
browser: it resolves selector candidates, snapshots rows into detached
:class:`~etaharvest.etamodels.RowHandle` objects, reads texts, clicks
controls and waits. Everything above this module works on plain data and
can be exercised against a fake implementation of the same methods.

Playwright errors never escape: a selector that fails to resolve reads as
"no rows", "no text" or "no control".
"""

from __future__ import annotations

import logging
import re

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Locator, Page
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from .etaconfig import SelectorCandidate, SelectorSet
from .etamodels import RowHandle

logger = logging.getLogger(__name__)

UNSTABLE_PATTERNS = [
    r":nth-(child|of-type)\(",  # brittle positional CSS
    r"//.*text\(\)\s*=",  # text-based XPath
    r"^/{1,2}(?!html)",  # absolute XPaths from root (allow 'html' root narrowly)
]

# Evaluated once per selector: turns every matched row into plain data so
# extraction never goes back to the browser.
ROW_SNAPSHOT_JS = """
(els, cellSelector) => els.map((el) => {
  const text = (node) => ((node.innerText || node.textContent || '').trim());
  const box = el.getBoundingClientRect();
  const style = window.getComputedStyle(el);
  const fields = [];
  const keyed = el.querySelectorAll(
    '[data-field], [data-column], [data-automation-key], [col-id], [data-testid]'
  );
  for (const node of keyed) {
    const key = node.getAttribute('data-field') || node.getAttribute('data-column')
      || node.getAttribute('data-automation-key') || node.getAttribute('col-id')
      || node.getAttribute('data-testid');
    if (key) fields.push([key, text(node)]);
  }
  return {
    cells: Array.from(el.querySelectorAll(cellSelector)).map(text),
    fields,
    text: text(el),
    visible: box.width > 0 && box.height > 0
      && style.visibility !== 'hidden' && style.display !== 'none',
    links: Array.from(el.querySelectorAll('a[href]')).map((a) => a.href),
  };
})
"""

_PW_ERRORS = (PlaywrightError, PlaywrightTimeoutError)


class PortalDom:
    """
    Resolve selector candidates against a Playwright page.

    ``root`` scopes every lookup (the page, or a frame/locator inside it);
    ``page`` is used for waits and history navigation.
    """

    def __init__(self, page: Page, root: Locator | Page | None = None) -> None:
        self.page = page
        self.root = root if root is not None else page

    def _validate(self, cand: SelectorCandidate) -> None:
        if cand.allow_unstable:
            return
        for pat in UNSTABLE_PATTERNS:
            if re.search(pat, cand.selector):
                msg = f"Rejected unstable selector: {cand.selector}"
                raise ValueError(msg)

    def _loc(self, cand: SelectorCandidate) -> Locator:
        self._validate(cand)
        if cand.engine == "css":
            return self.root.locator(cand.selector)
        return self.root.locator(f"xpath={cand.selector}")

    # ---- reading

    def collect_rows(self, cand: SelectorCandidate, cell_selector: str) -> list[RowHandle]:
        """Snapshot every element matching ``cand`` (empty on any failure)."""
        try:
            raw = self._loc(cand).evaluate_all(ROW_SNAPSHOT_JS, cell_selector)
        except (*_PW_ERRORS, ValueError) as exc:
            logger.debug("collect_rows(%s) failed: %s", cand.selector, exc)
            return []
        return [RowHandle.from_snapshot(i, r) for i, r in enumerate(raw or [])]

    def first_text(self, selset: SelectorSet) -> str:
        """Inner text of the first visible match of the first matching candidate."""
        for cand in selset.candidates:
            try:
                loc = self._loc(cand)
                count = loc.count()
                for i in range(min(count, 5)):
                    el = loc.nth(i)
                    if el.is_visible():
                        return el.inner_text().strip()
            except (*_PW_ERRORS, ValueError) as exc:
                logger.debug("first_text(%s) failed: %s", cand.selector, exc)
                continue
        return ""

    def page_text(self) -> str:
        try:
            return self.root.locator("body").inner_text()
        except _PW_ERRORS as exc:
            logger.debug("page_text failed: %s", exc)
            return ""

    def any_present(self, selset: SelectorSet) -> bool:
        for cand in selset.candidates:
            try:
                if self._loc(cand).count() > 0:
                    return True
            except (*_PW_ERRORS, ValueError):
                continue
        return False

    # ---- acting

    def _usable(self, el: Locator) -> bool:
        if not el.is_visible() or not el.is_enabled():
            return False
        aria = el.get_attribute("aria-disabled")
        if aria and aria.lower() == "true":
            return False
        classes = (el.get_attribute("class") or "").split()
        return "disabled" not in classes and not el.evaluate(
            "el => !!el.closest('.disabled, [aria-disabled=\"true\"]')",
        )

    def click(self, selset: SelectorSet) -> bool:
        """Click the first visible, enabled match; False when none exists."""
        for cand in selset.candidates:
            try:
                loc = self._loc(cand)
                for i in range(loc.count()):
                    el = loc.nth(i)
                    if self._usable(el):
                        el.click()
                        logger.debug("clicked %s [%d]", cand.selector, i)
                        return True
            except (*_PW_ERRORS, ValueError) as exc:
                logger.debug("click(%s) failed: %s", cand.selector, exc)
                continue
        return False

    def click_labelled(self, selset: SelectorSet, pattern: re.Pattern[str]) -> bool:
        """
        Click the first usable control whose label matches ``pattern``.

        The label parts tested separately are the inner text, ``aria-label``
        and ``title``.
        """
        for cand in selset.candidates:
            try:
                loc = self._loc(cand)
                for i in range(loc.count()):
                    el = loc.nth(i)
                    parts = [
                        el.inner_text(),
                        el.get_attribute("aria-label") or "",
                        el.get_attribute("title") or "",
                    ]
                    if not any(pattern.search(p.strip()) for p in parts if p):
                        continue
                    if self._usable(el):
                        el.click()
                        logger.debug("clicked %s labelled %r", cand.selector, parts[0])
                        return True
            except (*_PW_ERRORS, ValueError) as exc:
                logger.debug("click_labelled(%s) failed: %s", cand.selector, exc)
                continue
        return False

    def wait(self, ms: int) -> None:
        if ms > 0:
            self.page.wait_for_timeout(ms)

    def go_back(self) -> None:
        try:
            self.page.go_back(wait_until="domcontentloaded")
        except _PW_ERRORS as exc:
            logger.debug("go_back failed: %s", exc)
