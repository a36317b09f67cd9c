import json
from pathlib import Path
from unittest.mock import Mock

import pytest
from playwright.sync_api import Error as PlaywrightError

from etaharvest.etaconfig import Config
from etaharvest.etasession import (
    is_logged_in,
    is_login_page,
    load_context,
    save_context,
    state_file,
    wait_until,
)


def test_state_file_default_and_override(tmp_path):
    cfg = Config()
    assert state_file(cfg) == (
        Path.home() / ".etaharvest" / "sessions" / "invoicing.eta.gov.eg" / "default.json"
    )
    cfg.session.user = "acct"
    assert state_file(cfg).name == "acct.json"
    cfg.session.path = tmp_path / "s.json"
    assert state_file(cfg) == tmp_path / "s.json"


def test_save_and_load_context(tmp_path):
    cfg = Config()
    cfg.session.path = tmp_path / "nested" / "state.json"
    ctx = Mock()
    ctx.storage_state.return_value = {"cookies": [{"name": "sid"}], "origins": []}
    save_context(ctx, cfg)
    assert json.loads(cfg.session.path.read_text(encoding="utf-8"))["cookies"][0]["name"] == "sid"

    browser = Mock()
    context, reused = load_context(browser, cfg)
    assert reused
    assert context is browser.new_context.return_value
    browser.new_context.assert_called_once_with(storage_state=str(cfg.session.path))


def test_save_context_disabled(tmp_path):
    cfg = Config()
    cfg.session.path = tmp_path / "state.json"
    cfg.session.save_on_success = False
    save_context(Mock(), cfg)
    assert not cfg.session.path.exists()


def test_load_context_without_state_or_reuse(tmp_path):
    cfg = Config()
    cfg.session.path = tmp_path / "missing.json"
    browser = Mock()
    _, reused = load_context(browser, cfg)
    assert not reused
    browser.new_context.assert_called_once_with()

    cfg.session.path.write_text("{}", encoding="utf-8")
    cfg.session.reuse = False
    browser = Mock()
    _, reused = load_context(browser, cfg)
    assert not reused


def test_corrupt_state_is_set_aside(tmp_path):
    cfg = Config()
    cfg.session.path = tmp_path / "state.json"
    cfg.session.path.write_text("not json", encoding="utf-8")
    browser = Mock()
    fresh = Mock()
    browser.new_context.side_effect = [PlaywrightError("bad state"), fresh]
    context, reused = load_context(browser, cfg)
    assert context is fresh
    assert not reused
    assert (tmp_path / "state.bad").exists()


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://id.eta.gov.eg/Account/Login?ReturnUrl=x", True),
        ("https://invoicing.eta.gov.eg/connect/authorize?client_id=a", True),
        ("https://invoicing.eta.gov.eg/documents/recent", False),
        ("", False),
    ],
)
def test_is_login_page(url, expected):
    assert is_login_page(url) is expected


def test_is_logged_in_by_url():
    cfg = Config()
    page = Mock(url="https://invoicing.eta.gov.eg/documents/recent")
    assert is_logged_in(page, cfg)
    page.url = "https://id.eta.gov.eg/account/login"
    assert not is_logged_in(page, cfg)
    page.url = "https://example.com/"
    assert not is_logged_in(page, cfg)


def test_is_logged_in_by_guard():
    cfg = Config()
    cfg.session.logged_in_guard = "#user-menu"
    page = Mock(url="https://id.eta.gov.eg/account/login")
    page.locator.return_value.first.is_visible.return_value = True
    assert is_logged_in(page, cfg)
    page.locator.assert_called_once_with("#user-menu")

    page.locator.return_value.first.is_visible.side_effect = PlaywrightError("detached")
    assert not is_logged_in(page, cfg)


def test_wait_until_polls_and_tolerates_errors():
    results = iter([ValueError("navigating"), False, True])

    def pred():
        value = next(results)
        if isinstance(value, Exception):
            raise value
        return value

    sleeps = []
    assert wait_until(pred, timeout_s=60, poll_ms=10, sleep=sleeps.append)
    assert sleeps == [0.01, 0.01]


def test_wait_until_times_out():
    assert not wait_until(lambda: False, timeout_s=0.05, poll_ms=1, sleep=lambda s: None)
