import dataclasses

import pytest

from app.casestatus import config
from app.casestatus.browser_session import (
    STEALTH_INIT_SCRIPT,
    BrowserSession,
    build_context_options,
    build_launch_options,
    open_session,
)
from app.casestatus.config import load_config
from tests.fake_playwright import FakePlaywrightFactory


@pytest.fixture
def cfg():
    return load_config({"API_BASE": "https://api.example.test", "API_TOKEN": "secret"})


def test_launch_options_default_to_headless_without_proxy(cfg) -> None:
    options = build_launch_options(cfg)

    assert options["headless"] is True
    assert "--disable-blink-features=AutomationControlled" in options["args"]
    assert "proxy" not in options


def test_launch_options_with_proxy_and_headful() -> None:
    cfg = load_config(
        {
            "API_BASE": "https://api.example.test",
            "API_TOKEN": "secret",
            "HEADFUL": "1",
            "PROXY_ENABLED": "1",
            "PROXY_HOST": "10.0.0.2",
            "PROXY_PORT": "8080",
        }
    )

    options = build_launch_options(cfg)

    assert options["headless"] is False
    assert options["proxy"] == {"server": "http://10.0.0.2:8080"}


def test_context_options(cfg) -> None:
    options = build_context_options(dataclasses.replace(cfg, user_agent="UA/1.0"))

    assert options["viewport"] == config.VIEWPORT
    assert options["locale"] == "en-US"
    assert options["user_agent"] == "UA/1.0"
    assert "user_agent" not in build_context_options(cfg)


def test_each_page_gets_a_fresh_context_that_is_closed(cfg) -> None:
    factory = FakePlaywrightFactory()

    with BrowserSession(cfg, playwright_factory=factory) as session:
        with session.page() as first:
            pass
        with session.page() as second:
            pass

    browser = factory.playwright.chromium.browser
    assert len(browser.contexts) == 2
    assert first.context is not second.context
    assert all(context.closed for context in browser.contexts)
    assert all(STEALTH_INIT_SCRIPT in context.init_scripts for context in browser.contexts)
    assert browser.contexts[0].default_navigation_timeout == cfg.nav_timeout_seconds * 1000
    assert browser.closed is True
    assert factory.playwright.stopped is True


def test_shared_context_when_fresh_context_disabled(cfg) -> None:
    factory = FakePlaywrightFactory()
    session = BrowserSession(dataclasses.replace(cfg, fresh_context_per_item=False), playwright_factory=factory)
    session.open()

    with session.page() as first:
        pass
    with session.page() as second:
        pass

    assert first.context is second.context
    assert first.closed and second.closed
    assert first.context.closed is False

    session.close()
    session.close()
    assert first.context.closed is True
    assert session.is_open is False


def test_browser_closed_when_scrape_raises(cfg) -> None:
    factory = FakePlaywrightFactory()

    with pytest.raises(KeyboardInterrupt):
        with BrowserSession(cfg, playwright_factory=factory) as session:
            with session.page():
                raise KeyboardInterrupt

    assert factory.playwright.chromium.browser.closed is True
    assert factory.playwright.stopped is True


def test_new_context_requires_open_session(cfg) -> None:
    with pytest.raises(RuntimeError):
        BrowserSession(cfg, playwright_factory=FakePlaywrightFactory()).new_context()


def test_open_session_launches_and_close_is_idempotent(cfg) -> None:
    factory = FakePlaywrightFactory()

    session = open_session(cfg, playwright_factory=factory)
    assert session.is_open
    assert len(factory.playwright.chromium.launches) == 1

    session.close()
    session.close()

    assert not session.is_open
    assert factory.playwright.stopped is True
