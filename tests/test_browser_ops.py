"""
Tests for the browser helpers: selectors, keys, waits, typing and login
"""
from unittest.mock import AsyncMock

import pytest
from playwright.async_api import Error as PlaywrightError

import config as cfg
from dab_runner.browser_ops import (
    DEFAULT_EMAIL_SELECTOR,
    DEFAULT_PASSWORD_SELECTOR,
    DEFAULT_SUBMIT_SELECTOR,
    do_login,
    find_chat_input,
    navigate_to,
    resolve_key,
    resolve_selector,
    safe_slug,
    save_screenshot,
    take_screenshot,
    to_origin,
    type_human,
    wait_for_element,
    wait_for_selector_state,
)
from dab_runner.errors import ElementTimeoutError, SessionLostError, StopRequested, TaskConfigError
from dab_runner.models import Selector
from tests.conftest import FakeElement, make_config


class TestPureHelpers:

    def test_resolve_selector(self):
        assert resolve_selector(Selector(css="#a .b", id="ignored")) == "#a .b"
        assert resolve_selector(Selector(id='odd"id')) == '[id="odd\\"id"]'
        with pytest.raises(TaskConfigError):
            resolve_selector(Selector())
        with pytest.raises(TaskConfigError):
            resolve_selector(None)

    @pytest.mark.parametrize("raw,expected", [
        ("enter", "Enter"),
        ("ESC", "Escape"),
        ("arrow_down", "ArrowDown"),
        ("Page Up", "PageUp"),
        ("f5", "F5"),
        ("Control+a", "Control+a"),
        ("shift+tab", "shift+Tab"),
        ("a", "a"),
        ("", None),
        (None, None),
    ])
    def test_resolve_key(self, raw, expected):
        assert resolve_key(raw) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("Login Error", "login_error"),
        ("task/with:odd*chars", "task_with_odd_chars"),
        ("___", "screenshot"),
        (None, "screenshot"),
        ("x" * 80, "x" * 60),
    ])
    def test_safe_slug(self, raw, expected):
        assert safe_slug(raw) == expected

    def test_to_origin(self):
        assert to_origin("https://chat.example.com/channels/1?x=2") == "https://chat.example.com"
        assert to_origin("about:blank") == ""
        assert to_origin("") == ""


class TestWaits:

    @pytest.mark.asyncio
    async def test_element_found(self, ctx, browser):
        el = FakeElement()
        browser.page.elements["#go"] = [el]
        assert await wait_for_element(ctx, "#go") is el

    @pytest.mark.asyncio
    async def test_element_timeout(self, ctx):
        with pytest.raises(ElementTimeoutError, match="#missing"):
            await wait_for_element(ctx, "#missing", timeout_ms=0)

    @pytest.mark.asyncio
    async def test_stop_interrupts_wait(self, ctx, controller):
        controller.request_stop()
        with pytest.raises(StopRequested):
            await wait_for_element(ctx, "#missing")

    @pytest.mark.asyncio
    async def test_recoverable_query_error_propagates(self, ctx, browser):
        browser.page.query_selector = AsyncMock(side_effect=PlaywrightError("Target closed"))
        with pytest.raises(PlaywrightError):
            await wait_for_element(ctx, "#go", timeout_ms=0)

    @pytest.mark.asyncio
    async def test_selector_state(self, ctx, browser):
        sel = Selector(css=".toast")
        await wait_for_selector_state(ctx, sel, "hidden", timeout_ms=0)

        browser.page.elements[".toast"] = [FakeElement()]
        await wait_for_selector_state(ctx, sel, "attached", timeout_ms=0)
        await wait_for_selector_state(ctx, sel, "visible", timeout_ms=0)
        with pytest.raises(ElementTimeoutError):
            await wait_for_selector_state(ctx, sel, "hidden", timeout_ms=0)

    @pytest.mark.asyncio
    async def test_selector_state_rejects_unknown(self, ctx):
        with pytest.raises(TaskConfigError):
            await wait_for_selector_state(ctx, Selector(css=".x"), "wobbly")


class TestTyping:

    @pytest.mark.asyncio
    async def test_instant_fills(self, ctx, browser):
        el = FakeElement()
        browser.page.elements["#in"] = [el]
        await type_human(ctx, "#in", "hello")
        el.fill.assert_awaited_once_with("hello")
        assert el.typed == []

    @pytest.mark.asyncio
    async def test_human_typing_per_character(self, ctx, browser):
        ctx.config = make_config(human_typing_enabled=True, typing_delay_ms_min=0, typing_delay_ms_max=0)
        el = FakeElement()
        browser.page.elements["#in"] = [el]

        await type_human(ctx, "#in", "hey")

        assert el.typed == ["h", "e", "y"]
        el.fill.assert_awaited_once_with("")

    @pytest.mark.asyncio
    async def test_stale_element_is_resolved_again(self, ctx, browser):
        ctx.config = make_config(human_typing_enabled=True, typing_delay_ms_min=0, typing_delay_ms_max=0)
        fresh = FakeElement()

        def rerender():
            browser.page.elements["#in"] = [fresh]

        stale = FakeElement(fail_type_at=2, on_fail=rerender)
        browser.page.elements["#in"] = [stale]

        await type_human(ctx, "#in", "abcd")

        assert stale.typed == ["a", "b"]
        assert fresh.typed == ["c", "d"]


class TestChatInput:

    @pytest.mark.asyncio
    async def test_prefers_message_labelled_editor(self, ctx, browser):
        other = FakeElement(attrs={"aria-label": "Search"})
        chat = FakeElement(attrs={"aria-label": "Message #general"})
        browser.page.elements['div[role="textbox"][contenteditable="true"]'] = [other, chat]
        assert await find_chat_input(ctx) is chat

    @pytest.mark.asyncio
    async def test_editor_class_fallback(self, ctx, browser):
        chat = FakeElement(attrs={"class": "markup editor_a1b2"})
        browser.page.elements['div[role="textbox"][contenteditable="true"]'] = [chat]
        assert await find_chat_input(ctx) is chat

    @pytest.mark.asyncio
    async def test_none_found(self, ctx):
        assert await find_chat_input(ctx) is None


class TestNavigation:

    @pytest.mark.asyncio
    async def test_empty_url_is_skipped(self, ctx, browser):
        await navigate_to(ctx, "  ")
        assert browser.page.visits == []

    @pytest.mark.asyncio
    async def test_failure_is_raised(self, ctx, browser, log_lines):
        browser.page.goto = AsyncMock(side_effect=PlaywrightError("net::ERR_NAME_NOT_RESOLVED"))
        with pytest.raises(PlaywrightError):
            await navigate_to(ctx, "https://nowhere.invalid")
        assert any(level == "WARNING" and "nowhere.invalid" in text for level, text in log_lines)


class TestLogin:

    @pytest.fixture
    def login_form(self, browser):
        form = {
            DEFAULT_EMAIL_SELECTOR: [FakeElement()],
            DEFAULT_PASSWORD_SELECTOR: [FakeElement()],
            DEFAULT_SUBMIT_SELECTOR: [FakeElement()],
        }
        return form

    @pytest.mark.asyncio
    async def test_fills_and_submits(self, ctx, browser, config, login_form):
        browser.page.elements.update(login_form)

        await do_login(ctx, config.accounts[0])

        login_form[DEFAULT_EMAIL_SELECTOR][0].fill.assert_awaited_once_with("acc1@example.com")
        login_form[DEFAULT_PASSWORD_SELECTOR][0].fill.assert_awaited_once_with("pw1")
        login_form[DEFAULT_SUBMIT_SELECTOR][0].click.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_account_selectors_override_defaults(self, ctx, browser):
        config = make_config(accounts=[{
            "email": "a@x.com", "password": "p",
            "email_selector": {"id": "user"},
            "password_selector": {"css": "#pass"},
            "submit_selector": {"css": "#send"},
        }])
        ctx.config = config
        user, pw, send = FakeElement(), FakeElement(), FakeElement()
        browser.page.elements.update({'[id="user"]': [user], "#pass": [pw], "#send": [send]})

        await do_login(ctx, config.accounts[0])

        user.fill.assert_awaited_once_with("a@x.com")
        send.click.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_form_clears_session_and_retries(self, monkeypatch, ctx, browser, config, login_form, log_lines):
        monkeypatch.setattr(cfg, "LOGIN_FORM_PROBE_MS", 0)
        page = browser.page
        real_goto = page.goto

        async def goto(url):
            await real_goto(url)
            if url == config.login_url:
                page.elements.update(login_form)

        page.goto = goto

        await do_login(ctx, config.accounts[0])

        assert page.visits[-1] == config.login_url
        browser.context.clear_cookies.assert_awaited()
        login_form[DEFAULT_SUBMIT_SELECTOR][0].click.assert_awaited_once()
        assert any("Login form not detected" in text for _, text in log_lines)

    @pytest.mark.asyncio
    async def test_failure_logs_url_and_reraises(self, monkeypatch, ctx, browser, config, log_lines):
        monkeypatch.setattr(cfg, "LOGIN_FORM_PROBE_MS", 0)
        ctx.config = make_config(element_wait_timeout_ms=100)
        browser.page.query_selector = AsyncMock(side_effect=SessionLostError("gone"))

        with pytest.raises(SessionLostError):
            await do_login(ctx, config.accounts[0])
        assert any(level == "ERROR" and "Login failed" in text for level, text in log_lines)


class TestScreenshots:

    @pytest.mark.asyncio
    async def test_error_screenshot_is_opt_in(self, ctx, browser):
        assert await save_screenshot(ctx, "task_x_error") is None
        assert browser.page.screenshots == []

    @pytest.mark.asyncio
    async def test_error_screenshot_saved(self, ctx, browser, tmp_path):
        ctx.config = make_config(screenshot_on_error=True, screenshot_dir=str(tmp_path))

        out = await save_screenshot(ctx, "Task X Error")

        assert out.parent == tmp_path
        assert out.name.endswith("_task_x_error.png")
        assert browser.page.screenshots == [(str(out), False)]

    @pytest.mark.asyncio
    async def test_error_screenshot_never_raises(self, ctx, browser, tmp_path):
        ctx.config = make_config(screenshot_on_error=True, screenshot_dir=str(tmp_path))
        browser.page.screenshot = AsyncMock(side_effect=PlaywrightError("Target closed"))
        assert await save_screenshot(ctx, "boom") is None

    @pytest.mark.asyncio
    async def test_task_screenshot_paths(self, ctx, browser, tmp_path):
        ctx.config = make_config(screenshot_dir=str(tmp_path))

        relative = await take_screenshot(ctx, path="shots/inbox.png", full_page=True)
        labelled = await take_screenshot(ctx, label="Inbox")

        assert relative == tmp_path / "shots" / "inbox.png"
        assert labelled.name.endswith("_inbox.png")
        assert browser.page.screenshots[0] == (str(relative), True)
