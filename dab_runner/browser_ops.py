"""
Browser helpers shared by the task actions

Every wait in here polls through the pause controller, so pause and stop
land within one poll interval. Transport-loss errors are always re-raised
so the task runner can restart the session.
"""
import math
import random
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional, Tuple
from urllib.parse import urlsplit

from playwright.async_api import ElementHandle
from playwright.async_api import Error as PlaywrightError

import config as cfg
from dab_runner.context import ActionContext
from dab_runner.errors import ElementTimeoutError, TaskConfigError, is_recoverable_session_error
from dab_runner.models import Account, Config, Selector

DEFAULT_EMAIL_SELECTOR = 'input[type="email"], input[name="email"]'
DEFAULT_PASSWORD_SELECTOR = 'input[type="password"], input[name="password"]'
DEFAULT_SUBMIT_SELECTOR = 'button[type="submit"], input[type="submit"]'
DEFAULT_FILE_INPUT_SELECTOR = 'input[type="file"]'

# Tried in order; chat editors are contenteditable divs whose markup changes often
CHAT_INPUT_SELECTORS = (
    '[aria-label^="Message "]',
    'div[role="textbox"][contenteditable="true"]',
)

KEY_ALIASES = {
    'ENTER': 'Enter',
    'RETURN': 'Enter',
    'ESC': 'Escape',
    'ESCAPE': 'Escape',
    'TAB': 'Tab',
    'SPACE': 'Space',
    'BACKSPACE': 'Backspace',
    'DELETE': 'Delete',
    'DEL': 'Delete',
    'INSERT': 'Insert',
    'HOME': 'Home',
    'END': 'End',
    'PAGEUP': 'PageUp',
    'PAGEDOWN': 'PageDown',
    'ARROWUP': 'ArrowUp',
    'ARROWDOWN': 'ArrowDown',
    'ARROWLEFT': 'ArrowLeft',
    'ARROWRIGHT': 'ArrowRight',
    'UP': 'ArrowUp',
    'DOWN': 'ArrowDown',
    'LEFT': 'ArrowLeft',
    'RIGHT': 'ArrowRight',
}

CLEAR_STORAGE_SCRIPT = """
async () => {
  try { window.localStorage && window.localStorage.clear(); } catch (e) {}
  try { window.sessionStorage && window.sessionStorage.clear(); } catch (e) {}
  try {
    if (window.caches && caches.keys) {
      const keys = await caches.keys();
      await Promise.all(keys.map((k) => caches.delete(k)));
    }
  } catch (e) {}
  try {
    if (navigator.serviceWorker && navigator.serviceWorker.getRegistrations) {
      const regs = await navigator.serviceWorker.getRegistrations();
      await Promise.all(regs.map((r) => r.unregister()));
    }
  } catch (e) {}
  try {
    if (window.indexedDB && indexedDB.databases) {
      const dbs = await indexedDB.databases();
      await Promise.all(dbs.filter((d) => d && d.name).map((d) => new Promise((res) => {
        const req = indexedDB.deleteDatabase(d.name);
        req.onsuccess = req.onerror = req.onblocked = () => res();
      })));
    }
  } catch (e) {}
  return true;
}
"""


# ------------------------------------------
# Small pure helpers
# ------------------------------------------

def random_int(low, high) -> int:
    """Uniform integer in [low, high]; 0 when the range is empty"""
    lo, hi = math.ceil(low), math.floor(high)
    if hi < lo:
        return 0
    return random.randint(lo, hi)


def typing_delay_range(config: Config) -> Tuple[bool, int, int]:
    lo, hi = config.typing_delay_range
    return bool(config.human_typing_enabled), lo, hi


def safe_slug(value) -> str:
    slug = re.sub(r'[^a-z0-9_-]+', '_', str(value or '').lower()).strip('_')[:60]
    return slug or 'screenshot'


def timestamp_slug() -> str:
    """ISO-8601 UTC timestamp usable in a file name"""
    now = datetime.now(timezone.utc)
    return now.strftime('%Y-%m-%dT%H-%M-%S-') + f"{now.microsecond // 1000:03d}Z"


def resolve_selector(selector: Optional[Selector]) -> str:
    """Turn a task ``{css}|{id}`` selector into a Playwright selector string"""
    if selector is None or selector.is_empty:
        raise TaskConfigError("Missing selector (provide selector.css or selector.id).")
    if selector.css:
        return selector.css
    escaped = selector.id.replace('\\', '\\\\').replace('"', '\\"')
    return f'[id="{escaped}"]'


def selector_or_default(selector: Optional[Selector], default: str) -> str:
    if selector is None or selector.is_empty:
        return default
    return resolve_selector(selector)


def timeout_or_default(value, config: Config) -> float:
    try:
        t = float(value)
    except (TypeError, ValueError):
        return config.element_wait_timeout_ms
    if math.isnan(t) or t < 0:
        return config.element_wait_timeout_ms
    return t


def resolve_key(name) -> Optional[str]:
    """Map user key names (enter, ESC, arrow_down...) to Playwright key names"""
    raw = str(name or '').strip()
    if not raw:
        return None
    if '+' in raw and len(raw) > 1:
        # Chords like Control+A are passed through with each part resolved
        return '+'.join(resolve_key(part) or part for part in raw.split('+'))
    key = re.sub(r'[\s_]+', '', raw).upper()
    if key in KEY_ALIASES:
        return KEY_ALIASES[key]
    if re.fullmatch(r'F([1-9]|1[0-2])', key):
        return key
    return raw


def to_origin(url) -> str:
    try:
        parts = urlsplit(str(url or '').strip())
    except ValueError:
        return ''
    if parts.scheme not in ('http', 'https') or not parts.netloc:
        return ''
    return f"{parts.scheme}://{parts.netloc}"


def _reraise_if_recoverable(exc: BaseException):
    if is_recoverable_session_error(exc):
        raise exc


# ------------------------------------------
# Waits
# ------------------------------------------

async def wait_for_element(ctx: ActionContext, selector: str, timeout_ms=None) -> ElementHandle:
    """Poll until ``selector`` matches an element, checking pause/stop every tick"""
    timeout = timeout_or_default(timeout_ms, ctx.config)
    deadline = time.monotonic() + timeout / 1000

    while True:
        await ctx.pause_point()
        try:
            handle = await ctx.page.query_selector(selector)
        except PlaywrightError as e:
            _reraise_if_recoverable(e)
            handle = None
        if handle is not None:
            return handle
        if time.monotonic() >= deadline:
            raise ElementTimeoutError(f"Timed out after {timeout:g}ms waiting for element: {selector}")
        await ctx.sleep(cfg.POLL_INTERVAL_MS)


async def wait_for_condition(ctx: ActionContext,
                             check: Callable[[], Awaitable[bool]],
                             timeout_ms=None,
                             description='condition'):
    """Poll ``check`` until it returns truthy; errors inside it count as False"""
    timeout = timeout_or_default(timeout_ms, ctx.config)
    deadline = time.monotonic() + timeout / 1000

    while True:
        await ctx.pause_point()
        try:
            if await check():
                return True
        except PlaywrightError as e:
            _reraise_if_recoverable(e)
        if time.monotonic() >= deadline:
            raise ElementTimeoutError(f"Timed out after {timeout:g}ms waiting for {description}.")
        await ctx.sleep(cfg.CONDITION_POLL_MS)


async def wait_for_selector_state(ctx: ActionContext, selector: Optional[Selector], state='visible', timeout_ms=None):
    """Wait until the selector is attached, visible or hidden (gone counts as hidden)"""
    target = resolve_selector(selector)
    wanted = str(state or 'visible').strip().lower()
    if wanted not in ('attached', 'visible', 'hidden'):
        raise TaskConfigError(f'Invalid selector state "{state}". Use attached, visible, or hidden.')

    async def matches():
        handles = await ctx.page.query_selector_all(target)
        if wanted == 'attached':
            return bool(handles)
        visible = False
        for handle in handles:
            if await handle.is_visible():
                visible = True
                break
        return visible if wanted == 'visible' else not visible

    timeout = timeout_or_default(timeout_ms, ctx.config)
    deadline = time.monotonic() + timeout / 1000
    while True:
        await ctx.pause_point()
        try:
            if await matches():
                return True
        except PlaywrightError as e:
            _reraise_if_recoverable(e)
        if time.monotonic() >= deadline:
            raise ElementTimeoutError(f"Timed out after {timeout:g}ms waiting for {target} to be {wanted}.")
        await ctx.sleep(cfg.POLL_INTERVAL_MS)


async def wait_until_ready(ctx: ActionContext, handle: ElementHandle, enabled=True):
    await wait_for_condition(ctx, handle.is_visible, description='element to be visible')
    if enabled:
        await wait_for_condition(ctx, handle.is_enabled, description='element to be enabled')


async def click_when_ready(ctx: ActionContext, selector: str, timeout_ms=None) -> ElementHandle:
    handle = await wait_for_element(ctx, selector, timeout_ms)
    await wait_until_ready(ctx, handle)
    await handle.click()
    return handle


# ------------------------------------------
# Typing
# ------------------------------------------

async def type_human(ctx: ActionContext, selector: str, text, timeout_ms=None, instant=False):
    """
    Type ``text`` into the element matching ``selector``.

    With human typing on, characters go in one at a time with a random delay
    between them. If the element goes stale mid-way (the page re-rendered it),
    it is looked up again and typing continues from the current character.
    """
    text = str(text or '')
    handle = await wait_for_element(ctx, selector, timeout_ms)
    await wait_until_ready(ctx, handle)

    enabled, lo, hi = typing_delay_range(ctx.config)
    if instant or not enabled:
        await handle.fill(text)
        return

    try:
        await handle.fill('')
    except PlaywrightError as e:
        _reraise_if_recoverable(e)
        ctx.log(f"Could not clear {selector} before typing ({e})", 'DEBUG')

    for ch in text:
        try:
            await handle.type(ch)
        except PlaywrightError as e:
            _reraise_if_recoverable(e)
            handle = await wait_for_element(ctx, selector, timeout_ms)
            await handle.type(ch)
        await ctx.sleep(random_int(lo, hi))


async def type_into_focused(ctx: ActionContext,
                            text,
                            refocus: Callable[[], Awaitable[None]],
                            instant=False):
    """
    Type through the keyboard into whatever element has focus.

    Chat editors are contenteditable and get re-rendered while typing; on a
    failed keystroke ``refocus`` is awaited and the same character retried.
    """
    text = str(text or '')
    enabled, lo, hi = typing_delay_range(ctx.config)
    keyboard = ctx.page.keyboard

    if instant or not enabled:
        await keyboard.insert_text(text)
        return

    for ch in text:
        try:
            await keyboard.type(ch)
        except PlaywrightError as e:
            _reraise_if_recoverable(e)
            await refocus()
            await keyboard.type(ch)
        await ctx.sleep(random_int(lo, hi))


# ------------------------------------------
# Chat input discovery
# ------------------------------------------

async def find_chat_input(ctx: ActionContext) -> Optional[ElementHandle]:
    candidates = []
    for selector in CHAT_INPUT_SELECTORS:
        try:
            candidates.extend(await ctx.page.query_selector_all(selector))
        except PlaywrightError as e:
            _reraise_if_recoverable(e)

    for handle in candidates:
        try:
            aria = await handle.get_attribute('aria-label') or ''
            if 'message' in aria.lower():
                return handle
            css_class = await handle.get_attribute('class') or ''
            if 'editor_' in css_class:
                return handle
        except PlaywrightError as e:
            _reraise_if_recoverable(e)
    return None


async def wait_for_chat_input(ctx: ActionContext, timeout_ms=None) -> ElementHandle:
    timeout = timeout_or_default(timeout_ms, ctx.config)
    deadline = time.monotonic() + timeout / 1000
    while True:
        await ctx.pause_point()
        chat = await find_chat_input(ctx)
        if chat is not None:
            return chat
        if time.monotonic() >= deadline:
            raise ElementTimeoutError("Chat input not found.")
        await ctx.sleep(cfg.POLL_INTERVAL_MS)


# ------------------------------------------
# Navigation and session clearing
# ------------------------------------------

async def navigate_to(ctx: ActionContext, url):
    target = str(url or '').strip()
    if not target:
        return
    ctx.log(f"Navigating to {target}", 'DEBUG')
    try:
        await ctx.page.goto(target)
    except PlaywrightError as e:
        ctx.log(f"Navigation to {target} failed: {e}", 'WARNING')
        if not is_recoverable_session_error(e):
            await save_screenshot(ctx, 'navigate_error')
        raise


async def clear_web_storage(ctx: ActionContext):
    try:
        await ctx.page.evaluate(CLEAR_STORAGE_SCRIPT)
    except PlaywrightError as e:
        _reraise_if_recoverable(e)
        ctx.log(f"Session clear: storage script failed ({e})", 'DEBUG')


async def clear_session_for_origin(ctx: ActionContext):
    """Visit each known origin and wipe cookies plus client-side storage"""
    origins = []
    for url in (ctx.page.url, ctx.config.base_url, ctx.config.login_url, ctx.config.logout_url):
        origin = to_origin(url)
        if origin and origin not in origins:
            origins.append(origin)

    if not origins:
        return

    for origin in origins:
        try:
            await ctx.page.goto(origin)
        except PlaywrightError as e:
            _reraise_if_recoverable(e)
            ctx.log(f"Session clear: could not navigate to {origin} ({e})", 'DEBUG')

        try:
            await ctx.browser.context.clear_cookies()
        except PlaywrightError as e:
            _reraise_if_recoverable(e)
            ctx.log(f"Session clear: clearing cookies failed for {origin} ({e})", 'DEBUG')

        await clear_web_storage(ctx)

    await ctx.sleep(500)


async def logout_and_go_to_login(ctx: ActionContext):
    await clear_session_for_origin(ctx)
    await navigate_to(ctx, ctx.config.login_url)


async def do_login(ctx: ActionContext, account: Account):
    """Fill and submit the login form for ``account`` on the current page"""
    email_sel = selector_or_default(account.email_selector, DEFAULT_EMAIL_SELECTOR)
    password_sel = selector_or_default(account.password_selector, DEFAULT_PASSWORD_SELECTOR)
    submit_sel = selector_or_default(account.submit_selector, DEFAULT_SUBMIT_SELECTOR)

    try:
        try:
            await wait_for_element(ctx, email_sel, cfg.LOGIN_FORM_PROBE_MS)
        except ElementTimeoutError:
            # Usually a leftover token redirected us away from the form
            ctx.log("Login form not detected. Clearing session and retrying login page.", 'WARNING')
            await clear_session_for_origin(ctx)
            await navigate_to(ctx, ctx.config.login_url)
            await wait_for_element(ctx, email_sel, ctx.config.element_wait_timeout_ms)

        ctx.log("Typing credentials")
        await type_human(ctx, email_sel, account.email)
        await type_human(ctx, password_sel, account.password)

        ctx.log("Submitting login form")
        await click_when_ready(ctx, submit_sel)

        if not ctx.config.no_login_delay:
            await ctx.sleep(cfg.LOGIN_REDIRECT_WAIT_MS)
    except Exception:
        ctx.log(f"Login failed. Current URL: {ctx.page.url}", 'ERROR')
        await save_screenshot(ctx, 'login_error')
        raise


# ------------------------------------------
# Screenshots
# ------------------------------------------

def screenshot_dir(config: Config) -> Path:
    return Path(config.screenshot_dir or Path.cwd() / cfg.DEFAULT_SCREENSHOT_DIR_NAME)


async def save_screenshot(ctx: ActionContext, label) -> Optional[Path]:
    """Diagnostic screenshot when ``screenshot_on_error`` is on; never raises"""
    if not ctx.config.screenshot_on_error or ctx.browser is None:
        return None
    try:
        out_dir = screenshot_dir(ctx.config)
        out_dir.mkdir(parents=True, exist_ok=True)
        out = out_dir / f"{timestamp_slug()}_{safe_slug(label)}.png"
        await ctx.page.screenshot(path=str(out))
        ctx.log(f"Saved screenshot: {out}")
        return out
    except Exception as e:
        ctx.log(f"Failed to save screenshot: {e}", 'WARNING')
        return None


async def take_screenshot(ctx: ActionContext, label='', path='', full_page=False) -> Path:
    """Screenshot requested by a task; relative paths land under screenshot_dir"""
    base = screenshot_dir(ctx.config)
    requested = str(path or '').strip()
    if requested:
        out = Path(requested)
        if not out.is_absolute():
            out = base / out
    else:
        out = base / f"{timestamp_slug()}_{safe_slug(label or 'screenshot')}.png"

    out.parent.mkdir(parents=True, exist_ok=True)
    await ctx.page.screenshot(path=str(out), full_page=bool(full_page))
    ctx.log(f"Saved screenshot: {out}")
    return out
