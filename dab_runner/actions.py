"""
Task actions - one handler per task type

Each handler performs one logical browser operation and raises on failure.
Retries and failure reporting belong to the task runner. Handlers that
replace the browser (LOGIN, LOGOUT, SWITCH_ACCOUNT) leave the fresh session
on ``ctx.browser``.
"""
import re
import time
from typing import Awaitable, Callable, Dict

from playwright.async_api import Error as PlaywrightError

from dab_runner.account_selector import describe_account, find_account, normalize_email, select_next
from dab_runner.browser_ops import (
    DEFAULT_FILE_INPUT_SELECTOR,
    DEFAULT_SUBMIT_SELECTOR,
    clear_session_for_origin,
    click_when_ready,
    do_login,
    logout_and_go_to_login,
    navigate_to,
    random_int,
    resolve_key,
    resolve_selector,
    selector_or_default,
    take_screenshot,
    timeout_or_default,
    type_into_focused,
    wait_for_chat_input,
    wait_for_element,
    wait_for_selector_state,
    wait_until_ready,
)
from dab_runner.context import ActionContext
from dab_runner.errors import TaskConfigError, is_recoverable_session_error
from dab_runner.models import Selector, TaskBase, TaskType
from dab_runner.session_health import restart_browser_session

Handler = Callable[[ActionContext, TaskBase], Awaitable[None]]

# Autocomplete pickers: listbox options first, then the older id-based markup
PICKER_OPTION_SELECTORS = (
    '[role="listbox"] [role="option"]',
    '[role="listbox"] [data-list-item-id]',
    '[id^="autocomplete-"]',
)
PICKER_POLL_MS = 120


def post_wait(task: TaskBase, default_ms: float) -> float:
    return default_ms if task.post_wait_ms is None else task.post_wait_ms


def normalize_emoji(value) -> str:
    """
    Turn a SEND_EMOJI value into what the chat box expects.

    ``smile`` -> ``:smile:``; ``:smile:`` and custom ``<a:name:id>`` markup
    are kept; anything else (unicode emoji) is sent as is.
    """
    v = str(value or '').strip()
    if not v:
        return ''
    if re.fullmatch(r'<a?:[A-Za-z0-9_]+:\d+>', v):
        return v
    if re.fullmatch(r':[^\s:]{1,64}:', v):
        return v
    if re.fullmatch(r'[A-Za-z0-9_]{1,64}', v):
        return f":{v}:"
    return v


async def _navigate_best_effort(ctx: ActionContext, url):
    try:
        await navigate_to(ctx, url)
    except PlaywrightError as e:
        if is_recoverable_session_error(e):
            raise
        ctx.log(f"Ignoring navigation failure to {url}", 'DEBUG')


async def _focus_chat(ctx: ActionContext, task: TaskBase):
    """Locate the message box (task selector first, then the chat fallbacks) and click it"""
    selector = getattr(task, 'selector', None)
    if isinstance(selector, Selector) and not selector.is_empty:
        chat = await wait_for_element(ctx, resolve_selector(selector), task.timeout_ms)
    else:
        chat = await wait_for_chat_input(ctx, ctx.config.element_wait_timeout_ms)
    await chat.click()
    return chat


# ------------------------------------------
# Accounts
# ------------------------------------------

async def login(ctx: ActionContext, task):
    requested_key = task.account.strip()

    if ctx.is_multi_session:
        account = ctx.bound_account
        if requested_key:
            requested = find_account(ctx.config.accounts, requested_key)
            if requested is not None and normalize_email(requested.email) != normalize_email(account.email):
                ctx.log(
                    f"LOGIN task specifies {describe_account(requested)} but this session is pinned to "
                    f"{describe_account(account)}. Using the pinned account.",
                    'WARNING'
                )
    else:
        if not requested_key:
            raise TaskConfigError('LOGIN task is missing "account". Provide an account email or name.')
        account = find_account(ctx.config.accounts, requested_key)
        if account is None:
            raise TaskConfigError(f"LOGIN task account not found: {requested_key}")
        if not account.enabled:
            raise TaskConfigError(f"LOGIN task account is disabled: {describe_account(account)}")

    if not account.password.strip():
        raise TaskConfigError(f"LOGIN task account has empty password: {describe_account(account)}")

    ctx.log(f"🔐 LOGIN as {describe_account(account)}")

    if ctx.is_multi_session or ctx.config.restart_browser_on_login:
        await restart_browser_session(ctx, 'LOGIN')
        await navigate_to(ctx, ctx.config.login_url)
    else:
        await logout_and_go_to_login(ctx)

    await do_login(ctx, account)
    ctx.state.mark_used(account)


async def logout(ctx: ActionContext, task):
    key = task.account.strip()
    if key:
        requested = find_account(ctx.config.accounts, key)
        if requested is None:
            ctx.log(f"LOGOUT account not found in config: {key}. Proceeding to clear session anyway.", 'WARNING')
        elif ctx.state.current_email and normalize_email(requested.email) != normalize_email(ctx.state.current_email):
            ctx.log(
                f"LOGOUT requested {describe_account(requested)} but current session is "
                f"{ctx.state.current_email}. Clearing session anyway.",
                'WARNING'
            )

    restart = ctx.config.restart_browser_on_logout
    ctx.log(f"LOGOUT ({'restart browser session' if restart else 'clear session'})")

    if restart:
        await restart_browser_session(ctx, 'LOGOUT')
        await _navigate_best_effort(ctx, ctx.config.login_url)
    else:
        # Server-side logout first, then wipe whatever the client kept
        if ctx.config.logout_url:
            await _navigate_best_effort(ctx, ctx.config.logout_url)
            await ctx.sleep(750)
        await clear_session_for_origin(ctx)
        try:
            await ctx.page.reload()
        except PlaywrightError as e:
            if is_recoverable_session_error(e):
                raise
            ctx.log(f"Reload after session clear failed ({e})", 'DEBUG')
        await _navigate_best_effort(ctx, ctx.config.login_url)

    ctx.state.current_email = ''


async def switch_account(ctx: ActionContext, task):
    explicit = task.account.strip()

    if explicit:
        target = find_account(ctx.config.accounts, explicit)
        if target is None:
            raise TaskConfigError(f"SWITCH_ACCOUNT explicit account not found: {explicit}")
        if not target.enabled:
            raise TaskConfigError(f"SWITCH_ACCOUNT account is disabled: {describe_account(target)}")
    else:
        pick = select_next(ctx.config.accounts, ctx.state, ctx.state.current_email)
        if pick.account is None:
            ctx.log(f"SWITCH_ACCOUNT: no eligible account right now. Waiting {pick.wait_ms:.0f}ms.")
            await ctx.sleep(pick.wait_ms)
            return
        target = pick.account

    if not target.password:
        raise TaskConfigError(f"SWITCH_ACCOUNT selected account has empty password: {describe_account(target)}")

    ctx.log(f"🔀 SWITCH_ACCOUNT to {describe_account(target)}")

    if ctx.config.restart_browser_on_switch_account:
        await restart_browser_session(ctx, 'SWITCH_ACCOUNT')
        await _navigate_best_effort(ctx, ctx.config.login_url)
    else:
        await logout_and_go_to_login(ctx)

    await do_login(ctx, target)
    ctx.state.mark_used(target)


# ------------------------------------------
# Chat
# ------------------------------------------

async def upload_file(ctx: ActionContext, task):
    paths = task.file_paths
    if not paths:
        raise TaskConfigError('UPLOAD_FILE task is missing "files".')

    await navigate_to(ctx, task.url)

    file_selector = selector_or_default(task.file_input, DEFAULT_FILE_INPUT_SELECTOR)
    submit_selector = selector_or_default(task.submit, DEFAULT_SUBMIT_SELECTOR)

    file_input = await wait_for_element(ctx, file_selector, task.timeout_ms)
    # A list selects every file at once on <input type="file" multiple>
    await file_input.set_input_files(list(paths))
    ctx.log(f"Selected {len(paths)} file(s) for upload")

    await click_when_ready(ctx, submit_selector, task.timeout_ms)
    await ctx.sleep(post_wait(task, 2000))


async def send_message(ctx: ActionContext, task):
    if not task.message.strip():
        raise TaskConfigError('SEND_MESSAGE task is missing "message".')
    await navigate_to(ctx, task.url)
    await _focus_chat(ctx, task)

    async def refocus():
        await _focus_chat(ctx, task)

    await type_into_focused(ctx, task.message, refocus, instant=task.instant)

    # Mentions and emoji may open a suggestion list; accept its first entry
    try:
        suggestion = await ctx.page.query_selector('#autocomplete-0')
        if suggestion is not None:
            await suggestion.click()
    except PlaywrightError as e:
        if is_recoverable_session_error(e):
            raise

    await ctx.page.keyboard.press('Enter')
    await ctx.sleep(post_wait(task, 250))


async def _find_picker_options(ctx: ActionContext):
    for selector in PICKER_OPTION_SELECTORS:
        try:
            options = await ctx.page.query_selector_all(selector)
        except PlaywrightError as e:
            if is_recoverable_session_error(e):
                raise
            options = []
        if options:
            return options
    return []


async def _pick_option_by_text(options, command: str):
    desired = command.lower()
    for option in options:
        try:
            text = (await option.inner_text()).strip().lower()
        except PlaywrightError as e:
            if is_recoverable_session_error(e):
                raise
            continue
        if text and (text.startswith(desired) or f"\n{desired}" in text or f" {desired}" in text):
            return option
    return None


async def slash_command(ctx: ActionContext, task):
    command = task.command.strip()
    if not command:
        raise TaskConfigError('SLASH_COMMAND task is missing "command".')
    if not command.startswith('/'):
        command = '/' + command

    await navigate_to(ctx, task.url)
    await _focus_chat(ctx, task)

    async def refocus():
        await _focus_chat(ctx, task)

    await type_into_focused(ctx, command, refocus, instant=task.instant)

    await ctx.sleep(600 if task.pre_select_wait_ms is None else task.pre_select_wait_ms)

    timeout = max(500, 2500 if task.autocomplete_timeout_ms is None else task.autocomplete_timeout_ms)
    deadline = time.monotonic() + timeout / 1000
    options = []
    while True:
        await ctx.pause_point()
        options = await _find_picker_options(ctx)
        if options or time.monotonic() >= deadline:
            break
        await ctx.sleep(PICKER_POLL_MS)

    picked = None
    if options:
        picked = await _pick_option_by_text(options, command)
        if picked is None and task.option_index < len(options):
            picked = options[task.option_index]

    keyboard = ctx.page.keyboard
    if picked is not None:
        try:
            await picked.click()
        except PlaywrightError as e:
            if is_recoverable_session_error(e):
                raise
            ctx.log(f"Picker click failed, selecting option {task.option_index} with the keyboard", 'DEBUG')
            for _ in range(task.option_index + 1):
                await keyboard.press('ArrowDown')
            await keyboard.press('Enter')
    else:
        ctx.log("No command picker appeared. Sending the command as typed.", 'DEBUG')

    await ctx.sleep(200 if task.post_select_wait_ms is None else task.post_select_wait_ms)
    await keyboard.press('Enter')
    await ctx.sleep(post_wait(task, 1000))


async def send_emoji(ctx: ActionContext, task):
    text = normalize_emoji(task.emoji)
    if not text:
        raise TaskConfigError('SEND_EMOJI task is missing "emoji".')

    await navigate_to(ctx, task.url)
    await _focus_chat(ctx, task)

    async def refocus():
        await _focus_chat(ctx, task)

    await type_into_focused(ctx, text, refocus, instant=task.instant)
    await ctx.sleep(100)
    await ctx.page.keyboard.press('Enter')
    await ctx.sleep(post_wait(task, 250))


# ------------------------------------------
# Generic page primitives
# ------------------------------------------

async def navigate(ctx: ActionContext, task):
    if not task.url:
        raise TaskConfigError('NAVIGATE task is missing "url".')
    await navigate_to(ctx, task.url)
    await ctx.sleep(post_wait(task, 1000))


async def click(ctx: ActionContext, task):
    selector = resolve_selector(task.selector)
    await click_when_ready(ctx, selector, task.timeout_ms)
    await ctx.sleep(post_wait(task, 1000))


async def fill(ctx: ActionContext, task):
    selector = resolve_selector(task.selector)
    handle = await wait_for_element(ctx, selector, task.timeout_ms)
    await wait_until_ready(ctx, handle, enabled=False)
    await handle.click()

    if task.clear:
        try:
            await handle.fill('')
        except PlaywrightError as e:
            if is_recoverable_session_error(e):
                raise
            # Not every element supports fill(); select-all and delete instead
            await ctx.page.keyboard.press('ControlOrMeta+A')
            await ctx.page.keyboard.press('Backspace')

    async def refocus():
        fresh = await wait_for_element(ctx, selector, task.timeout_ms)
        await fresh.click()

    await type_into_focused(ctx, task.text, refocus, instant=task.instant)
    await ctx.sleep(post_wait(task, 250))


async def press_key(ctx: ActionContext, task):
    key = resolve_key(task.key)
    if not key:
        raise TaskConfigError('PRESS_KEY task is missing "key".')

    for _ in range(task.times):
        await ctx.page.keyboard.press(key)
        await ctx.sleep(random_int(10, 25) * 10)

    await ctx.sleep(post_wait(task, 0))


async def wait(ctx: ActionContext, task):
    if task.seconds is None:
        raise TaskConfigError('WAIT task is missing a valid "seconds" number (>= 0).')
    ctx.log(f"WAIT {task.seconds:g}s")
    await ctx.sleep(round(task.seconds * 1000))


async def wait_for_selector(ctx: ActionContext, task):
    await wait_for_selector_state(ctx, task.selector, task.state, task.timeout_ms)
    await ctx.sleep(post_wait(task, 0))


async def wait_for_navigation(ctx: ActionContext, task):
    timeout = timeout_or_default(task.timeout_ms, ctx.config)
    url_exact = task.url.strip()
    url_contains = task.url_contains.strip()
    before = ctx.page.url if not (url_exact or url_contains) else ''

    def arrived(current: str) -> bool:
        if url_exact:
            return current == url_exact
        if url_contains:
            return url_contains in current
        return bool(current) and current != before

    deadline = time.monotonic() + timeout / 1000
    while not arrived(ctx.page.url):
        if time.monotonic() >= deadline:
            raise TimeoutError(f"WAIT_FOR_NAVIGATION timed out after {timeout:g}ms.")
        await ctx.pause_point()
        await ctx.sleep(250)

    await ctx.sleep(post_wait(task, 0))


async def screenshot(ctx: ActionContext, task):
    await take_screenshot(ctx, label=task.label or task.id, path=task.path, full_page=task.full_page)
    await ctx.sleep(post_wait(task, 0))


async def loop_automation(ctx: ActionContext, task):
    """Handled by the main loop; nothing to do here"""


ACTIONS: Dict[TaskType, Handler] = {
    TaskType.LOGIN: login,
    TaskType.LOGOUT: logout,
    TaskType.SWITCH_ACCOUNT: switch_account,
    TaskType.UPLOAD_FILE: upload_file,
    TaskType.SEND_MESSAGE: send_message,
    TaskType.SLASH_COMMAND: slash_command,
    TaskType.SEND_EMOJI: send_emoji,
    TaskType.NAVIGATE: navigate,
    TaskType.CLICK: click,
    TaskType.FILL: fill,
    TaskType.PRESS_KEY: press_key,
    TaskType.WAIT: wait,
    TaskType.WAIT_FOR_SELECTOR: wait_for_selector,
    TaskType.WAIT_FOR_NAVIGATION: wait_for_navigation,
    TaskType.SCREENSHOT: screenshot,
    TaskType.LOOP_AUTOMATION: loop_automation,
}
