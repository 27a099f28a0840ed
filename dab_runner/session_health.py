"""
Session health - detect dead browser transports and replace the session
"""
from typing import Optional

import config as cfg
from dab_runner.browser_ops import do_login, navigate_to, save_screenshot, safe_slug
from dab_runner.context import ActionContext
from dab_runner.errors import RECOVERABLE_SIGNATURES, is_recoverable_session_error
from dab_runner.models import TaskType

__all__ = [
    'RECOVERABLE_SIGNATURES',
    'is_recoverable_session_error',
    'restart_browser_session',
    'ensure_session_healthy',
]


async def restart_browser_session(ctx: ActionContext, reason='restart'):
    """Quit the current browser (best effort) and put a fresh one on ``ctx``"""
    ctx.log(f"🔄 Restarting browser session ({reason})...", 'INFO')
    if ctx.browser is not None:
        await ctx.factory.quit(ctx.browser)
        ctx.browser = None
    ctx.browser = await ctx.factory.build(ctx.config)
    await ctx.sleep(cfg.SESSION_RESTART_SETTLE_MS)
    return ctx.browser


async def ensure_session_healthy(ctx: ActionContext, task_type: Optional[TaskType] = None):
    """
    Ping the session before a task and restart it if the transport is gone.

    In multi-session mode the fresh session is logged back in as its bound
    account, unless the task about to run is LOGIN or LOGOUT. A failed
    re-login is logged and the fresh session is kept. Non-recoverable ping
    failures propagate.
    """
    if ctx.browser is None:
        # A failed restart earlier left this session without a browser
        ctx.log("No browser session. Starting a new one.", 'WARNING')
    elif not ctx.config.session_health_check:
        return ctx.browser
    else:
        try:
            await ctx.browser.ping()
            return ctx.browser
        except Exception as e:
            if not is_recoverable_session_error(e):
                raise
            ctx.log(f"Session health check failed. Restarting session. ({e})", 'WARNING')

    label = task_type.value if task_type else 'task'
    await restart_browser_session(ctx, f"health:{label}")

    account = ctx.bound_account
    wants_reauth = (
        ctx.is_multi_session
        and ctx.config.multi_sessions_auto_login
        and ctx.config.login_url
        and task_type not in (TaskType.LOGIN, TaskType.LOGOUT)
        and account is not None
        and account.password.strip()
    )
    if wants_reauth:
        try:
            ctx.log(f"Re-authenticating as {account.email} after session restart")
            await navigate_to(ctx, ctx.config.login_url)
            await do_login(ctx, account)
            ctx.state.mark_used(account)
        except Exception as e:
            ctx.log(f"Auto re-login failed after session restart: {e}", 'WARNING')
            await save_screenshot(ctx, f"health_reauth_{safe_slug(account.email)}")

    return ctx.browser
