"""
Task runner - gates, health check, dispatch and single-retry recovery for one task
"""
import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Set

from dab_runner.account_selector import RunState
from dab_runner.actions import ACTIONS
from dab_runner.browser_manager import BrowserSession
from dab_runner.browser_ops import save_screenshot, safe_slug
from dab_runner.context import ActionContext
from dab_runner.control import PauseController
from dab_runner.errors import is_recoverable_session_error
from dab_runner.logger_utils import ColoredLogger as log
from dab_runner.models import Account, Config, TaskBase, TaskType
from dab_runner.run_ledger import RunLedger
from dab_runner.session_health import ensure_session_healthy, restart_browser_session

CheckHandler = Callable[[Config, TaskBase, RunState], bool]

# Named gates a task can reference through ``check_handler``
CHECK_HANDLERS: Dict[str, CheckHandler] = {
    'always': lambda config, task, state: True,
    'never': lambda config, task, state: False,
    'logged_in': lambda config, task, state: bool(state.current_email),
    'logged_out': lambda config, task, state: not state.current_email,
}


def register_check_handler(name: str, handler: Optional[CheckHandler] = None):
    """Register a custom gate; usable as ``@register_check_handler('name')``"""
    def decorator(fn):
        CHECK_HANDLERS[name.strip()] = fn
        return fn
    if handler is not None:
        return decorator(handler)
    return decorator


@dataclass
class TaskResult:
    ran: bool
    success: bool
    browser: Optional[BrowserSession]
    error: str = ''


class TaskRunner:
    """Runs one task against one session; built per cycle from that cycle's Config"""

    def __init__(self, config: Config, controller: PauseController, factory, ledger: Optional[RunLedger] = None):
        self.config = config
        self.controller = controller
        self.factory = factory
        self.ledger = ledger
        self._warned_handlers: Set[str] = set()

    def check_gate(self, task: TaskBase, state: RunState, tag=None) -> bool:
        """True when the task's check_handler (if any) allows it to run"""
        name = task.check_handler
        if not name:
            return True
        handler = CHECK_HANDLERS.get(name)
        if handler is None:
            if name not in self._warned_handlers:
                self._warned_handlers.add(name)
                log.log(tag, f"Unknown check_handler '{name}' on task {task.display_id}. Running it anyway.", 'WARNING')
            return True
        try:
            return bool(handler(self.config, task, state))
        except Exception as e:
            log.log(tag, f"check_handler '{name}' raised for task {task.display_id}; skipping it. ({e})", 'WARNING')
            return False

    async def run_task(self,
                       browser: Optional[BrowserSession],
                       task: TaskBase,
                       state: RunState,
                       one_shot: Set[str],
                       tag: Optional[str] = None,
                       bound_account: Optional[Account] = None,
                       attempt: int = 0,
                       on_browser: Optional[Callable[[Optional[BrowserSession]], None]] = None) -> TaskResult:
        """
        Run ``task`` once against ``browser``.

        Skips (ran=False, success=True) for: one-shot tasks already run,
        disabled tasks, a declining check_handler, unknown types.
        A recoverable session error restarts the browser and retries once.
        Any other failure is logged and returned as success=False.
        StopRequested is never caught here; pass ``on_browser`` to learn about
        a restarted browser even when the task is interrupted.
        """
        task_id = task.display_id

        if task.oneshot and task_id in one_shot:
            return TaskResult(ran=False, success=True, browser=browser)

        if not task.enabled:
            log.log(tag, f"Task {task_id} is disabled. Skipping.", 'DEBUG')
            return TaskResult(ran=False, success=True, browser=browser)

        if not self.check_gate(task, state, tag):
            log.log(tag, f"Task {task_id} declined by check_handler '{task.check_handler}'.", 'DEBUG')
            return TaskResult(ran=False, success=True, browser=browser)

        task_type = task.task_type
        if task_type is None:
            log.log(tag, f"Unknown task type for {task_id}: {task.type or '(empty)'}. Skipping.", 'WARNING')
            return TaskResult(ran=False, success=True, browser=browser)

        ctx = ActionContext(
            config=self.config,
            controller=self.controller,
            factory=self.factory,
            browser=browser,
            state=state,
            tag=tag,
            bound_account=bound_account,
            on_browser=on_browser,
        )

        started_at = datetime.now()
        t0 = time.monotonic()
        try:
            if task_type != TaskType.LOOP_AUTOMATION:
                await ensure_session_healthy(ctx, task_type)
                if attempt == 0:
                    ctx.log(f"▶ Running task {task_id} ({task_type.value})")
            await ACTIONS[task_type](ctx, task)
        except Exception as e:
            if self.config.auto_restart_on_session_error and attempt < 1 and is_recoverable_session_error(e):
                ctx.log(f"♻️ Recoverable session error. Restarting session and retrying task {task_id}. ({e})", 'WARNING')
                try:
                    await restart_browser_session(ctx, f"recover:{task_id}")
                except Exception as restart_err:
                    ctx.log(f"Auto-recovery restart failed for task {task_id}. ({restart_err})", 'WARNING')
                else:
                    return await self.run_task(ctx.browser, task, state, one_shot,
                                               tag=tag, bound_account=bound_account, attempt=attempt + 1,
                                               on_browser=on_browser)

            ctx.log(f"❌ Task {task_id} failed: {e}", 'ERROR')
            await save_screenshot(ctx, f"task_{safe_slug(task_id)}_error")
            await self._record(ctx, task, False, attempt, e, started_at, t0)
            return TaskResult(ran=True, success=False, browser=ctx.browser, error=str(e))

        if task.oneshot:
            one_shot.add(task_id)
        if attempt > 0:
            ctx.log(f"✅ Task {task_id} succeeded after session recovery", 'SUCCESS')
        elif task_type != TaskType.LOOP_AUTOMATION:
            ctx.log(f"✅ Task {task_id} done", 'SUCCESS')
        await self._record(ctx, task, True, attempt, None, started_at, t0)
        return TaskResult(ran=True, success=True, browser=ctx.browser)

    async def _record(self, ctx: ActionContext, task: TaskBase, success, attempt, error, started_at, t0):
        if self.ledger is None or task.task_type == TaskType.LOOP_AUTOMATION:
            return
        account = ctx.bound_account.email if ctx.bound_account else ctx.state.current_email
        await asyncio.to_thread(
            self.ledger.record,
            ctx.tag, account, task.display_id, task.type, success,
            attempts=attempt + 1,
            error=error or "",
            started_at=started_at,
            duration_s=time.monotonic() - t0,
        )
