"""
Multi-session orchestrator - one browser per pinned account, tasks fanned out
with bounded concurrency
"""
import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, Set

import config as cfg
from dab_runner.account_selector import RunState, describe_account, find_account, normalize_email
from dab_runner.browser_manager import BrowserSession
from dab_runner.browser_ops import do_login, navigate_to, safe_slug, save_screenshot
from dab_runner.context import ActionContext
from dab_runner.control import PauseController
from dab_runner.errors import ConfigError, StopRequested
from dab_runner.logger_utils import ColoredLogger as log
from dab_runner.models import Account, Config, TaskBase, TaskType
from dab_runner.task_runner import TaskRunner

SKIPPED_NO_TARGET = "skipped: no target sessions matched"


@dataclass
class Session:
    """One browser-driving unit; ``bound_account`` is None in single-session mode"""

    id: int
    tag: Optional[str]
    browser: Optional[BrowserSession]
    bound_account: Optional[Account] = None
    state: RunState = field(default_factory=RunState)
    one_shot: Set[str] = field(default_factory=set)

    @property
    def email(self) -> str:
        if self.state.current_email:
            return self.state.current_email
        return self.bound_account.email if self.bound_account else ''

    def adopt_browser(self, browser: Optional[BrowserSession]):
        self.browser = browser


@dataclass
class Settled:
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None


@dataclass
class SessionOutcome:
    session: Session
    ran: bool = False
    success: bool = True
    detail: str = ''


async def all_settled_limit(items: Iterable,
                            limit: Optional[int],
                            fn: Callable[[Any, int], Awaitable[Any]]) -> List[Settled]:
    """
    Run ``fn(item, index)`` for every item, at most ``limit`` at a time.

    Every call runs to completion; a failure in one never cancels the others.
    Results come back in input order as Settled records.
    """
    items = list(items)
    if not items:
        return []

    n = len(items) if not limit or limit <= 0 else min(int(limit), len(items))
    semaphore = asyncio.Semaphore(max(1, n))

    async def worker(index, item):
        async with semaphore:
            return await fn(item, index)

    results = await asyncio.gather(*(worker(i, item) for i, item in enumerate(items)), return_exceptions=True)
    return [
        Settled(ok=False, error=r) if isinstance(r, BaseException) else Settled(ok=True, value=r)
        for r in results
    ]


def select_multi_session_accounts(config: Config) -> List[Account]:
    """Accounts named in multi_sessions_accounts, or every enabled account when none match"""
    enabled = list(config.enabled_accounts)
    if not enabled or not config.multi_sessions_accounts:
        return enabled

    selected = []
    seen = set()
    for key in config.multi_sessions_accounts:
        account = find_account(config.accounts, key)
        if account is None or not account.enabled or not account.email:
            continue
        email = normalize_email(account.email)
        if email in seen:
            continue
        seen.add(email)
        selected.append(account)

    if not selected:
        log.log_status("Multi sessions enabled but no selected accounts matched. Falling back to all enabled accounts.", 'WARNING')
        return enabled
    return selected


def compute_mode_signature(config: Config, selected: Sequence[Account] = ()) -> str:
    """Fingerprint of everything that requires rebuilding the browser sessions"""
    base = {
        "multi": bool(config.multi_sessions_enabled),
        "headless": bool(config.headless),
        "private": bool(config.private_browsing),
        "browser": config.browser_type,
    }
    if not config.multi_sessions_enabled:
        return json.dumps(base, sort_keys=True)
    emails = sorted(e for e in (normalize_email(a.email) for a in selected) if e)
    return json.dumps({**base, "emails": emails}, sort_keys=True)


def task_targets_session(task: TaskBase, session: Session) -> bool:
    if not task.accounts:
        return True
    email = normalize_email(session.email)
    return any(normalize_email(key) == email for key in task.accounts)


def max_parallel(config: Config, fallback: int) -> int:
    if config.multi_sessions_max_parallel <= 0:
        return max(1, fallback)
    return config.multi_sessions_max_parallel


class MultiSessionOrchestrator:
    """Owns the pinned sessions of multi-session mode"""

    def __init__(self, controller: PauseController, factory):
        self.controller = controller
        self.factory = factory
        self.sessions: List[Session] = []
        self._warned_switch: Set[str] = set()

    async def build(self, config: Config, accounts: Optional[Sequence[Account]] = None):
        """Start one browser per account (staggered), then log each one in"""
        accounts = list(accounts) if accounts is not None else select_multi_session_accounts(config)
        if not accounts:
            raise ConfigError("multi_sessions_enabled=true but there are no enabled accounts to run.")

        for i, account in enumerate(accounts):
            tag = account.name or account.email or f"S{i + 1}"
            browser = await self.factory.build(config)
            self.sessions.append(Session(id=i + 1, tag=tag, browser=browser, bound_account=account))
            log.log(tag, f"Browser started for {describe_account(account)}", 'DEBUG')
            await self.controller.controlled_sleep(cfg.SESSION_STARTUP_STAGGER_MS)

        if config.multi_sessions_auto_login and config.login_url:
            for session in self.sessions:
                await self._auto_login(config, session)
                await self.controller.controlled_sleep(cfg.AUTO_LOGIN_STAGGER_MS)

        return self.sessions

    async def _auto_login(self, config: Config, session: Session):
        account = session.bound_account
        if not account.password.strip():
            log.log(session.tag, f"Auto login skipped. Empty password for {describe_account(account)}.", 'WARNING')
            return

        ctx = ActionContext(
            config=config,
            controller=self.controller,
            factory=self.factory,
            browser=session.browser,
            state=session.state,
            tag=session.tag,
            bound_account=account,
        )
        try:
            ctx.log(f"Auto login as {describe_account(account)}")
            await navigate_to(ctx, config.login_url)
            await do_login(ctx, account)
            session.state.mark_used(account)
            ctx.log("Logged in", 'SUCCESS')
        except Exception as e:
            ctx.log(f"Auto login failed: {e}", 'WARNING')
            await save_screenshot(ctx, f"auto_login_{safe_slug(account.email)}")

    async def quit(self):
        for session in self.sessions:
            await self.factory.quit(session.browser)
            session.browser = None
        self.sessions = []

    async def run_task(self, config: Config, runner: TaskRunner, task: TaskBase, index=0) -> List[SessionOutcome]:
        """
        Run ``task`` on every session it targets.

        Returns one outcome per session. Non-targeted sessions report
        SKIPPED_NO_TARGET; SWITCH_ACCOUNT is skipped everywhere.
        StopRequested from any session is re-raised after all sessions settle.
        """
        task_key = task.id or f"task_{index}"

        if task.task_type == TaskType.SWITCH_ACCOUNT:
            if task_key not in self._warned_switch:
                self._warned_switch.add(task_key)
                log.log_status(
                    f'Skipping SWITCH_ACCOUNT task "{task_key}". Multi sessions mode pins each session '
                    f'to one account. Remove this task.',
                    'WARNING'
                )
            return [SessionOutcome(s, detail="skipped: SWITCH_ACCOUNT in multi sessions mode") for s in self.sessions]

        targets = [s for s in self.sessions if task_targets_session(task, s)]
        target_ids = {s.id for s in targets}
        outcomes = {s.id: SessionOutcome(s, detail=SKIPPED_NO_TARGET) for s in self.sessions if s.id not in target_ids}
        for outcome in outcomes.values():
            log.log(outcome.session.tag, f"Task {task_key} {SKIPPED_NO_TARGET}", 'DEBUG')

        async def run_one(session: Session, _ix):
            result = await runner.run_task(
                session.browser, task, session.state, session.one_shot,
                tag=session.tag, bound_account=session.bound_account,
                on_browser=session.adopt_browser,
            )
            session.browser = result.browser
            if task.task_type == TaskType.LOGIN and session.state.current_email:
                # Keep targeting aligned with whoever is actually logged in
                account = find_account(config.accounts, session.state.current_email)
                if account is not None:
                    session.bound_account = account
            return result

        settled = await all_settled_limit(targets, max_parallel(config, len(targets)), run_one)

        stop = None
        for session, record in zip(targets, settled):
            if record.ok:
                outcomes[session.id] = SessionOutcome(
                    session, ran=record.value.ran, success=record.value.success, detail=record.value.error
                )
            elif isinstance(record.error, StopRequested):
                stop = record.error
            else:
                log.log(session.tag, f"Task {task_key} session error: {record.error}", 'WARNING')
                outcomes[session.id] = SessionOutcome(session, ran=False, success=False, detail=str(record.error))

        if stop is not None:
            raise stop

        return [outcomes[s.id] for s in self.sessions if s.id in outcomes]
