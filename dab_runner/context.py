"""
Per-task execution context handed to every action and browser helper
"""
from dataclasses import dataclass
from typing import Any, Callable, Optional

from playwright.async_api import Page

from dab_runner.account_selector import RunState
from dab_runner.browser_manager import BrowserSession
from dab_runner.control import PauseController
from dab_runner.logger_utils import ColoredLogger as log
from dab_runner.models import Account, Config


@dataclass
class ActionContext:
    """
    Everything one task needs for one session.

    ``browser`` is replaced in place when an action or the recovery path
    restarts the session. ``on_browser`` is called with each replacement so
    the owning session never holds a browser that was already quit.
    ``factory`` is anything with ``async build(config)`` and ``async quit(session)``
    (BrowserManager in production, a fake in tests).
    """

    config: Config
    controller: PauseController
    factory: Any
    browser: Optional[BrowserSession]
    state: RunState
    tag: Optional[str] = None
    bound_account: Optional[Account] = None
    on_browser: Optional[Callable[[Optional[BrowserSession]], None]] = None

    def __setattr__(self, name, value):
        super().__setattr__(name, value)
        if name == 'browser' and self.on_browser is not None:
            self.on_browser(value)

    @property
    def page(self) -> Page:
        return self.browser.page

    @property
    def is_multi_session(self) -> bool:
        return bool(self.config.multi_sessions_enabled and self.bound_account is not None)

    def log(self, message, level='INFO'):
        log.log(self.tag, message, level)

    async def pause_point(self):
        await self.controller.pause_point(self.tag)

    async def sleep(self, ms):
        await self.controller.controlled_sleep(ms)
