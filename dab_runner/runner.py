"""
Automation runner - the main loop

Reloads the config every cycle, rebuilds browser sessions when the session
mode changes, runs the task list in order and repeats only while the list
ends with a LOOP_AUTOMATION task.
"""
import traceback
from pathlib import Path
from typing import Optional

import config as cfg
from dab_runner.account_selector import RunState
from dab_runner.browser_manager import BrowserManager
from dab_runner.browser_ops import random_int, save_screenshot
from dab_runner.config_loader import load_and_normalize, resolve_config_path, validate_config, validate_task_list
from dab_runner.context import ActionContext
from dab_runner.control import PauseController
from dab_runner.errors import ConfigError, StopRequested
from dab_runner.logger_utils import ColoredLogger as log
from dab_runner.models import Config, TaskType
from dab_runner.orchestrator import (
    MultiSessionOrchestrator,
    Session,
    compute_mode_signature,
    select_multi_session_accounts,
)
from dab_runner.run_ledger import RunLedger
from dab_runner.task_runner import TaskRunner

EXIT_OK = 0
EXIT_ERROR = 1


class AutomationRunner:
    """Drives single-session or multi-session automation until done or stopped"""

    def __init__(self, controller: PauseController, factory=BrowserManager, config_path=None):
        self.controller = controller
        self.factory = factory
        self.config_path = Path(config_path) if config_path else resolve_config_path()
        self.config: Optional[Config] = None
        self.single: Optional[Session] = None
        self.orchestrator = MultiSessionOrchestrator(controller, factory)
        self.ledger: Optional[RunLedger] = None
        self.cycles = 0
        self._signature = ''
        self._last_report = None
        # Single-session rotation and one-shot state survive browser rebuilds
        self._single_state = RunState()
        self._single_one_shot = set()

    # ------------------------------------------
    # Config
    # ------------------------------------------

    def load_config(self) -> Config:
        config = load_and_normalize(self.config_path)
        log.set_level(config.log_level)
        return config

    def reload_config(self, previous: Config) -> Config:
        """Fresh snapshot from disk; keeps ``previous`` when the file is mid-edit or broken"""
        try:
            config = self.load_config()
        except ConfigError as e:
            log.log_status(f"Config reload failed, keeping previous config. ({e})", 'WARNING')
            return previous
        log.log_status(f"Reloaded config: {self.config_path}", 'DEBUG')
        return config

    def report_validation(self, config: Config):
        """Log validation findings, only when they change between cycles"""
        report = validate_config(config)
        key = (tuple(report.errors), tuple(report.warnings))
        if key == self._last_report:
            return report
        self._last_report = key
        for message in report.errors:
            log.log_status(message, 'ERROR')
        for message in report.warnings:
            log.log_status(message, 'WARNING')
        return report

    def _ledger_for(self, config: Config) -> Optional[RunLedger]:
        if not config.run_ledger_path:
            self.ledger = None
        elif self.ledger is None or self.ledger.ledger_file != config.run_ledger_path:
            self.ledger = RunLedger(config.run_ledger_path)
        return self.ledger

    # ------------------------------------------
    # Sessions
    # ------------------------------------------

    async def rebuild_mode_if_needed(self, config: Config) -> bool:
        """Tear down and rebuild every session when the mode signature changed"""
        selected = select_multi_session_accounts(config) if config.multi_sessions_enabled else []
        signature = compute_mode_signature(config, selected)
        if signature == self._signature:
            return False

        self._signature = signature
        await self._teardown()

        if config.multi_sessions_enabled:
            log.log_status(f"Starting multi sessions mode. Accounts: {', '.join(a.email for a in selected)}", 'INFO')
            await self.orchestrator.build(config, selected)
        else:
            log.log_status("Starting single session mode.", 'INFO')
            browser = await self.factory.build(config)
            self.single = Session(id=0, tag=None, browser=browser,
                                  state=self._single_state, one_shot=self._single_one_shot)
            await self.controller.controlled_sleep(cfg.SINGLE_SESSION_SETTLE_MS)
        return True

    async def _teardown(self):
        if self.single is not None:
            await self.factory.quit(self.single.browser)
            self.single = None
        await self.orchestrator.quit()

    async def shutdown(self):
        log.log_status("Shutting down...", 'INFO')
        await self._teardown()
        await self.factory.close()
        if self.ledger is not None:
            summary = self.ledger.summary()
            log.log_status(f"Run ledger: {summary['OK']} ok, {summary['FAILED']} failed -> {self.ledger.ledger_file}", 'INFO')
        log.log_status("Shutdown complete", 'SUCCESS')

    # ------------------------------------------
    # Loop
    # ------------------------------------------

    async def run_cycle(self, config: Config) -> int:
        """Run every task before LOOP_AUTOMATION once; returns the number of task invocations"""
        runner = TaskRunner(config, self.controller, self.factory, self._ledger_for(config))
        invocations = 0

        for i, task in enumerate(config.tasks):
            await self.controller.pause_point()
            if task.task_type == TaskType.LOOP_AUTOMATION:
                break

            if config.multi_sessions_enabled:
                outcomes = await self.orchestrator.run_task(config, runner, task, i)
                invocations += sum(1 for o in outcomes if o.ran)
            else:
                result = await runner.run_task(self.single.browser, task, self.single.state, self.single.one_shot,
                                               on_browser=self.single.adopt_browser)
                self.single.browser = result.browser
                if result.ran:
                    invocations += 1

        return invocations

    @staticmethod
    def loop_wait_ms(config: Config) -> float:
        """LOOP_AUTOMATION.interval_ms (or tasks_interval) plus up to jitter_ms"""
        loop_task = config.tasks[-1] if config.tasks else None
        base = getattr(loop_task, 'interval_ms', None)
        if base is None or base < cfg.MIN_LOOP_INTERVAL_MS:
            base = config.tasks_interval
        jitter = random_int(0, config.jitter_ms) if config.jitter_ms > 0 else 0
        return base + jitter

    async def run(self) -> int:
        """Run until done, stopped or failed; returns the process exit code"""
        log.log_separator("🚀 DAB RUNNER STARTED")

        try:
            config = self.load_config()
        except ConfigError as e:
            log.log_status(str(e), 'ERROR')
            return EXIT_ERROR

        log.log_status(f"Using config: {self.config_path}", 'INFO')

        if not config.run_enabled:
            log.log_status("run_enabled=false. Exiting without running automation.", 'WARNING')
            return EXIT_OK

        if not config.accounts:
            log.log_status("You must specify at least one account in accounts[].", 'ERROR')
            return EXIT_ERROR

        self.config = config
        try:
            await self.rebuild_mode_if_needed(config)

            while True:
                await self.controller.pause_point()

                config = self.reload_config(config)
                self.config = config

                if not config.run_enabled:
                    log.log_status("run_enabled=false. Stopping automation.", 'WARNING')
                    return EXIT_OK

                self.report_validation(config)
                loop_check = validate_task_list(config.tasks)
                if not loop_check.ok:
                    log.log_status(loop_check.error, 'ERROR')
                    log.log_status("Stopping to prevent unexpected looping behavior. Fix your tasks order and restart.", 'ERROR')
                    return EXIT_ERROR

                await self.rebuild_mode_if_needed(config)

                invocations = await self.run_cycle(config)
                self.cycles += 1

                if not loop_check.has_loop:
                    log.log_status(f"Run complete. Task invocations: {invocations}. No LOOP_AUTOMATION task found, exiting.", 'SUCCESS')
                    return EXIT_OK

                wait_ms = self.loop_wait_ms(config)
                log.log_status(f"Loop complete. Task invocations: {invocations}. Waiting {wait_ms:.0f}ms before restarting.", 'INFO')
                await self.controller.controlled_sleep(wait_ms)

        except StopRequested:
            log.log_status("Stop requested. Shutting down...", 'WARNING')
            return EXIT_OK
        except Exception as e:
            log.log_status(f"Unhandled error: {e}", 'ERROR')
            log.log_status(traceback.format_exc(), 'ERROR')
            await self._fatal_screenshot()
            return EXIT_ERROR
        finally:
            await self.shutdown()

    async def _fatal_screenshot(self):
        if self.config is None:
            return
        sessions = [self.single] if self.single is not None else list(self.orchestrator.sessions)
        for session in sessions:
            if session.browser is None:
                continue
            ctx = ActionContext(
                config=self.config,
                controller=self.controller,
                factory=self.factory,
                browser=session.browser,
                state=session.state,
                tag=session.tag,
                bound_account=session.bound_account,
            )
            await save_screenshot(ctx, 'fatal_error')
