"""
Tests for the main loop: cycle/exit rules, hot reload and mode rebuilds
"""
import json

import pytest

from dab_runner.actions import ACTIONS
from dab_runner.models import TaskType
from dab_runner.runner import EXIT_ERROR, EXIT_OK, AutomationRunner
from tests.conftest import make_config, write_config

NAVIGATE = {"id": "go", "type": "NAVIGATE", "url": "https://chat.example.com/channels/1"}
LOOP = {"id": "loop", "type": "LOOP_AUTOMATION", "interval_ms": 100}


@pytest.fixture
def config_file(tmp_path):
    return tmp_path / "config.json"


def make_runner(controller, factory, path):
    return AutomationRunner(controller, factory=factory, config_path=path)


class TestExitRules:

    @pytest.mark.asyncio
    async def test_runs_once_without_loop(self, controller, factory, config_file):
        write_config(config_file, tasks=[NAVIGATE, {"id": "pause", "type": "WAIT", "seconds": 1}])
        runner = make_runner(controller, factory, config_file)

        code = await runner.run()

        assert code == EXIT_OK
        assert runner.cycles == 1
        assert factory.built[0].page.visits == ["https://chat.example.com/channels/1"]
        assert factory.closed
        assert factory.quit_calls == [factory.built[0]]

    @pytest.mark.asyncio
    async def test_loop_repeats_until_stop(self, monkeypatch, controller, factory, config_file):
        calls = []

        async def action(ctx, task):
            calls.append(task.id)
            if len(calls) == 3:
                controller.request_stop()

        monkeypatch.setitem(ACTIONS, TaskType.NAVIGATE, action)
        write_config(config_file, tasks=[NAVIGATE, LOOP])
        runner = make_runner(controller, factory, config_file)

        code = await runner.run()

        assert code == EXIT_OK
        assert calls == ["go", "go", "go"]
        # The stop lands inside the third cycle
        assert runner.cycles == 2
        assert factory.closed

    @pytest.mark.asyncio
    async def test_bad_task_order_stops_before_running(self, monkeypatch, controller, factory, config_file, log_lines):
        calls = []

        async def action(ctx, task):
            calls.append(task.id)

        monkeypatch.setitem(ACTIONS, TaskType.NAVIGATE, action)
        write_config(config_file, tasks=[LOOP, NAVIGATE])

        code = await make_runner(controller, factory, config_file).run()

        assert code == EXIT_ERROR
        assert calls == []
        assert any("LOOP_AUTOMATION must be the last task" in text for _, text in log_lines)

    @pytest.mark.asyncio
    async def test_run_disabled(self, controller, factory, config_file):
        write_config(config_file, run_enabled=False, tasks=[NAVIGATE])
        code = await make_runner(controller, factory, config_file).run()
        assert code == EXIT_OK
        assert factory.built == []

    @pytest.mark.asyncio
    async def test_no_accounts(self, controller, factory, config_file):
        write_config(config_file, accounts=[], tasks=[NAVIGATE])
        code = await make_runner(controller, factory, config_file).run()
        assert code == EXIT_ERROR
        assert factory.built == []

    @pytest.mark.asyncio
    async def test_missing_config(self, controller, factory, config_file):
        code = await make_runner(controller, factory, config_file).run()
        assert code == EXIT_ERROR

    @pytest.mark.asyncio
    async def test_browser_launch_failure_is_fatal(self, controller, factory, config_file):
        factory.fail_build = RuntimeError("Executable doesn't exist")
        write_config(config_file, tasks=[NAVIGATE])

        code = await make_runner(controller, factory, config_file).run()

        assert code == EXIT_ERROR
        assert factory.closed

    @pytest.mark.asyncio
    async def test_task_failure_does_not_stop_the_run(self, monkeypatch, controller, factory, config_file):
        async def action(ctx, task):
            raise ValueError("broken")

        monkeypatch.setitem(ACTIONS, TaskType.NAVIGATE, action)
        write_config(config_file, tasks=[NAVIGATE, {"id": "shot", "type": "SCREENSHOT", "path": "after.png"}])

        code = await make_runner(controller, factory, config_file).run()

        assert code == EXIT_OK
        assert factory.built[0].page.screenshots[0][0].endswith("after.png")


class TestHotReload:

    @pytest.mark.asyncio
    async def test_run_enabled_switched_off_mid_run(self, monkeypatch, controller, factory, config_file):
        calls = []

        async def action(ctx, task):
            calls.append(task.id)
            write_config(config_file, run_enabled=False, tasks=[NAVIGATE, LOOP])

        monkeypatch.setitem(ACTIONS, TaskType.NAVIGATE, action)
        write_config(config_file, tasks=[NAVIGATE, LOOP])

        code = await make_runner(controller, factory, config_file).run()

        assert code == EXIT_OK
        assert calls == ["go"]

    @pytest.mark.asyncio
    async def test_broken_file_keeps_previous_config(self, monkeypatch, controller, factory, config_file, log_lines):
        calls = []

        async def action(ctx, task):
            calls.append(task.id)
            if len(calls) == 1:
                config_file.write_text("{ half written", encoding="utf-8")
            else:
                controller.request_stop()

        monkeypatch.setitem(ACTIONS, TaskType.NAVIGATE, action)
        write_config(config_file, tasks=[NAVIGATE, LOOP])

        code = await make_runner(controller, factory, config_file).run()

        assert code == EXIT_OK
        assert calls == ["go", "go"]
        assert any("keeping previous config" in text for _, text in log_lines)

    @pytest.mark.asyncio
    async def test_switch_to_multi_sessions_rebuilds(self, monkeypatch, controller, factory, config_file):
        calls = []

        async def action(ctx, task):
            calls.append(ctx.tag)
            if len(calls) == 1:
                write_config(config_file, tasks=[NAVIGATE, LOOP],
                             multi_sessions_enabled=True, multi_sessions_auto_login=False)
            if len(calls) == 4:
                controller.request_stop()

        monkeypatch.setitem(ACTIONS, TaskType.NAVIGATE, action)
        write_config(config_file, tasks=[NAVIGATE, LOOP])
        runner = make_runner(controller, factory, config_file)

        code = await runner.run()

        assert code == EXIT_OK
        assert calls[0] is None
        assert sorted(calls[1:]) == ["Acc1", "Acc2", "Acc3"]
        assert len(factory.built) == 4
        assert factory.quit_calls[0] is factory.built[0]
        assert len(factory.quit_calls) == 4

    @pytest.mark.asyncio
    async def test_ledger_is_written(self, controller, factory, config_file, tmp_path):
        ledger = tmp_path / "runs.csv"
        write_config(config_file, tasks=[NAVIGATE], run_ledger_path=str(ledger))

        code = await make_runner(controller, factory, config_file).run()

        assert code == EXIT_OK
        lines = ledger.read_text(encoding="utf-8").splitlines()
        assert lines[0].startswith("Session,Account,Task ID")
        assert ",go,NAVIGATE,OK," in lines[1]


class TestLoopWait:

    def test_loop_interval(self):
        config = make_config(tasks=[NAVIGATE, {**LOOP, "interval_ms": 300}])
        assert AutomationRunner.loop_wait_ms(config) == 300

    def test_tiny_interval_uses_tasks_interval(self):
        config = make_config(tasks_interval=2000, tasks=[NAVIGATE, {**LOOP, "interval_ms": 10}])
        assert AutomationRunner.loop_wait_ms(config) == 2000

    def test_jitter_is_bounded(self):
        config = make_config(jitter_ms=50, tasks=[NAVIGATE, {**LOOP, "interval_ms": 100}])
        for _ in range(20):
            assert 100 <= AutomationRunner.loop_wait_ms(config) <= 150


def test_write_config_helper_round_trips(config_file):
    write_config(config_file, tasks=[NAVIGATE])
    assert json.loads(config_file.read_text(encoding="utf-8"))["tasks"] == [NAVIGATE]
