"""
Tests for the pause/stop controller and its control channel
"""
import asyncio
import io
import json

import pytest

from dab_runner.control import ControlChannel, PauseController
from dab_runner.errors import StopRequested


class TestPausePoint:

    @pytest.mark.asyncio
    async def test_returns_immediately_when_running(self, controller):
        await controller.pause_point()
        assert not controller.paused

    @pytest.mark.asyncio
    async def test_stop_wins_over_pause(self, controller):
        controller.request_pause()
        controller.request_stop()
        with pytest.raises(StopRequested):
            await controller.pause_point()

    @pytest.mark.asyncio
    async def test_stop_raises_even_when_not_paused(self, controller):
        controller.request_stop()
        with pytest.raises(StopRequested):
            await controller.pause_point()

    @pytest.mark.asyncio
    async def test_pause_blocks_until_resume(self, controller):
        controller.request_pause()
        waiter = asyncio.ensure_future(controller.pause_point())

        for _ in range(5):
            await asyncio.sleep(0)
        assert not waiter.done()

        controller.request_resume()
        await asyncio.wait_for(waiter, timeout=1)
        assert waiter.exception() is None

    @pytest.mark.asyncio
    async def test_stop_wakes_paused_waiters(self, controller):
        controller.request_pause()
        waiters = [asyncio.ensure_future(controller.pause_point()) for _ in range(3)]
        await asyncio.sleep(0)

        controller.request_stop()
        results = await asyncio.gather(*waiters, return_exceptions=True)
        assert all(isinstance(r, StopRequested) for r in results)

    @pytest.mark.asyncio
    async def test_pause_after_stop_is_ignored(self, controller):
        controller.request_stop()
        controller.request_pause()
        assert not controller.paused

    def test_stop_requested_is_not_an_exception(self):
        # Generic "except Exception" handlers must never swallow it
        assert not issubclass(StopRequested, Exception)


class TestControlledSleep:

    @pytest.mark.asyncio
    async def test_sleep_completes(self, controller):
        await controller.controlled_sleep(1000)

    @pytest.mark.asyncio
    async def test_sleep_ignores_bad_values(self, controller):
        await controller.controlled_sleep(None)
        await controller.controlled_sleep(-5)
        await controller.controlled_sleep(float('nan'))

    @pytest.mark.asyncio
    async def test_sleep_raises_on_stop(self, controller):
        controller.request_stop()
        with pytest.raises(StopRequested):
            await controller.controlled_sleep(10_000)

    @pytest.mark.asyncio
    async def test_sleep_holds_while_paused(self, controller):
        controller.request_pause()
        sleeper = asyncio.ensure_future(controller.controlled_sleep(500))
        for _ in range(5):
            await asyncio.sleep(0)
        assert not sleeper.done()

        controller.request_resume()
        await asyncio.wait_for(sleeper, timeout=1)


class TestNotifications:

    def test_notifies_on_change_only(self):
        seen = []
        controller = PauseController(notify=seen.append)

        controller.request_pause()
        controller.request_pause()
        controller.request_resume()
        controller.request_resume()

        assert seen == [True, False]

    def test_notify_failure_does_not_break_pause(self):
        def broken(_paused):
            raise RuntimeError("pipe closed")

        controller = PauseController(notify=broken)
        controller.request_pause()
        assert controller.paused


class TestControlChannel:

    @pytest.mark.parametrize("raw,expected", [
        ('{"type": "pause"}', 'pause'),
        ('{"type": "RESUME"}', 'resume'),
        ('stop\n', 'stop'),
        ('  Pause  ', 'pause'),
        ('{"type": "reboot"}', None),
        ('{not json', None),
        ('[1, 2]', None),
        ('', None),
    ])
    def test_parse(self, raw, expected):
        assert ControlChannel.parse(raw) == expected

    def test_dispatch_drives_controller(self, controller):
        channel = ControlChannel(controller, stream=io.StringIO(), out=io.StringIO())

        channel.dispatch('pause')
        assert controller.paused

        channel.dispatch('{"type": "resume"}')
        assert not controller.paused

        channel.dispatch('stop')
        assert controller.stop_requested

    def test_pause_state_is_emitted_as_json_lines(self, controller):
        out = io.StringIO()
        ControlChannel(controller, stream=io.StringIO(), out=out)

        controller.request_pause()
        controller.request_resume()

        lines = [json.loads(line) for line in out.getvalue().splitlines()]
        assert lines == [
            {"type": "paused", "paused": True},
            {"type": "paused", "paused": False},
        ]

    @pytest.mark.asyncio
    async def test_reader_thread_forwards_commands(self, controller):
        channel = ControlChannel(controller, stream=io.StringIO("pause\n"), out=io.StringIO())
        channel.start(read_stream=True)
        try:
            for _ in range(100):
                if controller.paused:
                    break
                await asyncio.sleep(0)
                channel._thread.join(timeout=0.01)
            assert controller.paused
        finally:
            channel.close()
