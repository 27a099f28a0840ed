"""
Pause / resume / stop control - cooperative suspension shared by every session
"""
import asyncio
import json
import signal
import sys
import threading
import time
from typing import Callable, Optional

import config as cfg
from dab_runner.errors import StopRequested
from dab_runner.logger_utils import ColoredLogger as log


class PauseController:
    """Process-wide pause/stop state observed at every suspension point.

    One instance is created by the entry point and passed explicitly to the
    runner, the orchestrator and every action. ``request_*`` methods must be
    called on the event loop thread (``ControlChannel`` takes care of that).
    """

    def __init__(self, notify: Optional[Callable[[bool], None]] = None):
        self._paused = False
        self._stop_requested = False
        # Set while running, cleared while paused; every waiter blocks on it
        self._resume = asyncio.Event()
        self._resume.set()
        self.notify = notify
        self._last_notified = False
        self._last_pause_log = 0.0

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def _broadcast(self):
        """Tell the external controller about a pause-state change (changes only)"""
        if self._paused == self._last_notified:
            return
        self._last_notified = self._paused
        if self.notify:
            try:
                self.notify(self._paused)
            except Exception as e:
                log.log_status(f"Pause-state notification failed: {e}", 'WARNING')

    def request_pause(self):
        if self._stop_requested:
            return
        self._paused = True
        self._resume.clear()
        self._broadcast()

    def request_resume(self):
        self._paused = False
        self._resume.set()
        self._broadcast()

    def request_stop(self):
        self._stop_requested = True
        # Wake every paused waiter so it can observe the stop
        self.request_resume()

    async def pause_point(self, tag: Optional[str] = None):
        """Raise StopRequested if stopping, else block while paused."""
        if self._stop_requested:
            raise StopRequested()

        if not self._paused:
            return

        now = time.monotonic() * 1000
        if now - self._last_pause_log > cfg.PAUSE_LOG_THROTTLE_MS:
            self._last_pause_log = now
            log.log(tag, "Paused. Waiting for resume...", 'INFO')

        while self._paused and not self._stop_requested:
            await self._resume.wait()

        if self._stop_requested:
            raise StopRequested()

    async def controlled_sleep(self, ms):
        """Pause-aware sleep, checked every SLEEP_STEP_MS"""
        try:
            remaining = float(ms)
        except (TypeError, ValueError):
            return
        if remaining != remaining or remaining <= 0:
            return

        while remaining > 0:
            await self.pause_point()
            chunk = min(cfg.SLEEP_STEP_MS, remaining)
            await asyncio.sleep(chunk / 1000)
            remaining -= chunk


class ControlChannel:
    """External control input/output for a PauseController.

    Input: newline-delimited commands on a stream (stdin by default), either
    JSON objects like ``{"type": "pause"}`` or bare words ``pause``,
    ``resume``, ``stop``. SIGINT/SIGTERM request a stop; SIGUSR1/SIGUSR2
    pause and resume where the platform has them.

    Output: ``{"type": "paused", "paused": bool}`` JSON lines on a stream
    (stdout by default), wired up as the controller's notify callback.
    Console logs should go elsewhere (see ColoredLogger.set_console_stream)
    so a parent process reads only these lines from ``out``.
    """

    COMMANDS = ('pause', 'resume', 'stop')

    def __init__(self, controller: PauseController, stream=None, out=None):
        self.controller = controller
        self.stream = stream if stream is not None else sys.stdin
        self.out = out if out is not None else sys.stdout
        controller.notify = self.emit_paused
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._signals = []

    @classmethod
    def parse(cls, raw) -> Optional[str]:
        """Return the command named by one input line, or None"""
        text = str(raw or '').strip()
        if not text:
            return None
        if text.startswith('{'):
            try:
                msg = json.loads(text)
            except json.JSONDecodeError:
                return None
            if not isinstance(msg, dict):
                return None
            text = str(msg.get('type') or '')
        command = text.strip().lower()
        return command if command in cls.COMMANDS else None

    def dispatch(self, raw):
        command = self.parse(raw)
        if command == 'pause':
            self.controller.request_pause()
        elif command == 'resume':
            self.controller.request_resume()
        elif command == 'stop':
            self.controller.request_stop()

    def emit_paused(self, paused: bool):
        try:
            self.out.write(json.dumps({"type": "paused", "paused": bool(paused)}) + "\n")
            self.out.flush()
        except (OSError, ValueError) as e:
            log.log_status(f"Could not emit pause state: {e}", 'WARNING')

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None, read_stream=True):
        """Install signal handlers and start the reader thread"""
        self._loop = loop or asyncio.get_running_loop()

        handlers = [
            ('SIGINT', self.controller.request_stop),
            ('SIGTERM', self.controller.request_stop),
            ('SIGUSR1', self.controller.request_pause),
            ('SIGUSR2', self.controller.request_resume),
        ]
        for name, handler in handlers:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            try:
                self._loop.add_signal_handler(signum, handler)
                self._signals.append(signum)
            except (NotImplementedError, RuntimeError, ValueError):
                # Windows event loops and non-main threads have no signal support
                pass

        if read_stream and self.stream is not None:
            self._thread = threading.Thread(target=self._reader, name="dab-control", daemon=True)
            self._thread.start()

    def _reader(self):
        try:
            for line in self.stream:
                if self._loop is None or self._loop.is_closed():
                    return
                self._loop.call_soon_threadsafe(self.dispatch, line)
        except (OSError, ValueError, RuntimeError):
            # Stream closed or loop gone
            return

    def close(self):
        if self._loop is not None and not self._loop.is_closed():
            for signum in self._signals:
                try:
                    self._loop.remove_signal_handler(signum)
                except (NotImplementedError, RuntimeError, ValueError):
                    pass
        self._signals = []
