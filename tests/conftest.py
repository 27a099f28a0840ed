"""
Pytest fixtures and fakes for the dab_runner test suite.

The fakes stand in for Playwright objects: FakeFactory hands out
FakeBrowserSession objects whose FakePage records navigation, typing and
key presses.
"""
import asyncio
import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dab_runner.account_selector import RunState  # noqa: E402
from dab_runner.context import ActionContext  # noqa: E402
from dab_runner.control import PauseController  # noqa: E402
from dab_runner.logger_utils import ColoredLogger  # noqa: E402
from dab_runner.models import Config  # noqa: E402

ACCOUNTS = [
    {"email": "acc1@example.com", "password": "pw1", "name": "Acc1"},
    {"email": "acc2@example.com", "password": "pw2", "name": "Acc2"},
    {"email": "acc3@example.com", "password": "pw3", "name": "Acc3"},
]


# === Fakes ===

class FakeElement:
    def __init__(self, text='', attrs=None, fail_type_at=None, on_fail=None):
        self.text = text
        self.attrs = attrs or {}
        self.typed = []
        self.fail_type_at = fail_type_at
        self.on_fail = on_fail
        self.click = AsyncMock()
        self.fill = AsyncMock()
        self.set_input_files = AsyncMock()

    async def type(self, ch):
        if self.fail_type_at is not None and len(self.typed) >= self.fail_type_at:
            if self.on_fail:
                self.on_fail()
            raise PlaywrightError("Element is not attached to the DOM")
        self.typed.append(ch)

    async def is_visible(self):
        return True

    async def is_enabled(self):
        return True

    async def get_attribute(self, name):
        return self.attrs.get(name)

    async def inner_text(self):
        return self.text


class FakeKeyboard:
    def __init__(self):
        self.typed = []
        self.pressed = []
        self.inserted = []

    async def type(self, text):
        self.typed.append(text)

    async def press(self, key):
        self.pressed.append(key)

    async def insert_text(self, text):
        self.inserted.append(text)


class FakePage:
    def __init__(self):
        self.url = 'about:blank'
        self.elements = {}
        self.keyboard = FakeKeyboard()
        self.visits = []
        self.screenshots = []
        self.closed = False
        self.reload = AsyncMock()

    async def goto(self, url):
        self.visits.append(url)
        self.url = url

    async def query_selector(self, selector):
        found = self.elements.get(selector) or []
        return found[0] if found else None

    async def query_selector_all(self, selector):
        return list(self.elements.get(selector) or [])

    async def evaluate(self, script):
        return self.url

    async def screenshot(self, path=None, full_page=False):
        self.screenshots.append((path, full_page))
        return b''

    def is_closed(self):
        return self.closed


class FakeBrowserSession:
    def __init__(self, name):
        self.name = name
        self.page = FakePage()
        self.context = MagicMock()
        self.context.clear_cookies = AsyncMock()
        self.ping = AsyncMock(return_value='about:blank')
        self.closed = False

    def is_alive(self):
        return not self.closed


class FakeFactory:
    """Same surface as BrowserManager: build / quit / close"""

    def __init__(self):
        self.built = []
        self.quit_calls = []
        self.closed = False
        self.fail_build = None

    async def build(self, config):
        if self.fail_build is not None:
            raise self.fail_build
        session = FakeBrowserSession(f"browser-{len(self.built) + 1}")
        self.built.append(session)
        return session

    async def quit(self, session):
        if session is None:
            return
        session.closed = True
        self.quit_calls.append(session)

    async def close(self):
        self.closed = True


# === Helpers ===

def make_config(**overrides) -> Config:
    data = {
        "accounts": [dict(a) for a in ACCOUNTS],
        "tasks": [],
        "base_url": "https://chat.example.com",
        "login_url": "https://chat.example.com/login",
        "logout_url": "https://chat.example.com/logout",
        "human_typing_enabled": False,
        "screenshot_on_error": False,
    }
    data.update(overrides)
    return Config.model_validate(data)


def write_config(path: Path, **overrides) -> Path:
    data = {
        "config_version": 4,
        "accounts": [dict(a) for a in ACCOUNTS],
        "tasks": [],
        "base_url": "https://chat.example.com",
        "human_typing_enabled": False,
        "screenshot_dir": str(path.parent / "shots"),
    }
    data.update(overrides)
    path.write_text(json.dumps(data), encoding='utf-8')
    return path


# === Fixtures ===

@pytest.fixture(autouse=True)
def fast_sleep(monkeypatch):
    """Make every asyncio.sleep a bare yield so controlled sleeps finish instantly"""
    real_sleep = asyncio.sleep

    async def _sleep(delay, result=None):
        await real_sleep(0)
        return result

    monkeypatch.setattr(asyncio, 'sleep', _sleep)
    yield


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    ColoredLogger.reset()


@pytest.fixture
def log_lines():
    """Collected (level, text) pairs from ColoredLogger"""
    lines = []

    def sink(level, text):
        lines.append((level, text))

    ColoredLogger.add_sink(sink)
    yield lines
    ColoredLogger.remove_sink(sink)


@pytest.fixture
def controller():
    return PauseController()


@pytest.fixture
def factory():
    return FakeFactory()


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def browser():
    return FakeBrowserSession("browser-0")


@pytest.fixture
def ctx(config, controller, factory, browser):
    return ActionContext(
        config=config,
        controller=controller,
        factory=factory,
        browser=browser,
        state=RunState(),
    )
