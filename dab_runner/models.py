"""
Config, account and task models

Every model is frozen: a Config snapshot is immutable for the cycle that
loaded it. Values are normalized on the way in (priorities clamped, strings
trimmed, typing delays ordered) so the engine never re-checks them.
"""
import math
from enum import Enum
from typing import Any, Dict, Literal, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

CONFIG_VERSION = 4
APP_VERSION = "1.5.3"

PRIORITY_MIN = 0
PRIORITY_MAX = 5
PRIORITY_DEFAULT = 3


class TaskType(str, Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    SWITCH_ACCOUNT = "SWITCH_ACCOUNT"
    UPLOAD_FILE = "UPLOAD_FILE"
    SEND_MESSAGE = "SEND_MESSAGE"
    SLASH_COMMAND = "SLASH_COMMAND"
    SEND_EMOJI = "SEND_EMOJI"
    NAVIGATE = "NAVIGATE"
    CLICK = "CLICK"
    FILL = "FILL"
    PRESS_KEY = "PRESS_KEY"
    WAIT = "WAIT"
    WAIT_FOR_SELECTOR = "WAIT_FOR_SELECTOR"
    WAIT_FOR_NAVIGATION = "WAIT_FOR_NAVIGATION"
    SCREENSHOT = "SCREENSHOT"
    LOOP_AUTOMATION = "LOOP_AUTOMATION"


def clamp_int(value, low, high, fallback):
    """Round to int and clamp into [low, high]; non-numbers give fallback"""
    try:
        n = float(value)
    except (TypeError, ValueError):
        return fallback
    if math.isnan(n) or math.isinf(n):
        return fallback
    return min(high, max(low, int(round(n))))


def normalize_priority(value, fallback=PRIORITY_DEFAULT):
    return clamp_int(value, PRIORITY_MIN, PRIORITY_MAX, fallback)


def _non_negative(value, fallback):
    try:
        n = float(value)
    except (TypeError, ValueError):
        return fallback
    if math.isnan(n) or n < 0:
        return fallback
    return n


def _clean_str(value):
    if value is None:
        return ''
    return str(value).strip()


def _clean_str_list(value):
    if not isinstance(value, (list, tuple)):
        return ()
    out = []
    for v in value:
        s = _clean_str(v)
        if s:
            out.append(s)
    return tuple(out)


class _Model(BaseModel):
    """Frozen model where a JSON null falls back to the field default"""

    model_config = ConfigDict(frozen=True, extra='allow')

    @model_validator(mode='before')
    @classmethod
    def _nulls_to_defaults(cls, data):
        if not isinstance(data, dict):
            return data
        out = dict(data)
        for name, info in cls.model_fields.items():
            if name in out and out[name] is None:
                out[name] = info.get_default(call_default_factory=True)
        return out


class Selector(_Model):
    """Task-level element selector: exactly one of css / id is used (css wins)"""

    css: str = ''
    id: str = ''

    @field_validator('css', 'id', mode='before')
    @classmethod
    def _strip(cls, v):
        return _clean_str(v)

    @property
    def is_empty(self) -> bool:
        return not self.css and not self.id


class Account(_Model):
    email: str = ''
    password: str = ''
    name: str = ''
    priority: int = PRIORITY_DEFAULT
    enabled: bool = True
    cooldown_after_use_ms: float = 0
    max_tasks_per_session: int = 0
    notes: str = ''

    # Optional login form overrides
    email_selector: Optional[Selector] = None
    password_selector: Optional[Selector] = None
    submit_selector: Optional[Selector] = None

    @field_validator('email', 'name', mode='before')
    @classmethod
    def _strip(cls, v):
        return _clean_str(v)

    @field_validator('password', 'notes', mode='before')
    @classmethod
    def _to_str(cls, v):
        return '' if v is None else str(v)

    @field_validator('priority', mode='before')
    @classmethod
    def _clamp_priority(cls, v):
        return normalize_priority(v)

    @field_validator('cooldown_after_use_ms', mode='before')
    @classmethod
    def _cooldown(cls, v):
        return _non_negative(v, 0)

    @field_validator('max_tasks_per_session', mode='before')
    @classmethod
    def _max_tasks(cls, v):
        return int(round(_non_negative(v, 0)))


class TaskBase(_Model):
    """Fields shared by every task type"""

    id: str = ''
    type: str = ''
    enabled: bool = True
    oneshot: bool = False
    instant: bool = False
    accounts: Tuple[str, ...] = ()
    priority: int = PRIORITY_DEFAULT
    check_handler: str = ''
    post_wait_ms: Optional[float] = None
    timeout_ms: Optional[float] = None

    @field_validator('id', 'check_handler', mode='before')
    @classmethod
    def _strip(cls, v):
        return _clean_str(v)

    @field_validator('accounts', mode='before')
    @classmethod
    def _accounts(cls, v):
        return _clean_str_list(v)

    @field_validator('priority', mode='before')
    @classmethod
    def _clamp_priority(cls, v):
        return normalize_priority(v)

    @field_validator('post_wait_ms', 'timeout_ms', mode='before')
    @classmethod
    def _optional_ms(cls, v):
        if v is None or v == '':
            return None
        return _non_negative(v, None)

    @property
    def task_type(self) -> Optional[TaskType]:
        try:
            return TaskType(self.type)
        except ValueError:
            return None

    @property
    def display_id(self) -> str:
        return self.id or 'task'


class LoginTask(TaskBase):
    type: Literal['LOGIN'] = 'LOGIN'
    account: str = ''


class LogoutTask(TaskBase):
    type: Literal['LOGOUT'] = 'LOGOUT'
    account: str = ''


class SwitchAccountTask(TaskBase):
    type: Literal['SWITCH_ACCOUNT'] = 'SWITCH_ACCOUNT'
    account: str = ''


class UploadFileTask(TaskBase):
    type: Literal['UPLOAD_FILE'] = 'UPLOAD_FILE'
    url: str = ''
    file: str = ''
    files: Tuple[str, ...] = ()
    file_input: Optional[Selector] = None
    submit: Optional[Selector] = None

    @field_validator('files', mode='before')
    @classmethod
    def _files(cls, v):
        return _clean_str_list(v)

    @property
    def file_paths(self) -> Tuple[str, ...]:
        """Unique, non-empty paths; the legacy single ``file`` is used when ``files`` is empty"""
        raw = list(self.files) or ([self.file.strip()] if self.file.strip() else [])
        seen = []
        for p in raw:
            if p and p not in seen:
                seen.append(p)
        return tuple(seen)


class SendMessageTask(TaskBase):
    type: Literal['SEND_MESSAGE'] = 'SEND_MESSAGE'
    url: str = ''
    message: str = ''
    selector: Optional[Selector] = None


class SlashCommandTask(TaskBase):
    type: Literal['SLASH_COMMAND'] = 'SLASH_COMMAND'
    url: str = ''
    command: str = ''
    index: Union[int, str] = 0
    pre_select_wait_ms: Optional[float] = None
    autocomplete_timeout_ms: Optional[float] = None
    post_select_wait_ms: Optional[float] = None

    @property
    def option_index(self) -> int:
        try:
            return max(0, int(float(self.index)))
        except (TypeError, ValueError):
            return 0


class SendEmojiTask(TaskBase):
    type: Literal['SEND_EMOJI'] = 'SEND_EMOJI'
    url: str = ''
    emoji: str = ''


class NavigateTask(TaskBase):
    type: Literal['NAVIGATE'] = 'NAVIGATE'
    url: str = ''


class ClickTask(TaskBase):
    type: Literal['CLICK'] = 'CLICK'
    selector: Optional[Selector] = None


class FillTask(TaskBase):
    type: Literal['FILL'] = 'FILL'
    selector: Optional[Selector] = None
    text: str = ''
    clear: bool = True


class PressKeyTask(TaskBase):
    type: Literal['PRESS_KEY'] = 'PRESS_KEY'
    key: str = ''
    times: int = 1

    @field_validator('times', mode='before')
    @classmethod
    def _times(cls, v):
        return clamp_int(v, 1, 10_000, 1)


class WaitTask(TaskBase):
    type: Literal['WAIT'] = 'WAIT'
    seconds: Optional[float] = None

    @field_validator('seconds', mode='before')
    @classmethod
    def _seconds(cls, v):
        # Negative or non-numeric values are reported when the task runs
        if v is None or v == '':
            return None
        return _non_negative(v, None)


class WaitForSelectorTask(TaskBase):
    type: Literal['WAIT_FOR_SELECTOR'] = 'WAIT_FOR_SELECTOR'
    selector: Optional[Selector] = None
    state: str = 'visible'


class WaitForNavigationTask(TaskBase):
    type: Literal['WAIT_FOR_NAVIGATION'] = 'WAIT_FOR_NAVIGATION'
    url: str = ''
    url_contains: str = ''


class ScreenshotTask(TaskBase):
    type: Literal['SCREENSHOT'] = 'SCREENSHOT'
    label: str = ''
    path: str = ''
    full_page: bool = False


class LoopAutomationTask(TaskBase):
    type: Literal['LOOP_AUTOMATION'] = 'LOOP_AUTOMATION'
    interval_ms: Optional[float] = None


class UnknownTask(TaskBase):
    """A task whose type the engine does not know; kept so it can be reported and skipped"""

TASK_MODELS: Dict[TaskType, Type[TaskBase]] = {
    TaskType.LOGIN: LoginTask,
    TaskType.LOGOUT: LogoutTask,
    TaskType.SWITCH_ACCOUNT: SwitchAccountTask,
    TaskType.UPLOAD_FILE: UploadFileTask,
    TaskType.SEND_MESSAGE: SendMessageTask,
    TaskType.SLASH_COMMAND: SlashCommandTask,
    TaskType.SEND_EMOJI: SendEmojiTask,
    TaskType.NAVIGATE: NavigateTask,
    TaskType.CLICK: ClickTask,
    TaskType.FILL: FillTask,
    TaskType.PRESS_KEY: PressKeyTask,
    TaskType.WAIT: WaitTask,
    TaskType.WAIT_FOR_SELECTOR: WaitForSelectorTask,
    TaskType.WAIT_FOR_NAVIGATION: WaitForNavigationTask,
    TaskType.SCREENSHOT: ScreenshotTask,
    TaskType.LOOP_AUTOMATION: LoopAutomationTask,
}


def parse_task(raw: Any) -> TaskBase:
    """Build the task model matching ``raw['type']``; unknown types become UnknownTask"""
    if isinstance(raw, TaskBase):
        return raw
    data = dict(raw) if isinstance(raw, dict) else {}
    type_name = _clean_str(data.get('type')).upper()
    data['type'] = type_name
    try:
        model = TASK_MODELS[TaskType(type_name)]
    except ValueError:
        return UnknownTask.model_validate(data)
    return model.model_validate(data)


class Config(_Model):
    """One immutable snapshot of the runtime config file"""

    config_version: int = CONFIG_VERSION
    version: str = APP_VERSION
    config_path: str = ''

    # Automation controls
    run_enabled: bool = True
    headless: bool = False
    browser_type: Literal['chromium', 'firefox', 'webkit'] = 'chromium'
    private_browsing: bool = False
    log_level: str = 'info'
    jitter_ms: float = 0
    tasks_interval: float = 1000
    element_wait_timeout_ms: float = 30000
    screenshot_on_error: bool = False
    screenshot_dir: str = 'screenshots'
    run_ledger_path: str = ''

    # Human typing
    human_typing_enabled: bool = True
    typing_delay_ms_min: float = 70
    typing_delay_ms_max: float = 160

    # Target application URLs
    base_url: str = ''
    login_url: str = ''
    logout_url: str = ''
    no_login_delay: bool = False

    # Session hygiene
    restart_browser_on_login: bool = False
    restart_browser_on_logout: bool = True
    restart_browser_on_switch_account: bool = True
    auto_restart_on_session_error: bool = True
    session_health_check: bool = True

    # Multi sessions
    multi_sessions_enabled: bool = False
    multi_sessions_accounts: Tuple[str, ...] = ()
    multi_sessions_auto_login: bool = True
    multi_sessions_max_parallel: int = 0

    # Legacy, ignored by the engine
    account_switch_interval: float = 0

    accounts: Tuple[Account, ...] = ()
    tasks: Tuple[TaskBase, ...] = ()

    @model_validator(mode='before')
    @classmethod
    def _order_typing_delays(cls, data):
        if isinstance(data, dict):
            lo = _non_negative(data.get('typing_delay_ms_min', 70), 70)
            hi = _non_negative(data.get('typing_delay_ms_max', 160), 160)
            if lo > hi:
                lo, hi = hi, lo
            data = {**data, 'typing_delay_ms_min': lo, 'typing_delay_ms_max': hi}
        return data

    @field_validator('log_level', mode='before')
    @classmethod
    def _log_level(cls, v):
        level = _clean_str(v).lower() or 'info'
        return level if level in ('error', 'warn', 'info', 'debug') else 'info'

    @field_validator('browser_type', mode='before')
    @classmethod
    def _browser_type(cls, v):
        name = _clean_str(v).lower() or 'chromium'
        return name if name in ('chromium', 'firefox', 'webkit') else 'chromium'

    @field_validator('jitter_ms', 'account_switch_interval', mode='before')
    @classmethod
    def _non_negative_ms(cls, v):
        return _non_negative(v, 0)

    @field_validator('tasks_interval', mode='before')
    @classmethod
    def _tasks_interval(cls, v):
        n = _non_negative(v, 1000)
        return n if n >= 50 else 1000

    @field_validator('element_wait_timeout_ms', mode='before')
    @classmethod
    def _element_timeout(cls, v):
        n = _non_negative(v, 30000)
        return n if n >= 100 else 30000

    @field_validator('multi_sessions_max_parallel', mode='before')
    @classmethod
    def _max_parallel(cls, v):
        return int(_non_negative(v, 0))

    @field_validator('multi_sessions_accounts', mode='before')
    @classmethod
    def _multi_accounts(cls, v):
        out = []
        for key in _clean_str_list(v):
            if key not in out:
                out.append(key)
        return tuple(out)

    @field_validator('base_url', 'login_url', 'logout_url', 'screenshot_dir', 'run_ledger_path', mode='before')
    @classmethod
    def _strip(cls, v):
        return _clean_str(v)

    @field_validator('accounts', mode='before')
    @classmethod
    def _accounts(cls, v):
        if not isinstance(v, (list, tuple)):
            return ()
        return tuple(a if isinstance(a, (Account, dict)) else {} for a in v)

    @field_validator('tasks', mode='before')
    @classmethod
    def _tasks(cls, v):
        if not isinstance(v, (list, tuple)):
            return ()
        return tuple(parse_task(t) for t in v)

    @property
    def enabled_accounts(self) -> Tuple[Account, ...]:
        return tuple(a for a in self.accounts if a.enabled and a.email)

    @property
    def typing_delay_range(self) -> Tuple[int, int]:
        return int(round(self.typing_delay_ms_min)), int(round(self.typing_delay_ms_max))
