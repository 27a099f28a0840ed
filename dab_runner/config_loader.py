"""
Config loading - read, migrate, normalize and validate the runtime JSON config
"""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import ValidationError

import config as cfg
from dab_runner.errors import ConfigError
from dab_runner.models import (
    APP_VERSION,
    CONFIG_VERSION,
    Config,
    TaskBase,
    TaskType,
    clamp_int,
)

DEFAULT_BASE_URL = "https://discord.com"


@dataclass
class MigrationResult:
    data: dict
    migrated: bool
    from_version: int
    to_version: int
    notes: List[str] = field(default_factory=list)


@dataclass
class LoopCheck:
    ok: bool
    has_loop: bool
    error: str = ''


@dataclass
class ValidationReport:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def resolve_config_path() -> Path:
    """DAB_CONFIG_PATH when set, else config.json in the working directory"""
    env_path = os.getenv(cfg.CONFIG_PATH_ENV, '').strip()
    if env_path:
        return Path(env_path)
    return Path.cwd() / cfg.DEFAULT_CONFIG_NAME


def migrate_config(raw: dict, project_root: Optional[Path] = None) -> MigrationResult:
    """Bring an older config dict up to CONFIG_VERSION (mutates and returns it)"""
    c = raw if isinstance(raw, dict) else {}
    root = Path(project_root) if project_root else Path.cwd()
    from_version = clamp_int(c.get('config_version', 1), 1, 9999, 1)
    notes = []
    migrated = False

    # v1 -> v2: explicit URL fields + screenshot_dir
    if from_version < 2:
        base = str(c.get('base_url') or DEFAULT_BASE_URL)
        if 'base_url' not in c:
            c['base_url'] = base
            notes.append("Added base_url default.")
        if 'login_url' not in c:
            c['login_url'] = f"{base}/login"
            notes.append("Added login_url default.")
        if 'logout_url' not in c:
            c['logout_url'] = f"{base}/logout"
            notes.append("Added logout_url default.")
        if 'screenshot_dir' not in c:
            c['screenshot_dir'] = str(root / cfg.DEFAULT_SCREENSHOT_DIR_NAME)
            notes.append("Added screenshot_dir default.")
        c['config_version'] = 2
        migrated = True

    # v2 -> v3: multi sessions + multi-file uploads + version field
    if from_version < 3:
        if 'version' not in c:
            c['version'] = APP_VERSION
            notes.append("Added version field.")
        if 'multi_sessions_enabled' not in c:
            c['multi_sessions_enabled'] = False
            notes.append("Added multi_sessions_enabled default.")
        if 'multi_sessions_accounts' not in c:
            c['multi_sessions_accounts'] = []
            notes.append("Added multi_sessions_accounts default.")
        tasks = c.get('tasks') if isinstance(c.get('tasks'), list) else []
        for task in tasks:
            if not isinstance(task, dict):
                continue
            if str(task.get('type') or '').upper() == 'UPLOAD_FILE':
                if not isinstance(task.get('files'), list):
                    task['files'] = []
                if not task['files'] and str(task.get('file') or '').strip():
                    task['files'] = [str(task['file']).strip()]
            if not isinstance(task.get('accounts'), list):
                task['accounts'] = []
        c['config_version'] = 3
        migrated = True

    # v3 -> v4: browser settings renamed away from Firefox-only names
    if from_version < 4:
        if 'private_browsing' not in c and 'firefox_private_browsing' in c:
            c['private_browsing'] = bool(c.get('firefox_private_browsing'))
            notes.append("Renamed firefox_private_browsing to private_browsing.")
        c['config_version'] = 4
        migrated = True

    normalize_config(c, root)
    return MigrationResult(
        data=c,
        migrated=migrated,
        from_version=from_version,
        to_version=c['config_version'],
        notes=notes,
    )


def normalize_config(c: dict, project_root: Path) -> dict:
    """Fill URL and path defaults that depend on other keys"""
    c['config_version'] = clamp_int(c.get('config_version', CONFIG_VERSION), 1, 9999, CONFIG_VERSION)
    base = str(c.get('base_url') or DEFAULT_BASE_URL).strip()
    c['base_url'] = base
    c['login_url'] = str(c.get('login_url') or f"{base}/login").strip()
    c['logout_url'] = str(c.get('logout_url') or f"{base}/logout").strip()
    c['screenshot_dir'] = str(c.get('screenshot_dir') or (project_root / cfg.DEFAULT_SCREENSHOT_DIR_NAME))
    if 'private_browsing' not in c and 'firefox_private_browsing' in c:
        c['private_browsing'] = bool(c.get('firefox_private_browsing'))
    return c


def load_and_normalize(path) -> Config:
    """Read the config file at ``path`` and return a validated Config snapshot.

    Raises ConfigError when the file is missing, is not JSON, or has values
    the models cannot coerce.
    """
    config_path = Path(path)
    try:
        raw = json.loads(config_path.read_text(encoding='utf-8'))
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {config_path}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not read config {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a JSON object: {config_path}")

    result = migrate_config(raw, project_root=config_path.resolve().parent)
    data = dict(result.data)
    data['config_path'] = str(config_path)
    try:
        return Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {config_path}: {e}") from e


def validate_task_list(tasks: Sequence[TaskBase]) -> LoopCheck:
    """Structural checks run before every cycle: unique ids, one trailing LOOP_AUTOMATION at most"""
    seen = set()
    for i, task in enumerate(tasks):
        if not task.id:
            continue
        if task.id in seen:
            return LoopCheck(ok=False, has_loop=False,
                             error=f'Duplicate task id "{task.id}" at tasks[{i}].')
        seen.add(task.id)

    loop_idx = [i for i, t in enumerate(tasks) if t.type == TaskType.LOOP_AUTOMATION.value]
    if not loop_idx:
        return LoopCheck(ok=True, has_loop=False)
    if len(loop_idx) > 1:
        return LoopCheck(ok=False, has_loop=True, error="Only one LOOP_AUTOMATION task is allowed.")
    if loop_idx[0] != len(tasks) - 1:
        return LoopCheck(ok=False, has_loop=True, error="LOOP_AUTOMATION must be the last task.")
    return LoopCheck(ok=True, has_loop=True)


def _task_scope(task: TaskBase, index: int) -> str:
    name = f"Task {index + 1} ({task.id})" if task.id else f"Task {index + 1}"
    return f"Tasks -> {name} ({task.type or 'unknown'})"


def validate_config(config: Config) -> ValidationReport:
    """Human-readable errors and warnings for a loaded config.

    Errors here describe tasks that will fail when they run; only the checks
    in validate_task_list stop the loop.
    """
    report = ValidationReport()

    if not config.accounts:
        report.errors.append("Accounts: at least one account is required.")

    loop_check = validate_task_list(config.tasks)
    if not loop_check.ok:
        report.errors.append(f"Tasks: {loop_check.error}")

    for i, task in enumerate(config.tasks):
        scope = _task_scope(task, i)
        task_type = task.task_type

        if task_type is None:
            report.errors.append(f"{scope}: Unknown task type. It will be skipped.")
            continue

        if not task.id:
            report.errors.append(f"{scope}: Missing required field \"id\". Path: tasks[{i}].id.")

        if task_type in (TaskType.CLICK, TaskType.FILL, TaskType.WAIT_FOR_SELECTOR):
            if task.selector is None or task.selector.is_empty:
                report.errors.append(f"{scope}: Missing selector. Path: tasks[{i}].selector. Fix: Set selector.css or selector.id.")

        if task_type == TaskType.FILL and not task.text.strip():
            report.errors.append(f"{scope}: Missing required field \"text\". Path: tasks[{i}].text.")

        if task_type == TaskType.SEND_MESSAGE and not task.message.strip():
            report.errors.append(f"{scope}: Missing required field \"message\". Path: tasks[{i}].message.")

        if task_type == TaskType.SLASH_COMMAND and not task.command.strip():
            report.errors.append(f"{scope}: Missing required field \"command\". Path: tasks[{i}].command.")

        if task_type == TaskType.SEND_EMOJI and not task.emoji.strip():
            report.errors.append(f"{scope}: Missing required field \"emoji\". Path: tasks[{i}].emoji.")

        if task_type == TaskType.PRESS_KEY and not task.key.strip():
            report.errors.append(f"{scope}: Missing required field \"key\". Path: tasks[{i}].key. Fix: Set key, for example Enter, Tab, Escape.")

        if task_type == TaskType.LOGIN and not task.account:
            report.errors.append(f"{scope}: Missing required field \"account\". Path: tasks[{i}].account.")

        if task_type in (TaskType.NAVIGATE, TaskType.UPLOAD_FILE, TaskType.SEND_MESSAGE,
                         TaskType.SLASH_COMMAND, TaskType.SEND_EMOJI) and not task.url:
            report.errors.append(f"{scope}: Missing required field \"url\". Path: tasks[{i}].url.")

        if task_type == TaskType.UPLOAD_FILE and not task.file_paths:
            report.errors.append(f"{scope}: Missing required field \"files\". Path: tasks[{i}].files.")

        if task_type == TaskType.WAIT and task.seconds is None:
            report.errors.append(f"{scope}: Missing required field \"seconds\". Path: tasks[{i}].seconds.")

        if task_type == TaskType.WAIT_FOR_SELECTOR and task.state not in ('attached', 'visible', 'hidden'):
            report.errors.append(f"{scope}: Invalid state \"{task.state}\". Use attached, visible, or hidden.")

        if task_type == TaskType.SWITCH_ACCOUNT and config.multi_sessions_enabled:
            report.warnings.append(
                f"{scope}: Multi sessions is enabled. SWITCH_ACCOUNT is redundant and will be skipped. "
                f"Fix: Remove the task or disable multi_sessions_enabled."
            )

    for i, account in enumerate(config.accounts):
        if account.email and not account.password:
            report.warnings.append(
                f"Accounts -> Account {i + 1} ({account.email}): Account has no password. "
                f"LOGIN will fail for this account."
            )

    if config.account_switch_interval > 0:
        report.warnings.append(
            f"Legacy setting is ignored: account_switch_interval={config.account_switch_interval:g}."
        )

    return report
