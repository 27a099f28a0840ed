"""
Account selection - priority-ordered round robin with per-account cooldowns
"""
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Sequence

import config as cfg
from dab_runner.models import Account


@dataclass
class RunState:
    """Per-session rotation state; never shared between sessions"""

    cursor: int = 0
    current_email: str = ''
    last_used: Dict[str, float] = field(default_factory=dict)

    def mark_used(self, account: Account, now_ms: Optional[float] = None):
        """Record ``account`` as the active login and stamp its last use"""
        self.current_email = account.email
        self.last_used[normalize_email(account.email)] = now_ms if now_ms is not None else now_millis()


@dataclass
class Selection:
    account: Optional[Account]
    wait_ms: float = 0


def now_millis() -> float:
    return time.time() * 1000


def normalize_email(value) -> str:
    return str(value or '').strip().lower()


def describe_account(account: Optional[Account]) -> str:
    if account is None:
        return '(none)'
    return f"{account.name} ({account.email})" if account.name else account.email


def find_account(roster: Sequence[Account], key) -> Optional[Account]:
    """Look up by email first, then by name (case and whitespace insensitive)"""
    k = str(key or '').strip().lower()
    if not k:
        return None
    for account in roster:
        if normalize_email(account.email) == k:
            return account
    for account in roster:
        if account.name.strip().lower() == k:
            return account
    return None


def _remaining_cooldown(account: Account, state: RunState, now_ms: float) -> float:
    cooldown = account.cooldown_after_use_ms
    if cooldown <= 0:
        return 0
    last = state.last_used.get(normalize_email(account.email), 0)
    return max(0.0, cooldown - (now_ms - last))


def select_next(roster: Sequence[Account],
                state: RunState,
                current_email: str = '',
                avoid: Optional[Iterable[str]] = None,
                now_ms: Optional[float] = None) -> Selection:
    """
    Pick the next account to use.

    Args:
        roster: Accounts in config order
        state: RunState whose ``cursor`` is advanced past the returned account
        current_email: Account currently in use; skipped unless it is the only candidate
        avoid: Emails excluded from this pick
        now_ms: Clock override (epoch milliseconds)

    Returns:
        Selection with an account, or ``account=None`` and the time to wait
        before any account leaves its cooldown.
    """
    now = now_millis() if now_ms is None else now_ms
    avoid_set = {normalize_email(e) for e in (avoid or ())}

    enabled = [a for a in roster if a.enabled and a.email.strip()]
    if not enabled:
        return Selection(account=None, wait_ms=0)

    eligible = [
        a for a in enabled
        if normalize_email(a.email) not in avoid_set and _remaining_cooldown(a, state, now) <= 0
    ]

    if not eligible:
        cooling = [r for r in (_remaining_cooldown(a, state, now) for a in enabled) if r > 0]
        wait = min(cooling) if cooling else cfg.NO_ACCOUNT_DEFAULT_WAIT_MS
        return Selection(account=None, wait_ms=max(cfg.NO_ACCOUNT_MIN_WAIT_MS, wait))

    # Higher priority first; sorted() is stable so ties keep roster order
    ordered = sorted(eligible, key=lambda a: -a.priority)

    cursor = state.cursor if isinstance(state.cursor, int) and state.cursor >= 0 else 0
    start = cursor % len(ordered)
    current = normalize_email(current_email)

    for step in range(len(ordered)):
        ix = (start + step) % len(ordered)
        candidate = ordered[ix]
        if len(ordered) > 1 and normalize_email(candidate.email) == current:
            continue
        state.cursor = ix + 1
        return Selection(account=candidate, wait_ms=0)

    state.cursor = start + 1
    return Selection(account=ordered[start], wait_ms=0)
