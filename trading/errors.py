"""Typed errors raised by the strategy runtime."""

from __future__ import annotations


class ConfigError(ValueError):
    """Fatal configuration problem detected before a bot is registered."""

    def __init__(self, problems: list[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid config")


class CapExceeded(RuntimeError):
    """A risk cap (daily volume, open trades, total trades) is exhausted."""

    KINDS = ("daily", "openTrades", "totalTrades")

    def __init__(self, kind: str, detail: str = "") -> None:
        if kind not in self.KINDS:
            raise ValueError(f"unknown cap kind: {kind}")
        self.kind = kind
        self.detail = detail
        super().__init__(f"CapExceeded({kind}){': ' + detail if detail else ''}")

    @property
    def ends_tick(self) -> bool:
        return self.kind in ("daily", "totalTrades")


class DuplicateLaunchError(RuntimeError):
    def __init__(self, bot_id: str) -> None:
        self.bot_id = bot_id
        super().__init__(f"bot already running: {bot_id}")


class HaltRequested(RuntimeError):
    """Raised by a policy when the bot must stop for a non-error reason."""

    def __init__(self, reason: str, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}{': ' + detail if detail else ''}")


class InsufficientBalanceError(RuntimeError):
    pass


class TransientDataError(RuntimeError):
    """Provider data unusable for this tick; counts toward the failure streak."""


class QuoteTransportError(RuntimeError):
    pass


_INSUFFICIENT_MARKERS = ("insufficient lamports", "insufficient balance", "insufficient funds")


def is_insufficient_balance(exc: BaseException) -> bool:
    if isinstance(exc, InsufficientBalanceError):
        return True
    text = str(exc or "").lower()
    return any(marker in text for marker in _INSUFFICIENT_MARKERS)
