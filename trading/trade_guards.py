"""Risk-cap assertions applied before every trade attempt.

Each guard is synchronous and side-effect free. A breach raises
``CapExceeded``; the caller decides whether to skip the candidate or end the
tick (``CapExceeded.ends_tick``).
"""

from __future__ import annotations

from trading.errors import CapExceeded


def assert_daily_limit(amount_to_spend: float, spent_so_far: float, daily_cap: float | None) -> None:
    if not daily_cap:
        return
    if float(spent_so_far) + float(amount_to_spend) > float(daily_cap):
        raise CapExceeded(
            "daily",
            f"spent={float(spent_so_far):.6f} amount={float(amount_to_spend):.6f} cap={float(daily_cap):.6f}",
        )


def assert_open_trade_cap(strategy_name: str, owner_key: str, current_open: int, cap: int | None) -> None:
    if not cap:
        return
    if int(current_open) >= int(cap):
        raise CapExceeded(
            "openTrades",
            f"strategy={strategy_name} owner={owner_key} open={int(current_open)} cap={int(cap)}",
        )


def assert_trade_cap(made_so_far: int, cap: int | None) -> None:
    if not cap:
        return
    if int(made_so_far) >= int(cap):
        raise CapExceeded("totalTrades", f"made={int(made_so_far)} cap={int(cap)}")
