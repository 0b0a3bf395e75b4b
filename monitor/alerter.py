"""Telegram alert delivery for strategy events."""

import asyncio
import logging
from html import escape
from typing import Any

import config
from telegram import Bot

from utils.addressing import short_mint

logger = logging.getLogger(__name__)

CATEGORY_EMOJI = {
    "sniper": "\U0001F52B",
    "dipbuyer": "\U0001F4C9",
    "rebalancer": "⚖️",
    "rotationbot": "\U0001F504",
    "scheduled": "⏰",
    "icebergtwap": "\U0001F9CA",
}


class TelegramAlerter:
    """Fire-and-forget notifications; send failures are logged, never raised."""

    def __init__(self, bot: Any | None = None, default_chat_id: str | None = None) -> None:
        token = str(getattr(config, "TELEGRAM_BOT_TOKEN", "") or "")
        self.bot = bot if bot is not None else (Bot(token) if token else None)
        self.default_chat_id = str(
            default_chat_id if default_chat_id is not None else getattr(config, "TELEGRAM_DEFAULT_CHAT_ID", "")
        ).strip()
        self._pending: set[asyncio.Task] = set()

    def _chat_id(self, owner_key: str | int | None) -> str:
        text = str(owner_key or "").strip()
        if text.lstrip("-").isdigit():
            return text
        return self.default_chat_id

    async def send(self, owner_key: str | int | None, message: str) -> bool:
        if not getattr(config, "ALERTS_ENABLED", True) or self.bot is None:
            logger.info("ALERT_SUPPRESSED owner=%s text=%s", owner_key, message.splitlines()[0] if message else "")
            return False
        chat_id = self._chat_id(owner_key)
        if not chat_id:
            logger.debug("ALERT_NO_CHAT owner=%s", owner_key)
            return False
        try:
            await self.bot.send_message(
                chat_id=int(chat_id),
                text=message,
                parse_mode="HTML",
                disable_web_page_preview=True,
            )
            return True
        except Exception as exc:
            logger.warning("Alert send failed for chat_id=%s: %s", chat_id, exc)
            return False

    def notify(self, owner_key: str | int | None, message: str) -> None:
        """Schedule delivery without waiting for it."""
        try:
            task = asyncio.get_running_loop().create_task(self.send(owner_key, message))
        except RuntimeError:
            logger.warning("ALERT_DROPPED owner=%s reason=no_running_loop", owner_key)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def format_trade_executed(
    *,
    category: str,
    bot_id: str,
    mint: str,
    symbol: str,
    spent: float,
    input_symbol: str,
    out_amount: int,
    impact: float | None,
    signature: str,
    simulated: bool,
    wallet_id: str = "",
    take_profit: float | None = None,
    stop_loss: float | None = None,
) -> str:
    emoji = CATEGORY_EMOJI.get(category, "✅")
    lines = [
        f"{emoji} <b>{escape(category.upper())} BUY</b> ({escape(bot_id)})",
        f"Token: {escape(symbol or short_mint(mint))} <code>{escape(mint)}</code>",
        f"Spent: {spent:.6g} {escape(input_symbol)}",
        f"Received (raw): {int(out_amount):,}",
    ]
    if impact is not None:
        lines.append(f"Impact: {impact * 100:.2f}%")
    if take_profit or stop_loss:
        tp = f"+{take_profit * 100:.1f}%" if take_profit else "-"
        sl = f"-{abs(stop_loss) * 100:.1f}%" if stop_loss else "-"
        lines.append(f"TP / SL: {tp} / {sl}")
    if wallet_id:
        lines.append(f"Wallet: {escape(wallet_id)}")
    if simulated:
        lines.append("Simulated (dry run)")
    else:
        url = str(getattr(config, "EXPLORER_TX_URL_TEMPLATE", "")).format(signature=signature)
        lines.append(f'<a href="{escape(url)}">View transaction</a>')
    return "\n".join(lines)


def format_summary(*, category: str, bot_id: str, status: str, reason: str, lines: list[str], trades: int) -> str:
    title = {
        "completed": "\U0001F3C1 COMPLETED",
        "halted": "⛔ HALTED",
        "stopped": "⏹ STOPPED",
    }.get(status, status.upper())
    body = "\n".join(escape(line) for line in lines)
    reason_line = f"\nReason: {escape(reason)}" if reason else ""
    return (
        f"{title} <b>{escape(category)}</b> ({escape(bot_id)})"
        f"{reason_line}\n"
        f"Trades: {int(trades)}\n\n"
        f"{body}"
    )


def format_error(*, category: str, bot_id: str, mint: str, error: str, failures: int, cap: int) -> str:
    return (
        f"⚠️ <b>{escape(category)}</b> ({escape(bot_id)}) error on {escape(short_mint(mint) or '-')}\n"
        f"{escape(error[:300])}\n"
        f"Consecutive failures: {int(failures)}/{int(cap)}"
    )
