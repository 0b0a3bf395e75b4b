"""Price-impact bounded quote acceptance."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

QUOTE_REASONS = ("same-token", "quoteError", "no-route", "invalid-impact", "impact")


class QuoteSource(Protocol):
    async def quote(
        self, *, input_mint: str, output_mint: str, amount: int, slippage: float | None
    ) -> dict[str, Any] | None: ...


@dataclass
class QuoteResult:
    ok: bool
    quote: dict[str, Any] | None = None
    reason: str = ""
    message: str = ""
    raw_quote: dict[str, Any] = field(default_factory=dict)

    @property
    def impact(self) -> float | None:
        if self.quote is None:
            return None
        return _parse_impact(self.quote.get("priceImpactPct"))


def _parse_impact(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        impact = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(impact) or math.isinf(impact):
        return None
    return impact


def _diagnostics(quote: dict[str, Any], impact: float) -> dict[str, Any]:
    route = quote.get("routePlan") or quote.get("marketInfos") or []
    return {
        "outAmount": quote.get("outAmount"),
        "priceImpactPct": impact,
        "routeCount": len(route) if isinstance(route, list) else 0,
    }


class SafeQuoter:
    """Checks run cheapest first; the impact ceiling is always the last gate."""

    def __init__(self, source: QuoteSource) -> None:
        self.source = source

    async def get_safe_quote(
        self,
        *,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage: float | None,
        max_impact: float,
    ) -> QuoteResult:
        if input_mint == output_mint:
            return QuoteResult(ok=False, reason="same-token", message="input and output asset are the same")

        try:
            quote = await self.source.quote(
                input_mint=input_mint,
                output_mint=output_mint,
                amount=int(amount),
                slippage=slippage,
            )
        except Exception as exc:
            logger.warning("QUOTE_ERROR in=%s out=%s amount=%s err=%s", input_mint, output_mint, amount, exc)
            return QuoteResult(ok=False, reason="quoteError", message=str(exc))

        if not quote:
            return QuoteResult(ok=False, reason="no-route", message="aggregator returned no route")

        impact = _parse_impact(quote.get("priceImpactPct"))
        if impact is None:
            return QuoteResult(
                ok=False,
                reason="invalid-impact",
                message=f"unparseable priceImpactPct={quote.get('priceImpactPct')!r}",
            )

        if impact > float(max_impact):
            return QuoteResult(
                ok=False,
                reason="impact",
                message=f"impact {impact:.4f} > max {float(max_impact):.4f}",
                raw_quote=_diagnostics(quote, impact),
            )

        return QuoteResult(ok=True, quote=quote)
