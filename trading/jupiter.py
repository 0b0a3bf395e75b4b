"""Jupiter aggregator wrapper (quote + swap transaction build)."""

from __future__ import annotations

import base64
import logging
from typing import Any

import config
from trading.errors import QuoteTransportError
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

SOURCE = "jupiter"


def slippage_to_bps(slippage_percent: float | None) -> int:
    """``1.0`` (percent) -> ``100`` bps; missing values fall back to 1%."""
    if slippage_percent is None:
        return 100
    try:
        return max(0, int(round(float(slippage_percent) * 100)))
    except (TypeError, ValueError):
        return 100


class JupiterClient:
    def __init__(self, http: ResilientHttpClient) -> None:
        self.http = http

    async def quote(
        self,
        *,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage: float | None,
    ) -> dict[str, Any] | None:
        """Return the raw quote dict, ``None`` when no route exists.

        Raises ``QuoteTransportError`` for transport or parse failures.
        """
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount)),
            "slippageBps": str(slippage_to_bps(slippage)),
            "swapMode": "ExactIn",
        }
        result = await self.http.get_json(
            getattr(config, "JUPITER_QUOTE_URL", "https://lite-api.jup.ag/swap/v1/quote"),
            source=SOURCE,
            params=params,
        )
        if not result.ok:
            # Jupiter answers 400 when it cannot route the pair.
            if result.status in (400, 404):
                return None
            raise QuoteTransportError(result.error or f"quote status {result.status}")
        data = result.data
        if data is None:
            return None
        if not isinstance(data, dict):
            raise QuoteTransportError(f"unexpected quote payload type {type(data).__name__}")
        if isinstance(data.get("data"), dict):
            data = data["data"]
        if not data.get("outAmount") and not data.get("routePlan"):
            return None
        return data

    async def swap_transaction(self, quote: dict[str, Any], user_public_key: str) -> bytes:
        payload = {
            "quoteResponse": quote,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        }
        priority = int(getattr(config, "JUPITER_PRIORITY_FEE_LAMPORTS", 0) or 0)
        if priority > 0:
            payload["prioritizationFeeLamports"] = priority
        result = await self.http.post_json(
            getattr(config, "JUPITER_SWAP_URL", "https://lite-api.jup.ag/swap/v1/swap"),
            payload,
            source=SOURCE,
            max_attempts=1,
        )
        if not result.ok or not isinstance(result.data, dict):
            raise RuntimeError(f"swap build failed: {result.error or result.status}")
        raw = str(result.data.get("swapTransaction") or "")
        if not raw:
            raise RuntimeError("swap build returned no transaction")
        return base64.b64decode(raw)
