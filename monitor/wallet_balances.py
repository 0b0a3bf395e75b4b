"""Wallet balance reads over Solana JSON-RPC."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import config
from trading.errors import TransientDataError
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"


@dataclass
class TokenBalance:
    amount: float
    decimals: int

    def base_units(self, amount: float | None = None) -> int:
        return int((self.amount if amount is None else amount) * (10 ** self.decimals))


class WalletBalanceReader:
    def __init__(self, http: ResilientHttpClient, rpc_url: str | None = None) -> None:
        self.http = http
        self.rpc_url = rpc_url or getattr(config, "SOLANA_RPC_URL", "")

    async def call(self, method: str, params: list[Any]) -> Any:
        result = await self.http.post_json(
            self.rpc_url,
            {"jsonrpc": "2.0", "id": 1, "method": method, "params": params},
            source="rpc",
        )
        if not result.ok or not isinstance(result.data, dict):
            raise TransientDataError(f"rpc {method} failed: {result.error or result.status}")
        if result.data.get("error"):
            raise TransientDataError(f"rpc {method} error: {result.data['error']}")
        return result.data.get("result")

    async def get_sol_balance(self, owner: str) -> float:
        result = await self.call("getBalance", [owner, {"commitment": "confirmed"}])
        lamports = int((result or {}).get("value", 0) or 0)
        return lamports / float(config.LAMPORTS_PER_SOL)

    async def get_balances(self, owner: str) -> dict[str, TokenBalance]:
        """Mint -> balance, native SOL reported under the wrapped SOL mint."""
        balances = {config.SOL_MINT: TokenBalance(await self.get_sol_balance(owner), 9)}
        result = await self.call(
            "getTokenAccountsByOwner",
            [owner, {"programId": TOKEN_PROGRAM_ID}, {"encoding": "jsonParsed", "commitment": "confirmed"}],
        )
        for row in (result or {}).get("value", []) or []:
            try:
                info = row["account"]["data"]["parsed"]["info"]
                mint = str(info["mint"])
                amount = float(info["tokenAmount"].get("uiAmount") or 0.0)
                decimals = int(info["tokenAmount"].get("decimals") or 0)
            except (KeyError, TypeError, ValueError):
                continue
            if amount > 0:
                held = balances.get(mint)
                balances[mint] = TokenBalance((held.amount if held else 0.0) + amount, decimals)
        return balances
