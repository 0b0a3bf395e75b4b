"""Trade execution: sign Jupiter swaps with solders and submit them."""

from __future__ import annotations

import asyncio
import base64
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

import config
from trading.errors import InsufficientBalanceError, is_insufficient_balance
from trading.jupiter import JupiterClient
from trading.relay_client import RelayClient
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)


@dataclass
class TradeMeta:
    strategy: str
    category: str
    bot_id: str = ""
    owner_id: str = ""
    wallet_id: str = ""
    take_profit: float | None = None
    stop_loss: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class TradeReceipt:
    signature: str
    simulated: bool
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    price_impact: float | None = None
    via: str = ""


class TradeExecutor(Protocol):
    async def execute(self, *, quote: dict[str, Any], signer: Keypair | None, asset_id: str, meta: TradeMeta) -> TradeReceipt: ...


def load_signer(private_key: str | None = None) -> Keypair:
    """Keypair from a base58 secret (64 bytes) as exported by common wallets."""
    secret = str(private_key if private_key is not None else getattr(config, "WALLET_PRIVATE_KEY", "")).strip()
    if not secret:
        raise ValueError("WALLET_PRIVATE_KEY is empty")
    return Keypair.from_base58_string(secret)


def _receipt(quote: dict[str, Any], signature: str, *, simulated: bool, via: str) -> TradeReceipt:
    try:
        impact = float(quote.get("priceImpactPct"))
    except (TypeError, ValueError):
        impact = None
    return TradeReceipt(
        signature=signature,
        simulated=simulated,
        input_mint=str(quote.get("inputMint") or ""),
        output_mint=str(quote.get("outputMint") or ""),
        in_amount=int(quote.get("inAmount") or 0),
        out_amount=int(quote.get("outAmount") or 0),
        price_impact=impact,
        via=via,
    )


class DryRunExecutor:
    """Same contract as the live executor, no network effect."""

    async def execute(self, *, quote: dict[str, Any], signer: Keypair | None, asset_id: str, meta: TradeMeta) -> TradeReceipt:
        signature = f"dryrun-{uuid.uuid4().hex[:16]}"
        logger.info(
            "TRADE_SIMULATED bot=%s strategy=%s mint=%s in=%s out=%s",
            meta.bot_id,
            meta.strategy,
            asset_id,
            quote.get("inAmount"),
            quote.get("outAmount"),
        )
        return _receipt(quote, signature, simulated=True, via="dry-run")


class LiveExecutor:
    def __init__(self, http: ResilientHttpClient, jupiter: JupiterClient, relay: RelayClient) -> None:
        self.http = http
        self.jupiter = jupiter
        self.relay = relay
        self._signer_locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, signer: Keypair) -> asyncio.Lock:
        key = str(signer.pubkey())
        lock = self._signer_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._signer_locks[key] = lock
        return lock

    async def execute(self, *, quote: dict[str, Any], signer: Keypair | None, asset_id: str, meta: TradeMeta) -> TradeReceipt:
        if signer is None:
            raise ValueError("live execution requires a signer")
        # One in-flight submission per wallet; bots sharing this executor queue here.
        async with self._lock_for(signer):
            tx_bytes = await self.jupiter.swap_transaction(quote, str(signer.pubkey()))
            unsigned = VersionedTransaction.from_bytes(tx_bytes)
            signed = VersionedTransaction(unsigned.message, [signer])
            encoded = base64.b64encode(bytes(signed)).decode("ascii")
            signature = str(signed.signatures[0])

            relayed = await self.relay.send(encoded)
            if relayed.ok:
                logger.info("TRADE_SUBMITTED bot=%s mint=%s sig=%s via=relay", meta.bot_id, asset_id, signature)
                return _receipt(quote, signature, simulated=False, via=f"relay:{relayed.endpoint}")

            sent = await self._send_rpc(encoded)
            logger.info("TRADE_SUBMITTED bot=%s mint=%s sig=%s via=rpc", meta.bot_id, asset_id, sent or signature)
            return _receipt(quote, sent or signature, simulated=False, via="rpc")

    async def _send_rpc(self, encoded: str) -> str:
        result = await self.http.post_json(
            getattr(config, "SOLANA_RPC_URL", ""),
            {
                "jsonrpc": "2.0",
                "id": 1,
                "method": "sendTransaction",
                "params": [encoded, {"encoding": "base64", "skipPreflight": False, "maxRetries": 3}],
            },
            source="rpc",
            max_attempts=1,
        )
        if not result.ok or not isinstance(result.data, dict):
            raise RuntimeError(f"sendTransaction failed: {result.error or result.status}")
        error = result.data.get("error")
        if error:
            message = str(error.get("message") if isinstance(error, dict) else error)
            exc = RuntimeError(f"sendTransaction rejected: {message}")
            if is_insufficient_balance(exc):
                raise InsufficientBalanceError(message)
            raise exc
        return str(result.data.get("result") or "")
