"""Stable log contracts: reason codes and structured decision events for strategy loops."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

LOG_SCHEMA_VERSION = "2026-10-01.v1"

SCHEMA_CANDIDATE_DECISION = "candidate_decision.v1"
SCHEMA_TRADE_DECISION = "trade_decision.v1"

_STAGE_PREFIX: dict[str, str] = {
    "cooldown": "PLAN",
    "age_gate": "FILTER",
    "gate": "FILTER",
    "safety": "SAFETY",
    "guard": "CAP",
    "quote": "QUOTE",
    "trade": "EXEC",
    "halt": "HALT",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "cooldown": "PLAN_COOLDOWN",
    "low_balance": "PLAN_LOW_BALANCE",
    "overview_fail": "FILTER_NO_PRICE_DATA",
    "pump_fail": "FILTER_PUMP_BELOW_ENTRY",
    "dip_fail": "FILTER_DIP_NOT_REACHED",
    "vol_fail": "FILTER_VOLUME_FLOOR",
    "volspike": "FILTER_VOLUME_SPIKE",
    "usd_limit": "FILTER_USD_LIMIT",
    "mcap_min": "FILTER_MCAP_MIN",
    "mcap_max": "FILTER_MCAP_MAX",
    "age_min": "FILTER_AGE_MIN",
    "age_max": "FILTER_AGE_MAX",
    "age_unknown": "FILTER_AGE_UNKNOWN",
    "safety_fail": "SAFETY_FAIL",
    "same_token": "QUOTE_SAME_TOKEN",
    "quoteerror": "QUOTE_ERROR",
    "no_route": "QUOTE_NO_ROUTE",
    "invalid_impact": "QUOTE_INVALID_IMPACT",
    "impact": "QUOTE_IMPACT",
    "daily": "CAP_DAILY",
    "opentrades": "CAP_OPEN_TRADES",
    "totaltrades": "CAP_TOTAL_TRADES",
    "buy_dry_run": "EXEC_BUY_DRY_RUN",
    "buy_live": "EXEC_BUY_LIVE",
    "trade_error": "EXEC_TRADE_ERROR",
    "errors": "HALT_ERRORS",
    "insufficient_balance": "HALT_INSUFFICIENT_BALANCE",
    "price_floor": "HALT_PRICE_FLOOR",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "PLAN_COOLDOWN": {"severity": "INFO", "category": "plan", "title": "Cooldown active"},
    "PLAN_LOW_BALANCE": {"severity": "WARN", "category": "plan", "title": "Wallet below minimum balance"},
    "FILTER_NO_PRICE_DATA": {"severity": "INFO", "category": "filter", "title": "No price data"},
    "FILTER_PUMP_BELOW_ENTRY": {"severity": "INFO", "category": "filter", "title": "Price change below entry threshold"},
    "FILTER_DIP_NOT_REACHED": {"severity": "INFO", "category": "filter", "title": "Dip threshold not reached"},
    "FILTER_VOLUME_FLOOR": {"severity": "INFO", "category": "filter", "title": "Volume below floor"},
    "FILTER_VOLUME_SPIKE": {"severity": "INFO", "category": "filter", "title": "Volume spike not reached"},
    "FILTER_USD_LIMIT": {"severity": "INFO", "category": "filter", "title": "Price above USD limit"},
    "FILTER_MCAP_MIN": {"severity": "INFO", "category": "filter", "title": "Market cap below minimum"},
    "FILTER_MCAP_MAX": {"severity": "INFO", "category": "filter", "title": "Market cap above maximum"},
    "FILTER_AGE_MIN": {"severity": "INFO", "category": "filter", "title": "Token younger than minimum age"},
    "FILTER_AGE_MAX": {"severity": "INFO", "category": "filter", "title": "Token older than maximum age"},
    "FILTER_AGE_UNKNOWN": {"severity": "INFO", "category": "filter", "title": "Token age unavailable"},
    "SAFETY_FAIL": {"severity": "WARN", "category": "safety", "title": "Safety check failed"},
    "QUOTE_SAME_TOKEN": {"severity": "INFO", "category": "quote", "title": "Circular swap refused"},
    "QUOTE_ERROR": {"severity": "ERROR", "category": "quote", "title": "Quote request failed"},
    "QUOTE_NO_ROUTE": {"severity": "INFO", "category": "quote", "title": "No route"},
    "QUOTE_INVALID_IMPACT": {"severity": "WARN", "category": "quote", "title": "Unparseable price impact"},
    "QUOTE_IMPACT": {"severity": "INFO", "category": "quote", "title": "Price impact above ceiling"},
    "CAP_DAILY": {"severity": "INFO", "category": "cap", "title": "Daily volume cap reached"},
    "CAP_OPEN_TRADES": {"severity": "INFO", "category": "cap", "title": "Open-trade cap reached"},
    "CAP_TOTAL_TRADES": {"severity": "INFO", "category": "cap", "title": "Total-trade cap reached"},
    "EXEC_BUY_DRY_RUN": {"severity": "INFO", "category": "execute", "title": "Simulated trade"},
    "EXEC_BUY_LIVE": {"severity": "INFO", "category": "execute", "title": "Live trade submitted"},
    "EXEC_TRADE_ERROR": {"severity": "ERROR", "category": "execute", "title": "Trade attempt failed"},
    "HALT_ERRORS": {"severity": "ERROR", "category": "halt", "title": "Halted on consecutive failures"},
    "HALT_INSUFFICIENT_BALANCE": {"severity": "ERROR", "category": "halt", "title": "Halted on insufficient balance"},
    "HALT_PRICE_FLOOR": {"severity": "WARN", "category": "halt", "title": "Halted on price floor"},
}


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def _as_ts(value: Any) -> float:
    if value is None or value == "":
        return datetime.now(timezone.utc).timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    try:
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc).timestamp()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _iso_from_ts(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def _normalize_reason_text(value: Any) -> str:
    text = str(value or "").strip().lower()
    if not text:
        return ""
    text = re.sub(r"[^a-z0-9]+", "_", text)
    return re.sub(r"_+", "_", text).strip("_")


def _sanitize_code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    text = re.sub(r"_+", "_", text).strip("_")
    return text or "UNKNOWN"


def _stage_prefix(value: Any) -> str:
    stage = _normalize_reason_text(value) or "unknown"
    return _STAGE_PREFIX.get(stage, "UNKNOWN")


def reason_code_for_event(*, reason: Any, decision_stage: Any = "", decision: Any = "") -> str:
    normalized_reason = _normalize_reason_text(reason)
    if not normalized_reason:
        normalized_decision = _normalize_reason_text(decision)
        if normalized_decision:
            return f"{_stage_prefix(decision_stage)}_{_sanitize_code_token(normalized_decision)}"
        return "UNKNOWN"
    override = _REASON_CODE_OVERRIDES.get(normalized_reason)
    if override:
        return override
    return f"{_stage_prefix(decision_stage)}_{_sanitize_code_token(normalized_reason)}"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _sanitize_code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {"severity": "INFO", "category": "unknown", "title": key.replace("_", " ").title()}


def _digest_seed(*parts: Any) -> str:
    seed = "|".join(str(p or "").strip() for p in parts)
    return hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()


def stamp_event(event: dict[str, Any], *, schema_name: str, event_type: str, run_tag: str = "") -> dict[str, Any]:
    payload = dict(event or {})
    ts = _as_ts(payload.get("ts", payload.get("timestamp")))
    payload["ts"] = float(ts)
    payload["timestamp"] = str(payload.get("timestamp", "") or _iso_from_ts(ts))
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", schema_name)
    payload.setdefault("event_type", str(event_type or "event"))
    if run_tag:
        payload.setdefault("run_tag", str(run_tag))
    mint = str(payload.get("mint", "") or "").strip()
    payload["mint"] = mint
    if not payload.get("trace_id"):
        payload["trace_id"] = f"tr_{_digest_seed(payload.get('bot_id', ''), mint, f'{ts:.6f}')[:20]}"
    if not payload.get("decision_id"):
        payload["decision_id"] = "dec_" + _digest_seed(
            payload.get("run_tag", run_tag),
            payload["trace_id"],
            payload.get("decision_stage", ""),
            payload.get("decision", ""),
            payload.get("reason", ""),
            f"{ts:.6f}",
        )[:20]
    return payload


def _attach_reason(payload: dict[str, Any]) -> dict[str, Any]:
    payload.setdefault("decision_stage", "unknown")
    payload.setdefault("decision", "unknown")
    payload["reason"] = str(payload.get("reason", "") or "")
    payload["reason_code"] = str(
        payload.get("reason_code", "")
        or reason_code_for_event(
            reason=payload["reason"],
            decision_stage=payload["decision_stage"],
            decision=payload["decision"],
        )
    ).strip().upper()
    meta = reason_code_meta(payload["reason_code"])
    payload["reason_severity"] = str(payload.get("reason_severity") or meta["severity"])
    payload["reason_category"] = str(payload.get("reason_category") or meta["category"])
    return payload


def candidate_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    """A candidate was skipped or passed at some stage of a tick."""
    payload = stamp_event(
        event,
        schema_name=SCHEMA_CANDIDATE_DECISION,
        event_type=str((event or {}).get("event_type", "candidate_decision")),
        run_tag=run_tag,
    )
    payload["symbol"] = str(payload.get("symbol", "") or "N/A")
    return _attach_reason(payload)


def trade_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(
        event,
        schema_name=SCHEMA_TRADE_DECISION,
        event_type=str((event or {}).get("event_type", "trade_decision")),
        run_tag=run_tag,
    )
    payload["symbol"] = str(payload.get("symbol", "") or "N/A")
    payload["spent"] = _safe_float(payload.get("spent", 0.0), 0.0)
    payload["signature"] = str(payload.get("signature", "") or "")
    if payload["signature"] and not payload.get("position_id"):
        payload["position_id"] = f"pos_{_digest_seed(payload.get('bot_id', ''), payload['signature'])[:20]}"
    return _attach_reason(payload)
