"""Application configuration."""

import os
from pathlib import Path
from typing import Dict, Tuple

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(float(os.getenv(name, str(default))))
    except (TypeError, ValueError):
        return default


def _env_list(name: str, default: str = "") -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


def _parse_source_rate_limits(raw: str) -> Dict[str, Tuple[int, float]]:
    out: Dict[str, Tuple[int, float]] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, rate_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source or "/" not in rate_part:
            continue
        count_part, window_part = rate_part.split("/", 1)
        try:
            count = max(1, int(float(count_part.strip())))
            window_seconds = max(1.0, float(window_part.strip()))
        except ValueError:
            continue
        out[source] = (count, window_seconds)
    return out


def _parse_source_float_map(raw: str) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, value_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source:
            continue
        try:
            out[source] = max(0.0, float(value_part.strip()))
        except ValueError:
            continue
    return out


# Process / logging
BOT_INSTANCE_ID = os.getenv("BOT_INSTANCE_ID", "").strip()
RUN_TAG = os.getenv("RUN_TAG", BOT_INSTANCE_ID).strip()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.getenv("APP_LOG_FILE", os.path.join(LOG_DIR, "app.log"))
STATUS_SNAPSHOT_FILE = os.getenv("STATUS_SNAPSHOT_FILE", os.path.join("data", "strategy_status.json"))

# Persistence
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///bot.db")

# Alerts
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_DEFAULT_CHAT_ID = os.getenv("TELEGRAM_DEFAULT_CHAT_ID", "").strip()
ALERTS_ENABLED = _env_bool("ALERTS_ENABLED", True)
EXPLORER_TX_URL_TEMPLATE = os.getenv("EXPLORER_TX_URL_TEMPLATE", "https://solscan.io/tx/{signature}")

# Market data
BIRDEYE_API_URL = os.getenv("BIRDEYE_API_URL", "https://public-api.birdeye.so").rstrip("/")
BIRDEYE_API_KEY = os.getenv("BIRDEYE_API_KEY", "")
BIRDEYE_CHAIN = os.getenv("BIRDEYE_CHAIN", "solana")
BIRDEYE_CACHE_TTL_SECONDS = max(0.0, _env_float("BIRDEYE_CACHE_TTL_SECONDS", 60.0))
BIRDEYE_OVERVIEW_ATTEMPTS = max(1, _env_int("BIRDEYE_OVERVIEW_ATTEMPTS", 2))
FEED_LIST_LIMIT = max(1, _env_int("FEED_LIST_LIMIT", 20))

# Swap aggregator / chain
JUPITER_QUOTE_URL = os.getenv("JUPITER_QUOTE_URL", "https://lite-api.jup.ag/swap/v1/quote")
JUPITER_SWAP_URL = os.getenv("JUPITER_SWAP_URL", "https://lite-api.jup.ag/swap/v1/swap")
JUPITER_PRIORITY_FEE_LAMPORTS = max(0, _env_int("JUPITER_PRIORITY_FEE_LAMPORTS", 0))
SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com")
WALLET_PRIVATE_KEY = os.getenv("WALLET_PRIVATE_KEY", "").strip()
WALLET_LABEL = os.getenv("WALLET_LABEL", "default").strip() or "default"
SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
LAMPORTS_PER_SOL = 1_000_000_000

# Relay fan-out
RELAY_ENABLED = _env_bool("RELAY_ENABLED", False)
RELAY_URLS = _env_list("RELAY_URLS")
RELAY_MODE = os.getenv("RELAY_MODE", "turbo").strip().lower() or "turbo"
RELAY_TIMEOUT_SECONDS = max(1.0, _env_float("RELAY_TIMEOUT_SECONDS", 10.0))

# Shared HTTP client
HTTP_CONNECTOR_LIMIT = max(1, _env_int("HTTP_CONNECTOR_LIMIT", 30))
HTTP_DEFAULT_CONCURRENCY = max(1, _env_int("HTTP_DEFAULT_CONCURRENCY", 8))
HTTP_RETRY_ATTEMPTS = max(1, _env_int("HTTP_RETRY_ATTEMPTS", 3))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, _env_float("HTTP_BACKOFF_BASE_SECONDS", 0.5))
HTTP_BACKOFF_MAX_SECONDS = max(0.1, _env_float("HTTP_BACKOFF_MAX_SECONDS", 8.0))
HTTP_JITTER_SECONDS = max(0.0, _env_float("HTTP_JITTER_SECONDS", 0.25))
HTTP_RATE_LIMIT_DELAY_SECONDS = max(0.0, _env_float("HTTP_RATE_LIMIT_DELAY_SECONDS", 2.0))
HTTP_429_COOLDOWN_SECONDS = max(0.0, _env_float("HTTP_429_COOLDOWN_SECONDS", 30.0))
HTTP_SOURCE_RATE_LIMITS = _parse_source_rate_limits(os.getenv("HTTP_SOURCE_RATE_LIMITS", "birdeye:15/1"))
HTTP_SOURCE_429_COOLDOWNS = _parse_source_float_map(os.getenv("HTTP_SOURCE_429_COOLDOWNS", ""))

# Outbound call deadlines
DATA_FETCH_TIMEOUT_SECONDS = max(1.0, _env_float("DATA_FETCH_TIMEOUT_SECONDS", 8.0))
TRADE_SUBMIT_TIMEOUT_SECONDS = max(5.0, _env_float("TRADE_SUBMIT_TIMEOUT_SECONDS", 45.0))

# Scheduler
SCHEDULER_PRELAUNCH_MINUTES = max(0.0, _env_float("SCHEDULER_PRELAUNCH_MINUTES", 5.0))

# Strategy defaults
DEFAULT_INTERVAL_SECONDS = max(1.0, _env_float("DEFAULT_INTERVAL_SECONDS", 30.0))
DEFAULT_COOLDOWN_SECONDS = max(0.0, _env_float("DEFAULT_COOLDOWN_SECONDS", 60.0))
DEFAULT_HALT_ON_FAILURES = max(1, _env_int("DEFAULT_HALT_ON_FAILURES", 3))
DEFAULT_SLIPPAGE_PERCENT = max(0.0, _env_float("DEFAULT_SLIPPAGE_PERCENT", 1.0))
DEFAULT_MAX_IMPACT = max(0.0, _env_float("DEFAULT_MAX_IMPACT", 0.15))
DEFAULT_VOLUME_THRESHOLD_USD = max(0.0, _env_float("DEFAULT_VOLUME_THRESHOLD_USD", 50_000.0))
DEFAULT_MIN_TRADE_USD = max(0.0, _env_float("DEFAULT_MIN_TRADE_USD", 5.0))
MIN_TRADE_LAMPORTS = max(1, _env_int("MIN_TRADE_LAMPORTS", 10_000))
SOL_GAS_BUFFER = max(0.0, _env_float("SOL_GAS_BUFFER", 0.02))
LIMIT_MIN_EXEC_GAP_SECONDS = max(0.0, _env_float("LIMIT_MIN_EXEC_GAP_SECONDS", 3.0))

# Safety checks
SAFETY_MIN_LIQUIDITY_USD = max(0.0, _env_float("SAFETY_MIN_LIQUIDITY_USD", 5_000.0))
SAFETY_SIM_AMOUNT_LAMPORTS = max(1, _env_int("SAFETY_SIM_AMOUNT_LAMPORTS", 5_000_000))
SAFETY_SIM_MAX_IMPACT_PCT = max(0.0, _env_float("SAFETY_SIM_MAX_IMPACT_PCT", 5.0))
SAFETY_TOP1_MAX_PCT = max(0.0, _env_float("SAFETY_TOP1_MAX_PCT", 50.0))
SAFETY_TOP5_MAX_PCT = max(0.0, _env_float("SAFETY_TOP5_MAX_PCT", 75.0))
SAFETY_CACHE_TTL_SECONDS = max(0.0, _env_float("SAFETY_CACHE_TTL_SECONDS", 30.0))
