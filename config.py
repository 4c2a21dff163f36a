"""Application configuration."""

import os
from pathlib import Path

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
    return raw.strip().lower() in {"1", "true", "yes", "on"}


BOT_INSTANCE_ID = os.getenv("BOT_INSTANCE_ID", "").strip()
RUN_TAG = os.getenv("RUN_TAG", BOT_INSTANCE_ID).strip() or "single"

# Paper account.
INITIAL_BALANCE_USD = max(0.0, float(os.getenv("INITIAL_BALANCE_USD", "100")))
# Entries below this size are skipped as dust.
MIN_BET_USD = max(0.0, float(os.getenv("MIN_BET_USD", "1.0")))

# Control loops.
SCAN_INTERVAL_SECONDS = max(1.0, float(os.getenv("SCAN_INTERVAL_SECONDS", "8")))
MONITOR_INTERVAL_SECONDS = max(0.5, float(os.getenv("MONITOR_INTERVAL_SECONDS", "3")))

# Market data (DexScreener).
CHAIN_ID = os.getenv("CHAIN_ID", "solana").strip().lower()
DEXSCREENER_API = os.getenv("DEXSCREENER_API", "https://api.dexscreener.com/latest/dex").rstrip("/")
DEX_PROFILES_URL = os.getenv("DEX_PROFILES_URL", "https://api.dexscreener.com/token-profiles/latest/v1")
DEX_BOOSTS_URL = os.getenv("DEX_BOOSTS_URL", "https://api.dexscreener.com/token-boosts/latest/v1")
DEX_SEARCH_QUERY = os.getenv("DEX_SEARCH_QUERY", "solana meme")
# Search fallback kicks in when profiles + boosts yield fewer addresses than this.
DEX_SEARCH_FALLBACK_MIN_ADDRESSES = max(0, int(os.getenv("DEX_SEARCH_FALLBACK_MIN_ADDRESSES", "5")))
DEX_SEARCH_FALLBACK_MAX_PAIRS = max(1, int(os.getenv("DEX_SEARCH_FALLBACK_MAX_PAIRS", "10")))
# DexScreener /tokens endpoint accepts up to 30 comma-separated addresses.
DEX_TOKENS_BATCH_MAX = max(1, min(30, int(os.getenv("DEX_TOKENS_BATCH_MAX", "30"))))
DEX_TIMEOUT = int(os.getenv("DEX_TIMEOUT", "15"))
DEX_RETRIES = max(1, int(os.getenv("DEX_RETRIES", "3")))
PLACEHOLDER_IMAGE_URL = os.getenv("PLACEHOLDER_IMAGE_URL", "https://via.placeholder.com/48?text=?")
PLACEHOLDER_IMAGE_MARKER = os.getenv("PLACEHOLDER_IMAGE_MARKER", "placeholder").strip().lower()

# HTTP transport.
HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "8")))
HTTP_RETRY_ATTEMPTS = max(1, int(os.getenv("HTTP_RETRY_ATTEMPTS", "3")))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_BASE_SECONDS", "0.5")))
HTTP_BACKOFF_MAX_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_MAX_SECONDS", "8.0")))
HTTP_JITTER_SECONDS = max(0.0, float(os.getenv("HTTP_JITTER_SECONDS", "0.25")))
HTTP_429_COOLDOWN_SECONDS = max(0.0, float(os.getenv("HTTP_429_COOLDOWN_SECONDS", "30")))

# Persistence.
STATE_DIR = os.getenv("STATE_DIR", "data").strip() or "data"
STATE_LOCK_TIMEOUT_SECONDS = max(0.05, float(os.getenv("STATE_LOCK_TIMEOUT_SECONDS", "2.0")))
STATE_PERSIST_ENABLED = _env_bool("STATE_PERSIST_ENABLED", True)
# Optional strategy JSON imported on startup (same layout as an exported strategy).
STRATEGY_FILE = os.getenv("STRATEGY_FILE", "").strip()

# Structured decision log.
TRADE_DECISIONS_LOG_ENABLED = _env_bool("TRADE_DECISIONS_LOG_ENABLED", True)
TRADE_DECISIONS_LOG_FILE = os.getenv(
    "TRADE_DECISIONS_LOG_FILE",
    os.path.join("logs", "trade_decisions.jsonl"),
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
