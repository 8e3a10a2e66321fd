import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
DEAD_ADDRESS = "0x000000000000000000000000000000000000dead"
BURN_ADDRESSES = frozenset({ZERO_ADDRESS, DEAD_ADDRESS})


def _env_int(name, default):
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name, default):
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_list(name, default):
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    # ─── PROVIDERS ──────────────────────────────────────────────────
    rpc_url: Optional[str] = None
    alchemy_api_key: Optional[str] = None
    alchemy_network: str = "eth-mainnet"
    # ─── REMOTE CACHE (optional) ────────────────────────────────────
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    cache_table: str = "holder_cache"
    # ─── LOCAL CACHE / SERVER ───────────────────────────────────────
    cache_dir: str = "cache"
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])
    request_wait_seconds: float = 20.0
    default_page_size: int = 100
    # ─── RETRY / RATE LIMIT ─────────────────────────────────────────
    retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    call_timeout: float = 30.0
    rate_budget: int = 25
    circuit_threshold: int = 5
    circuit_cooldown: float = 30.0
    # ─── BATCHING ───────────────────────────────────────────────────
    multicall_batch_size: int = 50
    multicall_concurrency: int = 2
    log_chunk_size: int = 200
    owner_max_pages: int = 100
    # ─── SYNC POLICY ────────────────────────────────────────────────
    stale_after_minutes: float = 10.0
    tier_cache_ttl: int = 86400

    @classmethod
    def from_env(cls, dotenv=True):
        """Build settings from the process environment (and `.env` when present)."""
        if dotenv:
            load_dotenv()
        defaults = cls()
        return cls(
            rpc_url=os.getenv("RPC_URL"),
            alchemy_api_key=os.getenv("ALCHEMY_API_KEY"),
            alchemy_network=os.getenv("ALCHEMY_NETWORK", defaults.alchemy_network),
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_key=os.getenv("SUPABASE_KEY"),
            cache_table=os.getenv("SUPABASE_CACHE_TABLE", defaults.cache_table),
            cache_dir=os.getenv("CACHE_DIR", defaults.cache_dir),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
            cors_origins=_env_list("CORS_ORIGINS", defaults.cors_origins),
            request_wait_seconds=_env_float("REQUEST_WAIT_SECONDS", defaults.request_wait_seconds),
            default_page_size=_env_int("DEFAULT_PAGE_SIZE", defaults.default_page_size),
            retries=_env_int("RETRIES", defaults.retries),
            retry_base_delay=_env_float("RETRY_BASE_DELAY", defaults.retry_base_delay),
            retry_max_delay=_env_float("RETRY_MAX_DELAY", defaults.retry_max_delay),
            call_timeout=_env_float("CALL_TIMEOUT", defaults.call_timeout),
            rate_budget=_env_int("RATE_BUDGET", defaults.rate_budget),
            circuit_threshold=_env_int("CIRCUIT_THRESHOLD", defaults.circuit_threshold),
            circuit_cooldown=_env_float("CIRCUIT_COOLDOWN", defaults.circuit_cooldown),
            multicall_batch_size=_env_int("MULTICALL_BATCH_SIZE", defaults.multicall_batch_size),
            multicall_concurrency=_env_int("MULTICALL_CONCURRENCY", defaults.multicall_concurrency),
            log_chunk_size=_env_int("LOG_CHUNK_SIZE", defaults.log_chunk_size),
            owner_max_pages=_env_int("OWNER_MAX_PAGES", defaults.owner_max_pages),
            stale_after_minutes=_env_float("STALE_AFTER_MINUTES", defaults.stale_after_minutes),
            tier_cache_ttl=_env_int("TIER_CACHE_TTL", defaults.tier_cache_ttl),
        )

    @property
    def remote_cache_enabled(self):
        return bool(self.supabase_url and self.supabase_key)
