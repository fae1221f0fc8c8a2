"""Environment-backed settings for the swap pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

_ENV_LOADED = False


def _load_env() -> None:
    global _ENV_LOADED
    if _ENV_LOADED:
        return
    env_path = Path(__file__).resolve().parents[1] / ".env"
    load_dotenv(dotenv_path=env_path)
    _ENV_LOADED = True


def get_env(
    name: str, default: str | None = None, required: bool = False
) -> str | None:
    _load_env()
    value = os.environ.get(name, default)
    if required and (value is None or value == ""):
        raise SystemExit(f"{name} env var is required")
    return value


def _get_int(name: str, default: int) -> int:
    raw = get_env(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise SystemExit(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    aggregator_base_url: str = "https://aggregator-api.kyberswap.com"
    token_api_base_url: str = "https://kd-market-service-api.kyberengineering.io/ethereum"
    client_id: str = "FlashTrade"
    database_url: str = "sqlite:///flashswap.db"
    auto_sell_delay_minutes: int = 24 * 60
    auto_sell_slippage_bps: int = 500
    default_slippage_bps: int = 50
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            aggregator_base_url=get_env(
                "AGGREGATOR_BASE_URL", defaults.aggregator_base_url
            ),
            token_api_base_url=get_env(
                "TOKEN_API_BASE_URL", defaults.token_api_base_url
            ),
            client_id=get_env("AGGREGATOR_CLIENT_ID", defaults.client_id),
            database_url=get_env("DATABASE_URL", defaults.database_url),
            auto_sell_delay_minutes=_get_int(
                "AUTO_SELL_DELAY_MINUTES", defaults.auto_sell_delay_minutes
            ),
            auto_sell_slippage_bps=_get_int(
                "AUTO_SELL_SLIPPAGE_BPS", defaults.auto_sell_slippage_bps
            ),
            default_slippage_bps=_get_int(
                "DEFAULT_SLIPPAGE_BPS", defaults.default_slippage_bps
            ),
            log_level=get_env("LOG_LEVEL", defaults.log_level).upper(),
        )


def rpc_url_override(chain_name: str) -> str | None:
    """Per-chain RPC endpoint from ``RPC_URL_<CHAIN>``, if set."""
    value = get_env(f"RPC_URL_{chain_name.upper()}")
    return value or None
