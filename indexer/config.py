from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv


@dataclass(frozen=True)
class FlaskSettings:
    secret_key: str = "raffle-indexer-dev-secret"
    debug: bool = True


@dataclass(frozen=True)
class ChainSettings:
    rpc_url: str
    contract_address: str
    abi_path: Optional[str] = None
    start_block: int = 0
    confirmations: int = 0
    batch_size: int = 2000


@dataclass(frozen=True)
class AppSettings:
    flask: FlaskSettings
    chain: ChainSettings
    database_url: str
    poll_interval_seconds: float = 2.0
    live_poll_seconds: float = 1.0
    keepalive_seconds: float = 15.0


def _require(key: str) -> str:
    value = os.getenv(key)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {key}")
    return value


def _int_from_env(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return int(value)


def _float_from_env(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return float(value)


@lru_cache(maxsize=1)
def load_settings(dotenv_path: Optional[str] = None) -> AppSettings:
    if dotenv_path:
        load_dotenv(dotenv_path)
    else:
        load_dotenv()

    flask_settings = FlaskSettings(
        secret_key=os.getenv("FLASK_SECRET_KEY", "raffle-indexer-dev-secret"),
        debug=os.getenv("FLASK_DEBUG", "1") == "1",
    )

    chain_settings = ChainSettings(
        rpc_url=_require("RPC_URL"),
        contract_address=_require("RAFFLE_CONTRACT_ADDRESS"),
        abi_path=os.getenv("RAFFLE_ABI_PATH") or None,
        start_block=_int_from_env("START_BLOCK", 0),
        confirmations=_int_from_env("CONFIRMATIONS", 0),
        batch_size=max(_int_from_env("BATCH_SIZE", 2000), 1),
    )

    return AppSettings(
        flask=flask_settings,
        chain=chain_settings,
        database_url=os.getenv("DATABASE_URL", "sqlite:///raffle_indexer.db"),
        poll_interval_seconds=_float_from_env("POLL_INTERVAL_SECONDS", 2.0),
        live_poll_seconds=_float_from_env("LIVE_POLL_SECONDS", 1.0),
        keepalive_seconds=_float_from_env("KEEPALIVE_SECONDS", 15.0),
    )
