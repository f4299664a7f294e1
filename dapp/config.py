from __future__ import annotations

import os
import pathlib
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from web3 import Web3

REQUIRED_VARIABLES = (
    "RPC_URL",
    "RAFFLE_CONTRACT_ADDRESS",
    "INDEXER_URL",
    "TARGET_CHAIN_ID",
)


def _int_from_env(value: Optional[str], default: int) -> int:
    if value is None or value == "":
        return default
    return int(value)


def _float_from_env(value: Optional[str], default: float) -> float:
    if value is None or value == "":
        return default
    return float(value)


def _missing_variables() -> list[str]:
    return [key for key in REQUIRED_VARIABLES if not os.getenv(key)]


@dataclass(frozen=True)
class LiveSettings:
    reconnect_delay_seconds: float = 2.0
    max_retry_attempts: int = 5
    recent_winners_limit: int = 12


@dataclass(frozen=True)
class WatcherSettings:
    poll_interval_seconds: float = 2.0
    max_consecutive_failures: int = 10


@dataclass(frozen=True)
class ClientSettings:
    rpc_url: str
    contract_address: str
    indexer_url: str
    chain_id: int
    player_private_key: Optional[str] = None
    player_address: Optional[str] = None
    abi_path: Optional[str] = None
    indexer_timeout_seconds: int = 10
    entry_success_seconds: float = 3.0
    live: LiveSettings = LiveSettings()
    watcher: WatcherSettings = WatcherSettings()

    def copy(self, **updates) -> "ClientSettings":
        return replace(self, **updates)


def load_from_environment() -> ClientSettings:
    missing = _missing_variables()
    if missing:
        lines = "\n".join(f"  - {name}" for name in missing)
        raise RuntimeError(
            f"Missing required environment variables:\n{lines}\n"
            "Check your .env file and ensure all required variables are set."
        )

    try:
        chain_id = int(os.environ["TARGET_CHAIN_ID"])
    except ValueError as exc:
        raise RuntimeError("TARGET_CHAIN_ID must be an integer") from exc

    contract_address = os.environ["RAFFLE_CONTRACT_ADDRESS"]
    if not Web3.is_address(contract_address):
        raise RuntimeError(f"RAFFLE_CONTRACT_ADDRESS is not a valid address: {contract_address}")

    player_address = os.getenv("PLAYER_ADDRESS") or None
    if player_address and not Web3.is_address(player_address):
        raise RuntimeError(f"PLAYER_ADDRESS is not a valid address: {player_address}")

    live = LiveSettings(
        reconnect_delay_seconds=_int_from_env(os.getenv("RECONNECT_DELAY_MS"), 2000) / 1000,
        max_retry_attempts=_int_from_env(os.getenv("MAX_RETRY_ATTEMPTS"), 5),
        recent_winners_limit=_int_from_env(os.getenv("RECENT_WINNERS_LIMIT"), 12),
    )
    watcher = WatcherSettings(
        poll_interval_seconds=_float_from_env(os.getenv("WATCH_POLL_SECONDS"), 2.0),
        max_consecutive_failures=_int_from_env(os.getenv("WATCH_MAX_FAILURES"), 10),
    )

    return ClientSettings(
        rpc_url=os.environ["RPC_URL"],
        contract_address=Web3.to_checksum_address(contract_address),
        indexer_url=os.environ["INDEXER_URL"].rstrip("/"),
        chain_id=chain_id,
        player_private_key=os.getenv("PLAYER_PRIVATE_KEY") or None,
        player_address=Web3.to_checksum_address(player_address) if player_address else None,
        abi_path=os.getenv("RAFFLE_ABI_PATH") or None,
        indexer_timeout_seconds=_int_from_env(os.getenv("INDEXER_TIMEOUT_SECONDS"), 10),
        entry_success_seconds=_float_from_env(os.getenv("ENTRY_SUCCESS_SECONDS"), 3.0),
        live=live,
        watcher=watcher,
    )


@lru_cache(maxsize=1)
def load_config(dotenv_path: Optional[str] = None) -> ClientSettings:
    if dotenv_path:
        load_dotenv(dotenv_path)
    else:
        default_path = pathlib.Path(".env")
        if default_path.exists():
            load_dotenv(default_path)
    return load_from_environment()
