from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

from web3 import Web3
from web3.contract import Contract
from web3.middleware import ExtraDataToPOAMiddleware

from dapp.abi import EVENT_SIGNATURES, RAFFLE_ABI, load_abi
from dapp.events import has_log_position

from ..config import ChainSettings
from ..types import DrawCompletedLog, EntryRecordedLog, IndexedLog


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else "0x" + value.lower()
    return Web3.to_hex(value)


class RaffleChainTailer:
    """Reads EntryRecorded/DrawCompleted logs from the raffle contract in block ranges."""

    def __init__(
        self,
        web3: Web3,
        contract: Contract,
        confirmations: int = 0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._web3 = web3
        self._contract = contract
        self._address = Web3.to_checksum_address(contract.address)
        self._confirmations = max(confirmations, 0)
        self._logger = logger or logging.getLogger("raffle.indexer.ingest")
        self._topics: Dict[str, str] = {
            Web3.to_hex(Web3.keccak(text=signature)): name
            for name, signature in EVENT_SIGNATURES.items()
        }
        self._timestamps: Dict[int, int] = {}

    @classmethod
    def from_settings(cls, settings: ChainSettings) -> "RaffleChainTailer":
        web3 = Web3(Web3.HTTPProvider(settings.rpc_url))
        # Inject PoA middleware to support networks such as Anvil or Polygon.
        web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        abi = load_abi(settings.abi_path) if settings.abi_path else RAFFLE_ABI
        contract = web3.eth.contract(address=Web3.to_checksum_address(settings.contract_address), abi=abi)
        return cls(web3, contract, confirmations=settings.confirmations)

    @property
    def address(self) -> str:
        return self._address

    async def get_safe_head(self) -> int:
        head = await asyncio.to_thread(lambda: int(self._web3.eth.block_number))
        return max(head - self._confirmations, 0)

    async def fetch_logs(self, from_block: int, to_block: int) -> List[IndexedLog]:
        return await asyncio.to_thread(self._fetch_logs_sync, from_block, to_block)

    # ------------------------------------------------------------------
    # Blocking helpers
    # ------------------------------------------------------------------
    def _fetch_logs_sync(self, from_block: int, to_block: int) -> List[IndexedLog]:
        raw_logs = self._web3.eth.get_logs(
            {
                "fromBlock": from_block,
                "toBlock": to_block,
                "address": self._address,
                "topics": [list(self._topics.keys())],
            }
        )
        positioned = [raw for raw in raw_logs if has_log_position(raw) and raw.get("transactionHash") is not None]
        if len(positioned) != len(raw_logs):
            self._logger.warning(
                "Skipping %s log(s) without block position in %s-%s",
                len(raw_logs) - len(positioned),
                from_block,
                to_block,
            )
        ordered = sorted(positioned, key=lambda log: (int(log["blockNumber"]), int(log["logIndex"])))
        decoded: List[IndexedLog] = []
        for raw in ordered:
            log = self._decode(raw)
            if log is not None:
                decoded.append(log)
        return decoded

    def _decode(self, raw: Mapping[str, Any]) -> Optional[IndexedLog]:
        topics = raw.get("topics") or []
        if not topics:
            return None
        event_name = self._topics.get(_hex(topics[0]))
        if event_name is None:
            return None
        try:
            args = getattr(self._contract.events, event_name)().process_log(raw)["args"]
        except Exception as exc:
            self._logger.warning("Skipping undecodable %s log: %s", event_name, exc)
            return None

        tx_hash = _hex(raw["transactionHash"])
        log_index = int(raw["logIndex"])
        block_number = int(raw["blockNumber"])
        if event_name == "EntryRecorded":
            return EntryRecordedLog(
                round_number=int(args["roundNumber"]),
                player=str(args["player"]),
                tx_hash=tx_hash,
                log_index=log_index,
                block_number=block_number,
            )
        return DrawCompletedLog(
            round_number=int(args["roundNumber"]),
            winner=str(args["winner"]),
            prize=int(args["prize"]),
            completed_at=self._block_timestamp(block_number),
            tx_hash=tx_hash,
            log_index=log_index,
            block_number=block_number,
        )

    def _block_timestamp(self, block_number: int) -> int:
        cached = self._timestamps.get(block_number)
        if cached is None:
            cached = int(self._web3.eth.get_block(block_number)["timestamp"])
            self._timestamps[block_number] = cached
        return cached
