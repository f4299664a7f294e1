from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional, Sequence

from web3 import Web3
from web3.contract import Contract
from web3.exceptions import ContractLogicError
from web3.middleware import ExtraDataToPOAMiddleware

from .abi import RAFFLE_ABI, load_abi
from .config import ClientSettings
from .exceptions import ReadError


def build_web3(rpc_url: str) -> Web3:
    web3 = Web3(Web3.HTTPProvider(rpc_url))
    # Anvil/Hardhat and most PoA testnets need the extraData middleware.
    web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return web3


class ContractReadClient:
    """Point reads of the raffle contract's view functions."""

    def __init__(
        self,
        web3: Web3,
        contract: Contract,
        chain_id: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._web3 = web3
        self._contract = contract
        self._chain_id = chain_id
        self._logger = logger or logging.getLogger("raffle.contract")

    @classmethod
    def from_settings(cls, settings: ClientSettings, web3: Optional[Web3] = None) -> "ContractReadClient":
        web3 = web3 or build_web3(settings.rpc_url)
        abi: Sequence[dict[str, Any]] = load_abi(settings.abi_path) if settings.abi_path else RAFFLE_ABI
        contract = web3.eth.contract(
            address=Web3.to_checksum_address(settings.contract_address),
            abi=abi,
        )
        return cls(web3, contract, chain_id=settings.chain_id)

    @property
    def web3(self) -> Web3:
        return self._web3

    @property
    def contract(self) -> Contract:
        return self._contract

    async def read(self, function_name: str, *args: Any) -> Any:
        return await asyncio.to_thread(self._sync_read, function_name, args)

    def _sync_read(self, function_name: str, args: tuple) -> Any:
        try:
            fn = getattr(self._contract.functions, function_name)
            return fn(*args).call()
        except ContractLogicError as exc:
            raise ReadError(
                f"{function_name} reverted: {exc}",
                function_name=function_name,
                args=args,
                details={"reason": str(exc)},
            ) from exc
        except Exception as exc:
            raise ReadError(
                f"{function_name} read failed: {exc}",
                function_name=function_name,
                args=args,
            ) from exc

    def bind(self, function_name: str, *args: Any) -> "ContractRead":
        return ContractRead(self, function_name, args, logger=self._logger)

    async def check_network(self) -> bool:
        """Return True when the RPC endpoint serves the configured chain."""

        if self._chain_id is None:
            return True
        try:
            actual = await asyncio.to_thread(lambda: int(self._web3.eth.chain_id))
        except Exception as exc:
            raise ReadError(f"Unable to read chain id: {exc}", function_name="eth_chainId") from exc
        if actual != self._chain_id:
            self._logger.warning(
                "Wrong network: RPC serves chain %s, expected %s", actual, self._chain_id
            )
            return False
        return True

    async def get_entrance_fee(self) -> int:
        return int(await self.read("getEntranceFee"))

    async def get_entry_deadline(self) -> int:
        return int(await self.read("getEntryDeadline"))

    async def get_prize_pool(self) -> int:
        return int(await self.read("getPrizePool"))

    async def get_players_count(self) -> int:
        return int(await self.read("getPlayersCount"))

    async def get_entries_count(self) -> int:
        return int(await self.read("getEntriesCount"))

    async def get_round_number(self) -> int:
        return int(await self.read("getRoundNumber"))

    async def get_player_entry_count(self, address: str) -> int:
        return int(await self.read("getPlayerEntryCount", Web3.to_checksum_address(address)))

    async def get_unclaimed_prize(self, address: str) -> int:
        return int(await self.read("getUnclaimedPrize", Web3.to_checksum_address(address)))


class ContractRead:
    """A cached view call that is refreshed only when someone asks for it.

    Failures are kept on the handle as ``error`` while the last good value is
    retained, so a flaky RPC turns into an inline "error loading" instead of an
    exception. Overlapping refetches resolve in start order: a result from an
    older call never overwrites a newer one.
    """

    def __init__(
        self,
        client: ContractReadClient,
        function_name: str,
        args: tuple = (),
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._client = client
        self.function_name = function_name
        self.args = args
        self.value: Any = None
        self.error: Optional[ReadError] = None
        self.is_loading = False
        self._generation = 0
        self._listeners: List[Callable[["ContractRead"], None]] = []
        self._logger = logger or logging.getLogger("raffle.contract")

    @property
    def has_value(self) -> bool:
        return self.value is not None

    def subscribe(self, callback: Callable[["ContractRead"], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def refetch(self) -> Any:
        self._generation += 1
        generation = self._generation
        self.is_loading = True
        try:
            value = await self._client.read(self.function_name, *self.args)
        except ReadError as exc:
            if generation != self._generation:
                return self.value
            self._logger.warning("Read %s failed: %s", self.function_name, exc.message)
            self.error = exc
            self.is_loading = False
            self._notify()
            return self.value

        if generation != self._generation:
            return self.value
        self.value = value
        self.error = None
        self.is_loading = False
        self._notify()
        return value

    def _notify(self) -> None:
        for callback in list(self._listeners):
            callback(self)
