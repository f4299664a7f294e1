from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Dict, Optional, Sequence

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.contract import Contract
from web3.exceptions import ContractLogicError

from .exceptions import WriteError, WriteErrorKind

_CUSTOM_ERRORS = {
    Web3.to_hex(Web3.keccak(text=f"{name}()")[:4]): name.lower()
    for name in (
        "Raffle__EntryWindowIsClosed",
        "Raffle__InvalidEntranceFee",
        "Raffle__DrawingInProgress",
        "Raffle__RaffleIsNotDrawing",
    )
}

_CLASSIFIERS = (
    (("user rejected", "user denied"), WriteErrorKind.USER_REJECTED, "Transaction rejected"),
    (("insufficient funds",), WriteErrorKind.INSUFFICIENT_FUNDS, "Insufficient funds"),
    (
        ("raffle__entrywindowisclosed", "entry window closed"),
        WriteErrorKind.ENTRY_WINDOW_CLOSED,
        "Entry window closed",
    ),
    (
        ("raffle__invalidentrancefee", "entrance fee"),
        WriteErrorKind.INVALID_ENTRANCE_FEE,
        "Invalid entrance fee",
    ),
    (("raffle__drawinginprogress",), WriteErrorKind.DRAWING_IN_PROGRESS, "Drawing in progress"),
    (
        ("raffle__raffleisnotdrawing",),
        WriteErrorKind.NOT_DRAWING,
        "Raffle not in drawing state",
    ),
)

GENERIC_FAILURE_MESSAGE = "Transaction failed. Please try again."


def _error_text(exc: BaseException) -> str:
    text = str(exc).lower()
    data = getattr(exc, "data", None)
    if isinstance(data, str):
        text = f"{text} {data.lower()}"
    for selector, name in _CUSTOM_ERRORS.items():
        if selector in text:
            text = f"{text} {name}"
    return text


def classify_write_error(
    exc: BaseException, stage: Optional[str] = None, tx_hash: Optional[str] = None
) -> WriteError:
    """Map a wallet/RPC/revert failure onto a user-facing WriteError."""

    if isinstance(exc, WriteError):
        return exc
    text = _error_text(exc)
    for needles, kind, message in _CLASSIFIERS:
        if any(needle in text for needle in needles):
            return WriteError(message, kind=kind, stage=stage, tx_hash=tx_hash, details={"error": str(exc)})
    return WriteError(
        GENERIC_FAILURE_MESSAGE,
        kind=WriteErrorKind.FAILED,
        stage=stage,
        tx_hash=tx_hash,
        details={"error": str(exc)},
    )


class TransactionClient:
    """Submits one contract write at a time and tracks its pending/success/error state.

    ``is_pending`` is true from submission until the receipt arrives or either
    stage fails. A new ``write`` clears the hash and error left by the previous
    attempt; results of a superseded attempt are discarded.
    """

    def __init__(
        self,
        web3: Web3,
        contract: Contract,
        private_key: Optional[str] = None,
        chain_id: Optional[int] = None,
        receipt_timeout: int = 180,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._web3 = web3
        self._contract = contract
        self._account: Optional[LocalAccount] = Account.from_key(private_key) if private_key else None
        self._chain_id = chain_id
        self._receipt_timeout = receipt_timeout
        self._logger = logger or logging.getLogger("raffle.tx")
        self._attempt = 0
        self.is_pending = False
        self.is_success = False
        self.tx_hash: Optional[str] = None
        self.error: Optional[WriteError] = None

    @property
    def address(self) -> Optional[str]:
        return self._account.address if self._account else None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    async def write(
        self,
        function_name: str,
        value: Optional[int] = None,
        args: Sequence[Any] = (),
    ) -> Optional[str]:
        self._attempt += 1
        attempt = self._attempt
        self.error = None
        self.tx_hash = None
        self.is_success = False
        self.is_pending = True

        try:
            tx_hash = await asyncio.to_thread(self._submit_sync, function_name, value, tuple(args))
        except Exception as exc:
            self._fail(attempt, exc, stage="submission")
            return None
        if attempt != self._attempt:
            return tx_hash
        self.tx_hash = tx_hash
        self._logger.info("%s broadcast: %s", function_name, tx_hash)

        try:
            await asyncio.to_thread(self._wait_sync, tx_hash)
        except Exception as exc:
            self._fail(attempt, exc, stage="confirmation", tx_hash=tx_hash)
            return None
        if attempt != self._attempt:
            return tx_hash
        self.is_success = True
        self.is_pending = False
        self._logger.info("%s confirmed: %s", function_name, tx_hash)
        return tx_hash

    async def enter_raffle(self, entrance_fee_wei: int) -> Optional[str]:
        return await self.write("enterRaffle", value=int(entrance_fee_wei))

    async def claim_prize(self) -> Optional[str]:
        return await self.write("claimPrize")

    def _fail(self, attempt: int, exc: Exception, stage: str, tx_hash: Optional[str] = None) -> None:
        if attempt != self._attempt:
            return
        error = classify_write_error(exc, stage=stage, tx_hash=tx_hash)
        self._logger.warning("Write failed at %s (%s): %s", stage, error.kind.value, exc)
        self.error = error
        self.is_pending = False

    # ------------------------------------------------------------------
    # Blocking helpers, run in a worker thread
    # ------------------------------------------------------------------
    def _ensure_account(self) -> LocalAccount:
        if self._account is None:
            raise WriteError(
                "No signer configured; set PLAYER_PRIVATE_KEY",
                kind=WriteErrorKind.FAILED,
                stage="submission",
            )
        return self._account

    def _submit_sync(self, function_name: str, value: Optional[int], args: tuple) -> str:
        account = self._ensure_account()
        fn = getattr(self._contract.functions, function_name)(*args)
        tx_params: Dict[str, Any] = {"from": account.address}
        if value is not None:
            tx_params["value"] = int(value)

        try:
            gas_estimate = fn.estimate_gas(tx_params)
        except ContractLogicError:
            raise
        except Exception:
            gas_estimate = 350000

        gas_limit = max(int(math.ceil(gas_estimate * 1.2)), 250000)
        nonce = self._web3.eth.get_transaction_count(account.address)

        tx = fn.build_transaction(
            {
                **tx_params,
                "nonce": nonce,
                "gas": gas_limit,
                "gasPrice": self._web3.eth.gas_price,
            }
        )
        if self._chain_id is not None:
            tx["chainId"] = self._chain_id

        signed = account.sign_transaction(tx)
        tx_hash = self._web3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    def _wait_sync(self, tx_hash: str) -> None:
        receipt = self._web3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self._receipt_timeout, poll_latency=2
        )
        if receipt["status"] != 1:
            raise RuntimeError(f"Transaction reverted: {tx_hash}")


class DismissableError:
    """User-facing message for a client's current WriteError, hideable until the next error."""

    def __init__(self, client: TransactionClient) -> None:
        self._client = client
        self._dismissed: Optional[WriteError] = None

    @property
    def message(self) -> Optional[str]:
        error = self._client.error
        if error is None or error is self._dismissed:
            return None
        return error.message

    @property
    def is_dismissed(self) -> bool:
        error = self._client.error
        return error is not None and error is self._dismissed

    def dismiss(self) -> None:
        self._dismissed = self._client.error

    def reset(self) -> None:
        self._dismissed = None
