import asyncio
import threading
import unittest
from unittest import mock

from web3 import Web3
from web3.exceptions import ContractLogicError

from dapp.exceptions import WriteError, WriteErrorKind
from dapp.transactions import (
    GENERIC_FAILURE_MESSAGE,
    DismissableError,
    TransactionClient,
    classify_write_error,
)

PLAYER = Web3.to_checksum_address("0x" + "ab" * 20)
FEE = 10000000000000000
TX_HASH = b"\x12" * 32


def make_client(receipt_status: int = 1):
    web3 = mock.MagicMock()
    web3.eth.get_transaction_count.return_value = 7
    web3.eth.gas_price = 1_000_000_000
    web3.eth.send_raw_transaction.return_value = TX_HASH
    web3.eth.wait_for_transaction_receipt.return_value = {"status": receipt_status}

    fn = mock.MagicMock()
    fn.estimate_gas.return_value = 100_000
    fn.build_transaction.side_effect = lambda tx: dict(tx)
    contract = mock.MagicMock()
    contract.functions.enterRaffle.return_value = fn
    contract.functions.claimPrize.return_value = fn

    client = TransactionClient(web3, contract, chain_id=31337)
    account = mock.MagicMock()
    account.address = PLAYER
    account.sign_transaction.return_value = mock.Mock(raw_transaction=b"signed")
    client._account = account
    return client, web3, fn, account


class TransactionClientTests(unittest.TestCase):
    def test_enter_raffle_sends_entrance_fee(self) -> None:
        client, web3, fn, account = make_client()

        tx_hash = asyncio.run(client.enter_raffle(FEE))

        self.assertEqual(tx_hash, Web3.to_hex(TX_HASH))
        self.assertTrue(client.is_success)
        self.assertFalse(client.is_pending)
        self.assertIsNone(client.error)
        built = fn.build_transaction.call_args[0][0]
        self.assertEqual(built["value"], FEE)
        self.assertEqual(built["nonce"], 7)
        self.assertEqual(built["gas"], 250_000)
        signed_tx = account.sign_transaction.call_args[0][0]
        self.assertEqual(signed_tx["chainId"], 31337)
        web3.eth.send_raw_transaction.assert_called_once_with(b"signed")

    def test_gas_limit_pads_large_estimates(self) -> None:
        client, _, fn, _ = make_client()
        fn.estimate_gas.return_value = 500_000

        asyncio.run(client.claim_prize())

        built = fn.build_transaction.call_args[0][0]
        self.assertEqual(built["gas"], 600_000)
        self.assertNotIn("value", built)

    def test_user_rejection_is_classified(self) -> None:
        client, _, _, account = make_client()
        account.sign_transaction.side_effect = RuntimeError("User rejected the request.")

        tx_hash = asyncio.run(client.enter_raffle(FEE))

        self.assertIsNone(tx_hash)
        self.assertFalse(client.is_pending)
        self.assertFalse(client.is_success)
        self.assertEqual(client.error.kind, WriteErrorKind.USER_REJECTED)
        self.assertEqual(client.error.stage, "submission")
        self.assertEqual(client.error.message, "Transaction rejected")

    def test_revert_during_estimation_is_surfaced(self) -> None:
        client, web3, fn, _ = make_client()
        fn.estimate_gas.side_effect = ContractLogicError("execution reverted: Raffle__EntryWindowIsClosed")

        asyncio.run(client.enter_raffle(FEE))

        self.assertEqual(client.error.kind, WriteErrorKind.ENTRY_WINDOW_CLOSED)
        web3.eth.send_raw_transaction.assert_not_called()

    def test_reverted_receipt_fails_confirmation(self) -> None:
        client, _, _, _ = make_client(receipt_status=0)

        tx_hash = asyncio.run(client.enter_raffle(FEE))

        self.assertIsNone(tx_hash)
        self.assertEqual(client.tx_hash, Web3.to_hex(TX_HASH))
        self.assertEqual(client.error.stage, "confirmation")
        self.assertEqual(client.error.message, GENERIC_FAILURE_MESSAGE)
        self.assertFalse(client.is_pending)

    def test_missing_signer(self) -> None:
        client, _, _, _ = make_client()
        client._account = None

        asyncio.run(client.claim_prize())

        self.assertEqual(client.error.kind, WriteErrorKind.FAILED)
        self.assertIn("PLAYER_PRIVATE_KEY", client.error.message)

    def test_new_write_clears_previous_error(self) -> None:
        client, _, _, account = make_client()
        account.sign_transaction.side_effect = [RuntimeError("insufficient funds for gas"), mock.Mock(raw_transaction=b"ok")]

        asyncio.run(client.enter_raffle(FEE))
        self.assertEqual(client.error.kind, WriteErrorKind.INSUFFICIENT_FUNDS)

        asyncio.run(client.enter_raffle(FEE))
        self.assertIsNone(client.error)
        self.assertTrue(client.is_success)


def wait_for_broadcast(client, timeout: float = 2.0):
    async def poll():
        for _ in range(int(timeout / 0.01)):
            if client.tx_hash is not None:
                return
            await asyncio.sleep(0.01)
        raise AssertionError("first write was never broadcast")

    return poll()


class OverlappingWriteTests(unittest.TestCase):
    def test_failed_resubmission_supersedes_pending_write(self) -> None:
        client, web3, _, account = make_client()
        release = threading.Event()

        def blocked_receipt(*_args, **_kwargs):
            release.wait(5)
            return {"status": 1}

        web3.eth.wait_for_transaction_receipt.side_effect = blocked_receipt
        account.sign_transaction.side_effect = [
            mock.Mock(raw_transaction=b"first"),
            RuntimeError("User rejected the request."),
        ]

        async def scenario():
            first = asyncio.create_task(client.enter_raffle(FEE))
            await wait_for_broadcast(client)
            second = await client.enter_raffle(FEE)
            during = (client.tx_hash, client.error.kind, client.is_pending, client.is_success)
            release.set()
            return await first, second, during

        first, second, during = asyncio.run(scenario())

        self.assertEqual(first, Web3.to_hex(TX_HASH))
        self.assertIsNone(second)
        self.assertEqual(during, (None, WriteErrorKind.USER_REJECTED, False, False))
        self.assertIsNone(client.tx_hash)
        self.assertEqual(client.error.kind, WriteErrorKind.USER_REJECTED)
        self.assertFalse(client.is_pending)
        self.assertFalse(client.is_success)

    def test_late_failure_of_superseded_write_is_ignored(self) -> None:
        client, web3, _, _ = make_client()
        release = threading.Event()
        calls = []

        def receipt(*_args, **_kwargs):
            calls.append(1)
            if len(calls) == 1:
                release.wait(5)
                raise TimeoutError("receipt not found")
            return {"status": 1}

        web3.eth.wait_for_transaction_receipt.side_effect = receipt

        async def scenario():
            first = asyncio.create_task(client.claim_prize())
            await wait_for_broadcast(client)
            second = await client.claim_prize()
            release.set()
            return await first, second

        first, second = asyncio.run(scenario())

        self.assertIsNone(first)
        self.assertEqual(second, Web3.to_hex(TX_HASH))
        self.assertEqual(client.tx_hash, Web3.to_hex(TX_HASH))
        self.assertIsNone(client.error)
        self.assertTrue(client.is_success)
        self.assertFalse(client.is_pending)


class ClassifyWriteErrorTests(unittest.TestCase):
    def test_custom_error_selector_is_recognised(self) -> None:
        selector = Web3.to_hex(Web3.keccak(text="Raffle__InvalidEntranceFee()")[:4])
        error = classify_write_error(RuntimeError(f"execution reverted, data={selector}"))

        self.assertEqual(error.kind, WriteErrorKind.INVALID_ENTRANCE_FEE)

    def test_unknown_failure_is_generic(self) -> None:
        error = classify_write_error(RuntimeError("nonce too low"), stage="submission")

        self.assertEqual(error.kind, WriteErrorKind.FAILED)
        self.assertEqual(error.message, GENERIC_FAILURE_MESSAGE)
        self.assertEqual(error.details["error"], "nonce too low")

    def test_write_error_passes_through(self) -> None:
        original = WriteError("Drawing in progress", kind=WriteErrorKind.DRAWING_IN_PROGRESS)

        self.assertIs(classify_write_error(original), original)


class DismissableErrorTests(unittest.TestCase):
    def test_dismiss_hides_until_next_error(self) -> None:
        client, _, _, account = make_client()
        account.sign_transaction.side_effect = RuntimeError("user denied transaction signature")
        banner = DismissableError(client)

        asyncio.run(client.enter_raffle(FEE))
        self.assertEqual(banner.message, "Transaction rejected")

        banner.dismiss()
        self.assertIsNone(banner.message)
        self.assertTrue(banner.is_dismissed)

        asyncio.run(client.enter_raffle(FEE))
        self.assertEqual(banner.message, "Transaction rejected")
        self.assertFalse(banner.is_dismissed)


if __name__ == "__main__":
    unittest.main()
