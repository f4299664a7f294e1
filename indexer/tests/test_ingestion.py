import asyncio
import importlib
import json
import os
import unittest
from unittest import mock

from web3 import Web3

import indexer.config as config_module
from dapp.abi import EVENT_SIGNATURES

WINNER = "0x" + "cd" * 20
OTHER_WINNER = "0x" + "ef" * 20
PLAYER = "0x" + "aa" * 20
ZERO = "0x" + "00" * 20


def tx(n: int) -> str:
    return "0x" + format(n, "064x")


class FakeSource:
    def __init__(self, head: int, logs=None) -> None:
        self.head = head
        self.logs = logs or []
        self.ranges = []

    async def get_safe_head(self) -> int:
        return self.head

    async def fetch_logs(self, from_block: int, to_block: int):
        self.ranges.append((from_block, to_block))
        return [log for log in self.logs if from_block <= log.block_number <= to_block]


class IngestionTests(unittest.TestCase):
    def setUp(self) -> None:
        os.environ["RPC_URL"] = "http://localhost:8545"
        os.environ["RAFFLE_CONTRACT_ADDRESS"] = "0x" + "11" * 20
        os.environ["DATABASE_URL"] = "sqlite:///:memory:"
        os.environ["START_BLOCK"] = "5"
        os.environ["BATCH_SIZE"] = "10"
        config_module.load_settings.cache_clear()

        import indexer.db as db_module
        import indexer.models as models_module
        import indexer.services.live as live_module
        import indexer.services.rounds as rounds_module
        import indexer.worker as worker_module

        importlib.reload(config_module)
        self.db = importlib.reload(db_module)
        self.models = importlib.reload(models_module)
        self.rounds = importlib.reload(rounds_module)
        self.live = importlib.reload(live_module)
        self.worker = importlib.reload(worker_module)

        self.models.Base.metadata.create_all(self.db.engine)
        self.repo = self.rounds.RoundRepository()
        self.settings = config_module.load_settings()

    def tearDown(self) -> None:
        os.environ.pop("START_BLOCK", None)
        os.environ.pop("BATCH_SIZE", None)
        config_module.load_settings.cache_clear()

    def _rounds(self):
        return self.repo.query(self.rounds.QueryRequest(table="round", order_by="roundNumber"))

    def _players(self, round_number: int):
        return self.repo.query(
            self.rounds.QueryRequest(table="roundPlayer", where={"roundNumber": str(round_number)})
        )

    def test_repeated_draws_for_a_round_keep_last_applied(self) -> None:
        draw = self.rounds.DrawCompletedLog
        self.repo.apply_logs([draw(7, WINNER, 10**16, 1_700_000_000, tx(1), 0, 10)])
        self.repo.apply_logs([draw(7, OTHER_WINNER, 2 * 10**16, 1_700_000_500, tx(2), 0, 11)])
        self.repo.apply_logs([draw(7, WINNER, 10**16, 1_700_000_000, tx(1), 0, 10)])

        rows = self._rounds()

        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["winner"], Web3.to_checksum_address(OTHER_WINNER))
        self.assertEqual(rows[0]["prizePool"], str(2 * 10**16))
        self.assertEqual(rows[0]["completedAt"], "1700000500")

    def test_zero_winner_is_stored_as_null(self) -> None:
        self.repo.apply_logs([self.rounds.DrawCompletedLog(8, ZERO, 0, 1_700_000_000, tx(3), 0, 12)])

        self.assertIsNone(self._rounds()[0]["winner"])

    def test_entry_count_matches_distinct_logs(self) -> None:
        entry = self.rounds.EntryRecordedLog
        logs = [
            entry(2, PLAYER, tx(10), 0, 20),
            entry(2, PLAYER, tx(10), 1, 20),
            entry(2, PLAYER, tx(11), 0, 21),
        ]
        applied = self.repo.apply_logs(logs)
        replayed = self.repo.apply_logs([logs[0], logs[2]])

        rows = self._players(2)

        self.assertEqual(applied, 3)
        self.assertEqual(replayed, 0)
        self.assertEqual(rows[0]["entryCount"], "3")

    def test_version_moves_only_when_something_new_is_applied(self) -> None:
        entry = self.rounds.EntryRecordedLog(1, PLAYER, tx(20), 0, 30)
        self.repo.ensure_state()
        before = self.repo.get_version()

        self.repo.apply_logs([entry], last_block=30)
        after_first = self.repo.get_version()
        self.repo.apply_logs([entry], last_block=31)

        self.assertEqual(after_first, before + 1)
        self.assertEqual(self.repo.get_version(), after_first)
        self.assertEqual(self.repo.get_last_block(), 31)

    def test_worker_indexes_in_batches_from_start_block(self) -> None:
        logs = [
            self.rounds.EntryRecordedLog(1, PLAYER, tx(30), 0, 6),
            self.rounds.EntryRecordedLog(1, PLAYER, tx(31), 0, 16),
        ]
        source = FakeSource(head=20, logs=logs)
        worker = self.worker.IngestionWorker(self.settings, source, self.repo)

        first = asyncio.run(worker.run_once())
        second = asyncio.run(worker.run_once())
        third = asyncio.run(worker.run_once())

        self.assertEqual(source.ranges, [(5, 14), (15, 20)])
        self.assertEqual((first.fetched, first.applied), (1, 1))
        self.assertEqual((second.fetched, second.applied), (1, 1))
        self.assertIsNone(third)
        self.assertEqual(self.repo.get_last_block(), 20)
        self.assertEqual(self._players(1)[0]["entryCount"], "2")

    def test_snapshot_stream_pushes_on_version_change(self) -> None:
        query = self.rounds.QueryRequest(table="roundPlayer", where={"roundNumber": "3"})
        ticks = []

        def fake_sleep(seconds):
            ticks.append(seconds)
            if len(ticks) == 2:
                self.repo.apply_logs([self.rounds.EntryRecordedLog(3, PLAYER, tx(40), 0, 50)])

        frames = list(
            self.live.snapshot_stream(
                self.repo, query, poll_seconds=1.0, keepalive_seconds=1.0, max_snapshots=2, sleep=fake_sleep
            )
        )

        self.assertEqual(len(frames), 3)
        self.assertEqual(json.loads(frames[0].split("data: ")[1]), [])
        self.assertEqual(frames[1], ": keepalive\n\n")
        pushed = json.loads(frames[2].split("data: ")[1])
        self.assertEqual(pushed[0]["entryCount"], "1")

    def test_snapshot_stream_reports_bad_filter_as_error_frame(self) -> None:
        query = self.rounds.QueryRequest(table="roundPlayer", where={"player": "0x1234"})

        with self.assertLogs("raffle.indexer.live", level="ERROR"):
            frames = list(self.live.snapshot_stream(self.repo, query, max_snapshots=1))

        self.assertEqual(len(frames), 1)
        self.assertTrue(frames[0].startswith("event: error\n"))


class ChainTailerTests(unittest.TestCase):
    def test_decodes_logs_with_block_timestamps(self) -> None:
        from indexer.services.chain import RaffleChainTailer

        entry_topic = Web3.to_hex(Web3.keccak(text=EVENT_SIGNATURES["EntryRecorded"]))
        draw_topic = Web3.to_hex(Web3.keccak(text=EVENT_SIGNATURES["DrawCompleted"]))
        web3 = mock.MagicMock()
        web3.eth.block_number = 110
        web3.eth.get_block.return_value = {"timestamp": 1_700_000_123}
        web3.eth.get_logs.return_value = [
            {
                "topics": [draw_topic],
                "blockNumber": 105,
                "logIndex": 2,
                "transactionHash": bytes.fromhex("02" * 32),
                "args": {"roundNumber": 9, "winner": WINNER, "prize": 10**16},
            },
            {
                "topics": [entry_topic],
                "blockNumber": 104,
                "logIndex": 0,
                "transactionHash": bytes.fromhex("01" * 32),
                "args": {"roundNumber": 9, "player": PLAYER},
            },
        ]
        contract = mock.MagicMock()
        contract.address = "0x" + "11" * 20
        for name in ("EntryRecorded", "DrawCompleted"):
            getattr(contract.events, name).return_value.process_log.side_effect = lambda raw: {"args": raw["args"]}

        tailer = RaffleChainTailer(web3, contract, confirmations=2)

        head = asyncio.run(tailer.get_safe_head())
        logs = asyncio.run(tailer.fetch_logs(100, head))

        self.assertEqual(head, 108)
        self.assertEqual([type(log).__name__ for log in logs], ["EntryRecordedLog", "DrawCompletedLog"])
        self.assertEqual(logs[0].tx_hash, "0x" + "01" * 32)
        self.assertEqual(logs[1].completed_at, 1_700_000_123)
        self.assertEqual(logs[1].prize, 10**16)
        web3.eth.get_block.assert_called_once_with(105)

    def test_logs_without_position_do_not_fail_the_batch(self) -> None:
        from indexer.services.chain import RaffleChainTailer

        entry_topic = Web3.to_hex(Web3.keccak(text=EVENT_SIGNATURES["EntryRecorded"]))
        web3 = mock.MagicMock()
        web3.eth.get_logs.return_value = [
            {
                "topics": [entry_topic],
                "blockNumber": None,
                "logIndex": 0,
                "transactionHash": bytes.fromhex("03" * 32),
                "args": {"roundNumber": 9, "player": PLAYER},
            },
            {
                "topics": [entry_topic],
                "blockNumber": 104,
                "logIndex": 1,
                "transactionHash": bytes.fromhex("04" * 32),
                "args": {"roundNumber": 9, "player": PLAYER},
            },
        ]
        contract = mock.MagicMock()
        contract.address = "0x" + "11" * 20
        contract.events.EntryRecorded.return_value.process_log.side_effect = lambda raw: {"args": raw["args"]}

        tailer = RaffleChainTailer(web3, contract)

        with self.assertLogs("raffle.indexer.ingest", level="WARNING"):
            logs = asyncio.run(tailer.fetch_logs(100, 110))

        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0].log_index, 1)


if __name__ == "__main__":
    unittest.main()
