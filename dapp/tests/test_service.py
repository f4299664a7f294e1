import argparse
import asyncio
import unittest
from unittest import mock

from dapp import service


def make_args(**overrides):
    values = {"env_file": None, "enter": False, "claim": False, "status_interval": 0.01, "verbose": False}
    values.update(overrides)
    return argparse.Namespace(**values)


class RunTests(unittest.TestCase):
    def _session(self):
        session = mock.MagicMock()
        session.start = mock.AsyncMock()
        session.close = mock.AsyncMock()
        session.wrong_network = False
        return session

    def test_session_is_closed_when_start_fails(self) -> None:
        session = self._session()
        session.start.side_effect = ConnectionError("rpc down")

        with mock.patch.object(service, "load_config"), mock.patch.object(
            service.RaffleSession, "from_settings", return_value=session
        ):
            with self.assertRaises(ConnectionError):
                asyncio.run(service.run(make_args()))

        session.close.assert_awaited_once()

    def test_failed_entry_is_logged_and_session_closed(self) -> None:
        session = self._session()
        session.enter_raffle = mock.AsyncMock(return_value=None)
        session.write_error.message = "Transaction rejected"

        async def scenario():
            task = asyncio.create_task(service.run(make_args(enter=True)))
            await asyncio.sleep(0.05)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        with mock.patch.object(service, "load_config"), mock.patch.object(
            service.RaffleSession, "from_settings", return_value=session
        ), mock.patch.object(service, "describe", return_value="round=1"):
            with self.assertLogs("raffle.client", level="ERROR") as logs:
                asyncio.run(scenario())

        self.assertTrue(any("Transaction rejected" in line for line in logs.output))
        session.close.assert_awaited_once()


class MainTests(unittest.TestCase):
    def test_unexpected_crash_exits_non_zero(self) -> None:
        with mock.patch.object(service, "run", mock.AsyncMock(side_effect=RuntimeError("boom"))):
            with self.assertLogs("raffle.client", level="ERROR"):
                with self.assertRaises(SystemExit) as raised:
                    service.main([])

        self.assertEqual(raised.exception.code, 1)


if __name__ == "__main__":
    unittest.main()
