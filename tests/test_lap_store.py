import tempfile
import unittest
from decimal import Decimal
from pathlib import Path

from rotator.constants import LapStatus
from rotator.lap_store import InMemoryLapStore, SQLiteLapStore, TradingLap


class LapStoreContract:
    """Shared checks; mixed into one test case per store."""

    def make_store(self):
        raise NotImplementedError

    async def test_record_then_update(self):
        store = self.make_store()
        lap = TradingLap(number=1, session="a_session.json", workers=3)
        await store.record(lap)
        got = await store.get("a_session.json", 1)
        self.assertEqual(got.status, LapStatus.RUNNING)
        self.assertIsNone(got.ended_at)

        lap.native_collected = Decimal("0.299964")
        lap.token_collected = Decimal("100.000001")
        lap.finish(LapStatus.COMPLETED)
        await store.record(lap)
        got = await store.get("a_session.json", 1)
        self.assertEqual(got.status, LapStatus.COMPLETED)
        self.assertEqual(got.native_collected, Decimal("0.299964"))
        self.assertEqual(got.token_collected, Decimal("100.000001"))
        self.assertIsNotNone(got.ended_at)

    async def test_all_filters_by_session(self):
        store = self.make_store()
        for session, number in [("b", 2), ("a", 1), ("b", 1)]:
            await store.record(TradingLap(number=number, session=session, workers=1))
        self.assertEqual([(l.session, l.number) for l in await store.all()], [("a", 1), ("b", 1), ("b", 2)])
        self.assertEqual([l.number for l in await store.all(session="b")], [1, 2])
        self.assertIsNone(await store.get("c", 1))

    async def test_failure_reason_kept(self):
        store = self.make_store()
        lap = TradingLap(number=7, session="s", workers=2)
        lap.finish(LapStatus.FAILED, "nothing collected")
        await store.record(lap)
        got = await store.get("s", 7)
        self.assertEqual(got.reason, "nothing collected")
        self.assertEqual(got.to_dict()["status"], "failed")


class TestInMemoryLapStore(LapStoreContract, unittest.IsolatedAsyncioTestCase):
    def make_store(self):
        return InMemoryLapStore()


class TestSQLiteLapStore(LapStoreContract, unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.db = Path(self._tmp.name) / "laps.db"

    def tearDown(self):
        self._tmp.cleanup()

    def make_store(self):
        return SQLiteLapStore(self.db)

    async def test_survives_reopen(self):
        await SQLiteLapStore(self.db).record(TradingLap(number=3, session="s", workers=4))
        got = await SQLiteLapStore(self.db).get("s", 3)
        self.assertEqual(got.workers, 4)


if __name__ == "__main__":
    unittest.main()
