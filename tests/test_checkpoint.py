import json
import os
import tempfile
import unittest
from pathlib import Path

from rotator.accounts import AccountFactory, admin_from_seed
from rotator.checkpoint import SessionCheckpoint, list_sessions
from rotator.session import Session

from fakes import ADMIN_SEED, TOKEN, CorruptingMedium


class CheckpointTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)
        self.admin = admin_from_seed(ADMIN_SEED)
        self.factory = AccountFactory()
        self.session = Session(admin=self.admin, token=TOKEN, label="test run", workers=self.factory.generate(3))

    def tearDown(self):
        self._tmp.cleanup()

    async def saved(self, **kwargs) -> SessionCheckpoint:
        cp = SessionCheckpoint.for_session(self.session, self.dir, delay=0, **kwargs)
        self.assertTrue(await cp.save(self.session))
        return cp


class TestSave(CheckpointTestCase):
    async def test_save_then_load(self):
        cp = await self.saved()
        loaded = cp.load()
        self.assertEqual(loaded.admin.address, self.admin.address)
        self.assertEqual([w.address for w in loaded.workers], [w.address for w in self.session.workers])
        self.assertEqual(loaded.token, TOKEN)
        self.assertFalse(cp.path.with_name(cp.path.name + ".tmp").exists())

    async def test_file_layout(self):
        cp = await self.saved()
        raw = json.loads(cp.path.read_text())
        self.assertEqual(set(raw), {"admin", "wallets", "token", "pool", "label", "timestamp"})
        self.assertEqual(raw["admin"]["number"], 0)
        self.assertEqual([w["number"] for w in raw["wallets"]], [1, 2, 3])
        self.assertEqual(set(raw["wallets"][0]), {"number", "address", "seed", "generation_timestamp"})

    async def test_corrupted_first_write_is_retried(self):
        medium = CorruptingMedium(bad_writes=1)
        cp = SessionCheckpoint.for_session(self.session, self.dir, medium=medium, delay=0)
        self.assertTrue(await cp.save(self.session))
        self.assertEqual(medium.writes, 2)
        self.assertEqual(len(cp.load().workers), 3)

    async def test_gives_up_after_retries(self):
        medium = CorruptingMedium(bad_writes=100)
        cp = SessionCheckpoint.for_session(self.session, self.dir, medium=medium, retries=4, delay=0)
        self.assertFalse(await cp.save(self.session))
        self.assertEqual(medium.writes, 4)
        self.assertFalse(cp.path.exists())


class TestAppend(CheckpointTestCase):
    async def test_append_nothing_leaves_file_untouched(self):
        cp = await self.saved()
        before = cp.path.read_bytes()
        self.assertTrue(await cp.append([]))
        self.assertEqual(cp.path.read_bytes(), before)

    async def test_append_makes_new_set_current(self):
        cp = await self.saved()
        fresh = self.factory.generate(3)
        self.assertTrue(await cp.append(fresh))
        loaded = cp.load()
        self.assertEqual(len(loaded.workers), 6)
        self.assertEqual([w.address for w in loaded.current_workers()], [w.address for w in fresh])
        self.assertEqual([w.number for w in fresh], [4, 5, 6])

    async def test_duplicates_are_refused(self):
        cp = await self.saved()
        before = cp.path.read_bytes()
        self.assertFalse(await cp.append(self.session.workers[:1]))
        self.assertEqual(cp.path.read_bytes(), before)

    async def test_missing_file(self):
        cp = SessionCheckpoint(self.dir / "nope_session.json", delay=0)
        self.assertFalse(await cp.append(self.factory.generate(1)))

    async def test_append_through_bad_medium(self):
        cp = await self.saved()
        bad = SessionCheckpoint(cp.path, medium=CorruptingMedium(bad_writes=100), retries=3, delay=0)
        self.assertFalse(await bad.append(self.factory.generate(2)))
        # The target was only ever replaced by verified content
        self.assertEqual(len(cp.load().workers), 3)

    async def test_replace_admin(self):
        cp = await self.saved()
        other = admin_from_seed(self.session.workers[0].seed)
        self.assertTrue(await cp.replace_admin(other))
        self.assertEqual(cp.load().admin.address, other.address)


class TestListSessions(CheckpointTestCase):
    async def test_newest_first(self):
        older = await self.saved()
        os.utime(older.path, (1_000_000, 1_000_000))
        newer_session = Session(admin=self.admin, token=TOKEN, label="second")
        newer = SessionCheckpoint.for_session(newer_session, self.dir, delay=0)
        self.assertTrue(await newer.save(newer_session))
        (self.dir / "notes.txt").write_text("ignored")

        self.assertEqual(list_sessions(self.dir), [newer.path, older.path])

    def test_missing_directory(self):
        self.assertEqual(list_sessions(self.dir / "absent"), [])


if __name__ == "__main__":
    unittest.main()
