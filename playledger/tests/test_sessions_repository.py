import unittest
from datetime import datetime, timedelta, timezone

import aiosqlite

from playledger.db.repositories.sessions import SqlitePlaySessionRepository
from playledger.db.sqlite_migrations import SCHEMA_VERSION, run_migrations
from playledger.errors import PersistenceFailure
from playledger.models import INTERRUPTED_DURATION

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class PlaySessionRepositoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.repo = SqlitePlaySessionRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_open_find_and_close(self) -> None:
        created = await self.repo.create_open_session(440, 1, T0)

        found = await self.repo.find_open_session(440, 1)
        self.assertEqual(found.id, created.id)
        self.assertEqual(found.startedAt, T0)
        self.assertTrue(found.isOpen)

        await self.repo.close_session(created.id, T0 + timedelta(seconds=90), 90)

        self.assertIsNone(await self.repo.find_open_session(440, 1))
        self.assertEqual(await self.repo.list_open_sessions(), [])
        closed = (await self.repo.list_sessions(user_id=1))[0]
        self.assertEqual(closed.durationSeconds, 90)
        self.assertEqual(closed.endedAt, T0 + timedelta(seconds=90))

    async def test_second_open_session_for_pair_is_rejected(self) -> None:
        await self.repo.create_open_session(440, 1, T0)
        with self.assertRaises(PersistenceFailure):
            await self.repo.create_open_session(440, 1, T0 + timedelta(seconds=5))

        # Other pairs are unaffected and the connection stays usable.
        await self.repo.create_open_session(440, 2, T0)
        self.assertEqual(len(await self.repo.list_open_sessions()), 2)

    async def test_closed_sessions_do_not_block_new_ones(self) -> None:
        first = await self.repo.create_open_session(730, 1, T0)
        await self.repo.close_session(first.id, T0 + timedelta(seconds=1), 1)
        second = await self.repo.create_open_session(730, 1, T0 + timedelta(seconds=2))
        self.assertNotEqual(first.id, second.id)

    async def test_history_filters(self) -> None:
        a = await self.repo.create_open_session(440, 1, T0)
        await self.repo.close_session(a.id, T0 + timedelta(minutes=10), 600)
        b = await self.repo.create_open_session(730, 1, T0 + timedelta(hours=1))
        await self.repo.close_session(b.id, T0 + timedelta(hours=2), INTERRUPTED_DURATION)
        await self.repo.create_open_session(440, 2, T0 + timedelta(hours=3))

        everything = await self.repo.list_sessions()
        self.assertEqual([s.appId for s in everything], [440, 730, 440])

        user_one = await self.repo.list_sessions(user_id=1, include_interrupted=False)
        self.assertEqual([s.id for s in user_one], [a.id])

        window = await self.repo.list_sessions(since=T0 + timedelta(minutes=30), until=T0 + timedelta(hours=2))
        self.assertEqual([s.id for s in window], [b.id])

        by_app = await self.repo.list_sessions(app_id=440, limit=1)
        self.assertEqual(len(by_app), 1)
        self.assertEqual(by_app[0].userId, 2)

    async def test_playtime_totals_skip_open_and_interrupted(self) -> None:
        for offset, duration in ((0, 100), (1000, 50)):
            s = await self.repo.create_open_session(440, 1, T0 + timedelta(seconds=offset))
            await self.repo.close_session(s.id, T0 + timedelta(seconds=offset + duration), duration)
        crashed = await self.repo.create_open_session(440, 1, T0 + timedelta(seconds=5000))
        await self.repo.close_session(crashed.id, T0 + timedelta(seconds=9000), INTERRUPTED_DURATION)
        await self.repo.create_open_session(440, 1, T0 + timedelta(seconds=9500))

        totals = await self.repo.get_playtime_totals(1)

        self.assertEqual(len(totals), 1)
        self.assertEqual(totals[0].sessionCount, 2)
        self.assertEqual(totals[0].totalSeconds, 150)
        self.assertEqual(totals[0].lastPlayedAt, T0 + timedelta(seconds=1050))
        self.assertEqual(await self.repo.get_playtime_totals(99), [])

    async def test_migrations_are_idempotent(self) -> None:
        await run_migrations(self.db)
        async with self.db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
        self.assertEqual(row[0], SCHEMA_VERSION)

    async def test_fresh_store_is_version_one_with_open_session_index(self) -> None:
        async with self.db.execute("SELECT version FROM schema_version") as cur:
            versions = [row[0] for row in await cur.fetchall()]
        self.assertEqual(versions, [1])

        async with self.db.execute(
            "SELECT sql FROM sqlite_master WHERE type = 'index' AND name = 'idx_play_sessions_open'"
        ) as cur:
            row = await cur.fetchone()
        self.assertIn("WHERE ended_at IS NULL", row[0])

    async def test_missing_schema_raises_persistence_failure(self) -> None:
        db = await aiosqlite.connect(":memory:")
        db.row_factory = aiosqlite.Row
        repo = SqlitePlaySessionRepository(db)
        with self.assertRaises(PersistenceFailure):
            await repo.list_open_sessions()
        await db.close()


if __name__ == "__main__":
    unittest.main()
