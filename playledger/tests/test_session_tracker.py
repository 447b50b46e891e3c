import asyncio
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from playledger import config
from playledger.errors import PersistenceFailure
from playledger.models import INTERRUPTED_DURATION, AggregatedApp, PlaySession, ProcessObservation
from playledger.tracker import SessionTracker

USER = 76561197960287930
TF2_EXE = "C:\\Steam\\steamapps\\common\\Team Fortress 2\\hl2.exe"
TF2_PROCESS = ProcessObservation(pid=4242, name="hl2.exe", path="c:/steam/steamapps/common/team fortress 2/hl2.exe")


class FakeGateway:
    def __init__(self):
        self.sessions: dict[int, PlaySession] = {}
        self.next_id = 1
        self.calls: list[str] = []
        self.fail_on: set[str] = set()

    def _check(self, op: str) -> None:
        self.calls.append(op)
        if op in self.fail_on:
            raise PersistenceFailure(f"{op} failed")

    def seed_open(self, app_id: int, user_id: int, started_at: datetime) -> PlaySession:
        session = PlaySession(id=self.next_id, appId=app_id, userId=user_id, startedAt=started_at)
        self.sessions[session.id] = session
        self.next_id += 1
        return session

    async def find_open_session(self, app_id, user_id):
        self._check("find")
        return next(
            (
                s for s in self.sessions.values()
                if s.appId == app_id and s.userId == user_id and s.endedAt is None
            ),
            None,
        )

    async def create_open_session(self, app_id, user_id, started_at):
        self._check("create")
        return self.seed_open(app_id, user_id, started_at)

    async def close_session(self, session_id, ended_at, duration_seconds):
        self._check("close")
        self.sessions[session_id] = self.sessions[session_id].model_copy(
            update={"endedAt": ended_at, "durationSeconds": duration_seconds}
        )

    async def list_open_sessions(self):
        self._check("list_open")
        return [s for s in self.sessions.values() if s.endedAt is None]


class SlowGateway(FakeGateway):
    """Holds every create open for a moment and records how many overlap."""

    def __init__(self):
        super().__init__()
        self.inflight = 0
        self.max_inflight = 0

    async def create_open_session(self, app_id, user_id, started_at):
        self.inflight += 1
        self.max_inflight = max(self.max_inflight, self.inflight)
        try:
            await asyncio.sleep(0.01)
            return await super().create_open_session(app_id, user_id, started_at)
        finally:
            self.inflight -= 1


class FakeProcesses:
    def __init__(self):
        self.processes: list[ProcessObservation] = []

    def snapshot(self):
        return list(self.processes)


class FakeUser:
    def __init__(self, user_id=USER):
        self.user_id = user_id

    def current_user_id(self):
        return self.user_id


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class SessionTrackerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.gateway = FakeGateway()
        self.processes = FakeProcesses()
        self.user = FakeUser()
        self.clock = FakeClock()
        self.catalog = {
            440: AggregatedApp(appId=440, name="Team Fortress 2", installed=True,
                               sizeOnDisk=12_345_678, executables=[TF2_EXE]),
        }
        self.tracker = SessionTracker(
            self.processes,
            lambda: self.catalog,
            self.user,
            self.gateway,
            poll_interval=60,
            clock=self.clock,
        )

    async def asyncTearDown(self) -> None:
        await self.tracker.stop()

    def _stored(self) -> list[PlaySession]:
        return list(self.gateway.sessions.values())

    async def test_play_session_lifecycle(self) -> None:
        started = self.clock.now
        self.processes.processes = [TF2_PROCESS]
        await self.tracker.poll_once()

        active = self.tracker.get_active_sessions()
        self.assertEqual([(s.appId, s.userId, s.startedAt) for s in active], [(440, USER, started)])

        self.clock.advance(30)
        await self.tracker.poll_once()
        self.assertEqual(self.gateway.calls.count("create"), 1)

        self.clock.advance(60.9)
        self.processes.processes = []
        await self.tracker.poll_once()

        self.assertEqual(self.tracker.get_active_sessions(), [])
        stored = self._stored()
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0].endedAt, started + timedelta(seconds=90.9))
        self.assertEqual(stored[0].durationSeconds, 90)

    async def test_start_closes_sessions_left_open(self) -> None:
        crashed = self.gateway.seed_open(730, 1, self.clock.now - timedelta(hours=2))

        await self.tracker.start()
        await self.tracker.stop()

        recovered = self.gateway.sessions[crashed.id]
        self.assertEqual(recovered.endedAt, self.clock.now)
        self.assertEqual(recovered.durationSeconds, INTERRUPTED_DURATION)
        self.assertTrue(recovered.isInterrupted)

    async def test_recovered_app_still_running_gets_a_fresh_session(self) -> None:
        crashed = self.gateway.seed_open(440, USER, self.clock.now - timedelta(hours=2))
        self.processes.processes = [TF2_PROCESS]

        await self.tracker.start()
        await self.tracker.poll_once()
        await self.tracker.stop()

        self.assertTrue(self.gateway.sessions[crashed.id].isInterrupted)
        active = self.tracker.get_active_sessions()
        self.assertEqual(len(active), 1)
        self.assertNotEqual(active[0].id, crashed.id)
        self.assertEqual(active[0].startedAt, self.clock.now)

    async def test_concurrent_polls_do_not_overlap(self) -> None:
        self.gateway = SlowGateway()
        self.tracker = SessionTracker(
            self.processes,
            lambda: self.catalog,
            self.user,
            self.gateway,
            poll_interval=60,
            clock=self.clock,
        )
        self.processes.processes = [TF2_PROCESS]

        await asyncio.gather(*(self.tracker.poll_once() for _ in range(5)))

        self.assertEqual(self.gateway.calls.count("create"), 1)
        self.assertEqual(self.gateway.max_inflight, 1)
        self.assertEqual(len(self.tracker.get_active_sessions()), 1)

    async def test_failed_loop_tick_is_counted(self) -> None:
        self.processes.processes = [TF2_PROCESS]
        self.gateway.fail_on = {"create"}

        with patch("playledger.tracker.record_poll_failure") as failed:
            await self.tracker.start()
            for _ in range(200):
                if failed.called:
                    break
                await asyncio.sleep(0.01)
            await self.tracker.stop()

        failed.assert_called_with("persistence")
        self.assertEqual(self.tracker.status().lastError, "create failed")

    async def test_start_is_idempotent(self) -> None:
        await self.tracker.start()
        await self.tracker.start()

        self.assertTrue(self.tracker.is_running)
        self.assertEqual(self.gateway.calls.count("list_open"), 1)

    async def test_existing_open_record_is_reused(self) -> None:
        existing = self.gateway.seed_open(440, USER, self.clock.now - timedelta(minutes=5))
        self.processes.processes = [TF2_PROCESS]

        await self.tracker.poll_once()

        self.assertNotIn("create", self.gateway.calls)
        self.assertEqual([s.id for s in self.tracker.get_active_sessions()], [existing.id])

    async def test_create_failure_leaves_table_untouched(self) -> None:
        self.processes.processes = [TF2_PROCESS]
        self.gateway.fail_on = {"create"}

        with self.assertRaises(PersistenceFailure):
            await self.tracker.poll_once()
        self.assertEqual(self.tracker.get_active_sessions(), [])
        self.assertEqual(self.tracker.status().lastError, "create failed")

        self.gateway.fail_on = set()
        await self.tracker.poll_once()
        self.assertEqual(len(self.tracker.get_active_sessions()), 1)
        self.assertIsNone(self.tracker.status().lastError)

    async def test_close_failure_keeps_session_tracked(self) -> None:
        self.processes.processes = [TF2_PROCESS]
        await self.tracker.poll_once()

        self.processes.processes = []
        self.gateway.fail_on = {"close"}
        with self.assertRaises(PersistenceFailure):
            await self.tracker.poll_once()
        self.assertEqual(len(self.tracker.get_active_sessions()), 1)

        self.gateway.fail_on = set()
        await self.tracker.poll_once()
        self.assertEqual(self.tracker.get_active_sessions(), [])
        self.assertIsNotNone(self._stored()[0].endedAt)

    async def test_no_active_user_closes_sessions(self) -> None:
        self.processes.processes = [TF2_PROCESS]
        await self.tracker.poll_once()

        self.user.user_id = None
        self.clock.advance(10)
        await self.tracker.poll_once()

        self.assertEqual(self.tracker.get_active_sessions(), [])
        self.assertEqual(self._stored()[0].durationSeconds, 10)

    async def test_user_switch_starts_new_session(self) -> None:
        self.processes.processes = [TF2_PROCESS]
        await self.tracker.poll_once()

        self.user.user_id = USER + 1
        await self.tracker.poll_once()

        active = self.tracker.get_active_sessions()
        self.assertEqual([s.userId for s in active], [USER + 1])
        self.assertEqual(len(self._stored()), 2)

    async def test_set_poll_interval_preserves_open_sessions(self) -> None:
        self.processes.processes = [TF2_PROCESS]
        await self.tracker.start()
        await self.tracker.poll_once()

        interval = await self.tracker.set_poll_interval(0.01)

        self.assertEqual(interval, config.MIN_POLL_INTERVAL_SECONDS)
        self.assertTrue(self.tracker.is_running)
        self.assertEqual(len(self.tracker.get_active_sessions()), 1)
        self.assertEqual(self.gateway.calls.count("list_open"), 1)
        self.assertEqual(self.gateway.calls.count("create"), 1)

    async def test_stop_leaves_sessions_open_in_store(self) -> None:
        self.processes.processes = [TF2_PROCESS]
        await self.tracker.start()
        await self.tracker.poll_once()
        await self.tracker.stop()

        self.assertFalse(self.tracker.is_running)
        self.assertNotIn("close", self.gateway.calls)
        self.assertTrue(self._stored()[0].isOpen)

    async def test_active_sessions_are_copies(self) -> None:
        self.processes.processes = [TF2_PROCESS]
        await self.tracker.poll_once()

        snapshot = self.tracker.get_active_sessions()
        snapshot[0].appId = 1
        self.assertEqual(self.tracker.get_active_sessions()[0].appId, 440)

    async def test_status(self) -> None:
        self.processes.processes = [TF2_PROCESS]
        await self.tracker.poll_once()

        status = self.tracker.status()
        self.assertFalse(status.isRunning)
        self.assertEqual(status.pollIntervalSeconds, 60)
        self.assertEqual(status.lastPollAt, self.clock.now)
        self.assertEqual(status.openSessionCount, 1)


if __name__ == "__main__":
    unittest.main()
