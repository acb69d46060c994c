"""
Unit tests for scheduler leader election.
"""

import pytest

from automation_engine.core.state_machine import LeaderState
from automation_engine.scheduling.leader import LeaderElector, make_identity


class Recorder:
    """Counts election callbacks."""

    def __init__(self):
        self.elected = 0
        self.deposed = 0

    def on_elected(self):
        self.elected += 1

    async def on_deposed(self):
        self.deposed += 1


def make_elector(lock, name, recorder=None):
    recorder = recorder or Recorder()
    return LeaderElector(
        lock,
        ttl=30,
        check_interval=20.0,
        on_elected=recorder.on_elected,
        on_deposed=recorder.on_deposed,
        identity=name,
    )


class TestElection:
    """Tests for acquiring and keeping the lock."""

    @pytest.mark.asyncio
    async def test_single_leader(self, leader_lock):
        """Test only one of two contenders becomes leader."""
        first = make_elector(leader_lock, "p1")
        second = make_elector(leader_lock, "p2")

        assert await first.tick() == LeaderState.LEADER
        assert await second.tick() == LeaderState.NOT_LEADER
        assert leader_lock.owner == "p1"

    @pytest.mark.asyncio
    async def test_leader_renews(self, leader_lock, fake_clock):
        """Test a ticking leader keeps the lock past the original TTL."""
        first = make_elector(leader_lock, "p1")
        second = make_elector(leader_lock, "p2")
        await first.tick()

        for _ in range(5):
            fake_clock.advance(20)
            await first.tick()
            await second.tick()

        assert first.is_leader
        assert not second.is_leader

    @pytest.mark.asyncio
    async def test_failover_after_ttl(self, leader_lock, fake_clock):
        """Test a standby takes over on its first tick after the leader's lock expires."""
        recorder = Recorder()
        first = make_elector(leader_lock, "p1")
        second = make_elector(leader_lock, "p2", recorder)
        await first.tick()

        # p1 stops ticking (process died)
        fake_clock.advance(20)
        await second.tick()
        assert not second.is_leader

        fake_clock.advance(11)
        await second.tick()

        assert second.is_leader
        assert recorder.elected == 1
        assert leader_lock.owner == "p2"

    @pytest.mark.asyncio
    async def test_stale_leader_demotes_itself(self, leader_lock, fake_clock):
        """Test a leader whose lock was taken over is deposed on renewal."""
        recorder = Recorder()
        first = make_elector(leader_lock, "p1", recorder)
        second = make_elector(leader_lock, "p2")
        await first.tick()

        fake_clock.advance(31)
        await second.tick()
        await first.tick()

        assert not first.is_leader
        assert second.is_leader
        assert recorder.deposed == 1

    @pytest.mark.asyncio
    async def test_never_two_leaders(self, leader_lock, fake_clock):
        """Test interleaved ticks never leave two processes leading."""
        electors = [make_elector(leader_lock, f"p{i}") for i in range(3)]

        for step in range(12):
            for elector in electors[step % 3:] + electors[:step % 3]:
                await elector.tick()
                assert sum(e.is_leader for e in electors) <= 1
            fake_clock.advance(17)


class TestDegradedBackend:
    """Tests for running without a working lock backend."""

    @pytest.mark.asyncio
    async def test_no_lock_is_always_leader(self):
        """Test a process without a lock backend leads."""
        recorder = Recorder()
        elector = make_elector(None, "solo", recorder)

        await elector.tick()
        await elector.tick()

        assert elector.is_leader
        assert recorder.elected == 1

    @pytest.mark.asyncio
    async def test_backend_error_assumes_leadership(self, leader_lock):
        """Test an unreachable backend during acquisition makes the process leader."""
        leader_lock.failing = True
        elector = make_elector(leader_lock, "p1")

        await elector.tick()

        assert elector.is_leader

    @pytest.mark.asyncio
    async def test_assumed_leader_takes_real_lock(self, leader_lock):
        """Test an assumed leader acquires the lock once the backend returns."""
        recorder = Recorder()
        elector = make_elector(leader_lock, "p1", recorder)
        leader_lock.failing = True
        await elector.tick()

        leader_lock.failing = False
        await elector.tick()

        assert elector.is_leader
        assert leader_lock.owner == "p1"
        assert recorder.elected == 1

    @pytest.mark.asyncio
    async def test_assumed_leader_yields_to_lock_holder(self, leader_lock):
        """Test an assumed leader steps down if another process holds the lock."""
        recorder = Recorder()
        first = make_elector(leader_lock, "p1", recorder)
        second = make_elector(leader_lock, "p2")
        leader_lock.failing = True
        await first.tick()

        leader_lock.failing = False
        await second.tick()
        await first.tick()

        assert second.is_leader
        assert not first.is_leader
        assert recorder.deposed == 1

    @pytest.mark.asyncio
    async def test_renewal_error_demotes(self, leader_lock):
        """Test a leader that cannot renew gives up leadership."""
        elector = make_elector(leader_lock, "p1")
        await elector.tick()

        leader_lock.failing = True
        await elector.tick()

        assert not elector.is_leader


class TestLifecycle:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_start_ticks_immediately(self, leader_lock):
        """Test start() elects without waiting for the first interval."""
        elector = make_elector(leader_lock, "p1")

        await elector.start()
        try:
            assert elector.is_leader
        finally:
            await elector.stop()

    @pytest.mark.asyncio
    async def test_stop_releases_lock(self, leader_lock):
        """Test a clean stop frees the lock for another process."""
        recorder = Recorder()
        first = make_elector(leader_lock, "p1", recorder)
        second = make_elector(leader_lock, "p2")
        await first.start()

        await first.stop()
        await second.tick()

        assert leader_lock.owner == "p2"
        assert first.state == LeaderState.NOT_LEADER
        assert recorder.deposed == 1

    @pytest.mark.asyncio
    async def test_stop_survives_backend_error(self, leader_lock):
        """Test stop still demotes when the lock cannot be released."""
        elector = make_elector(leader_lock, "p1")
        await elector.tick()
        leader_lock.failing = True

        await elector.stop()

        assert not elector.is_leader

    def test_identity_unique(self):
        """Test generated identities differ."""
        assert make_identity() != make_identity()
