"""Tests for delayed activation."""

from datetime import timedelta

from chainctl.models import ChainType, JobRequest
from chainctl.scheduler import DelayScheduler, MemoryTimers
from chainctl.storage import Storage


def make_request(job="B", chain_type=ChainType.QUEUEABLE, **params):
    return JobRequest(job_identifier=job, chain_type=chain_type, parameters=params, chain_id="c1")


class TestScheduleStart:
    """schedule_start routing."""

    def test_zero_delay_submits_immediately(self, scheduler, platform):
        scheduler.schedule_start(make_request(), timedelta(0))
        assert platform.jobs == ["B"]
        assert platform.last()[1] is None

    def test_native_delay_used_when_supported(self, scheduler, platform, timers):
        scheduler.schedule_start(make_request(), timedelta(seconds=30))
        assert platform.last()[1] == timedelta(seconds=30)
        assert timers.pending_timers() == []

    def test_timer_used_without_native_delay(self, scheduler, platform, timers, clock):
        platform.native_delay = False
        handle = scheduler.schedule_start(make_request(), timedelta(seconds=30))
        assert platform.submitted == []
        [entry] = timers.pending_timers()
        assert entry.handle == handle
        assert entry.fire_at == clock.now() + timedelta(seconds=30)


class TestDelayHonored:
    """A deferred start never fires early."""

    def test_not_submitted_before_delay(self, scheduler, platform, clock):
        platform.native_delay = False
        scheduler.schedule_start(make_request(mode="x"), timedelta(seconds=30))

        clock.advance(timedelta(seconds=29))
        assert scheduler.fire_due() == []
        assert platform.submitted == []

        clock.advance(timedelta(seconds=1))
        started = scheduler.fire_due()
        assert len(started) == 1
        assert platform.jobs == ["B"]
        assert platform.last()[0].parameters == {"mode": "x"}

    def test_fires_once(self, scheduler, platform, clock):
        platform.native_delay = False
        scheduler.schedule_start(make_request(), timedelta(seconds=5))
        clock.advance(timedelta(minutes=1))
        scheduler.fire_due()
        scheduler.fire_due()
        assert platform.jobs == ["B"]

    def test_fires_in_time_order(self, scheduler, platform, clock):
        platform.native_delay = False
        scheduler.schedule_start(make_request("late"), timedelta(seconds=20))
        scheduler.schedule_start(make_request("early"), timedelta(seconds=10))
        clock.advance(timedelta(seconds=25))
        scheduler.fire_due()
        assert platform.jobs == ["early", "late"]

    def test_rejected_timer_is_rearmed(self, scheduler, platform, timers, clock):
        platform.native_delay = False
        scheduler.schedule_start(make_request(), timedelta(seconds=5))
        clock.advance(timedelta(seconds=5))
        platform.reject_next = 1

        assert scheduler.fire_due() == []
        [entry] = timers.pending_timers()
        assert entry.fire_at == clock.now() + timedelta(seconds=60)

        clock.advance(timedelta(seconds=60))
        assert len(scheduler.fire_due()) == 1
        assert platform.jobs == ["B"]


class TestDurableTimers:
    """Storage as the timer facility."""

    def test_timers_survive_new_storage_instance(self, tmp_path, platform, clock):
        platform.native_delay = False
        DelayScheduler(platform, timers=Storage(str(tmp_path)), clock=clock).schedule_start(
            make_request(), timedelta(seconds=10)
        )

        restarted = DelayScheduler(platform, timers=Storage(str(tmp_path)), clock=clock)
        assert restarted.fire_due() == []
        clock.advance(timedelta(seconds=10))
        assert len(restarted.fire_due()) == 1
        assert platform.jobs == ["B"]
        assert Storage(str(tmp_path)).pending_timers() == []

    def test_memory_timers_pop_only_due(self, clock):
        timers = MemoryTimers()
        timers.add_timer(clock.now() + timedelta(seconds=1), make_request("a"))
        timers.add_timer(clock.now() + timedelta(seconds=2), make_request("b"))
        due = timers.pop_due_timers(clock.now() + timedelta(seconds=1))
        assert [e.request.job_identifier for e in due] == ["a"]
        assert len(timers.pending_timers()) == 1
