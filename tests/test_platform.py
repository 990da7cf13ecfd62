"""End-to-end tests: engines driving the local platform with real jobs."""

from datetime import timedelta

import pytest

from chainctl.capability import BatchJob, QueueableJob
from chainctl.engine import BatchChainEngine, QueueableChainEngine, install_engines
from chainctl.errors import RecoverableFailure, SubmissionRejected, UnrecoverableFailure
from chainctl.models import ChainType, JobRequest, OutcomeKind, UnitState
from chainctl.platform import LocalJobPlatform
from chainctl.registry import JobRegistry
from chainctl.scheduler import DelayScheduler
from chainctl.storage import Storage
from chainctl.worker import Worker

from conftest import link

EVENTS = []


class Extract(BatchJob):
    job_identifier = "extract"

    def start(self):
        return list(range(self.get_parameters().get("count", 5)))

    def execute(self, chunk):
        if self.get_parameters().get("fail_on") in chunk and self.request.attempt == 1:
            raise RecoverableFailure("flaky chunk")
        EVENTS.append(("extract", list(chunk)))

    def after_execution(self, outcome):
        EVENTS.append(("extract.after", outcome.kind))
        self.get_parameters()["extracted"] = outcome.items_total
        super().after_execution(outcome)


class Load(BatchJob):
    job_identifier = "load"

    def start(self):
        EVENTS.append(("load.params", dict(self.get_parameters())))
        return []

    def execute(self, chunk):
        pass


class Broken(BatchJob):
    job_identifier = "broken"

    def start(self):
        raise UnrecoverableFailure("no source")

    def execute(self, chunk):
        pass


class Notify(QueueableJob):
    job_identifier = "notify"

    def execute(self):
        mode = self.get_parameters().get("mode")
        EVENTS.append(("notify", mode))
        if mode == "fail":
            raise RecoverableFailure("smtp down")
        if mode == "fatal":
            raise ValueError("bad template")

    def on_execution_error(self, error):
        EVENTS.append(("notify.error", str(error)))
        super().on_execution_error(error)

    def after_execution(self, outcome):
        EVENTS.append(("notify.after", outcome.kind))
        super().after_execution(outcome)

    def on_completion_hook(self, outcome):
        EVENTS.append(("notify.hook", outcome.kind))
        super().on_completion_hook(outcome)


class Audit(QueueableJob):
    job_identifier = "audit"

    def execute(self):
        EVENTS.append(("audit", dict(self.get_parameters())))


class Unprepared(QueueableJob):
    job_identifier = "unprepared"

    def before_execution(self, parameters):
        raise ValueError("missing credentials")

    def execute(self):
        EVENTS.append(("unprepared", None))

    def on_execution_error(self, error):
        EVENTS.append(("unprepared.error", str(error)))

    def on_completion_hook(self, outcome):
        EVENTS.append(("unprepared.hook", outcome.kind))
        super().on_completion_hook(outcome)


@pytest.fixture(autouse=True)
def _clear_events():
    EVENTS.clear()
    yield
    EVENTS.clear()


@pytest.fixture
def registry():
    reg = JobRegistry()
    for job in (Extract, Load, Broken, Notify, Audit, Unprepared):
        reg.register()(job)
    return reg


@pytest.fixture
def storage(settings):
    return Storage(settings.data_dir)


@pytest.fixture
def runtime(storage, registry, settings, clock):
    """Local platform and engines sharing one storage directory."""

    def build(**overrides):
        cfg = settings.model_copy(update=overrides)
        local = LocalJobPlatform(storage, registry=registry, settings=cfg, clock=clock)
        sched = DelayScheduler(local, timers=storage, clock=clock, retry_delay=timedelta(seconds=cfg.ceiling_defer_delay))
        batch = BatchChainEngine(storage, local, sched, cfg, clock)
        queueable = QueueableChainEngine(storage, local, sched, cfg, clock)
        install_engines(batch, queueable)
        return local, batch, queueable

    return build


def events(name):
    return [e for e in EVENTS if e[0] == name]


class TestBatchChains:
    """Batch jobs on the local platform."""

    def test_chunks_and_forwarding(self, runtime, storage):
        local, batch, _ = runtime()
        storage.add_config(link("extract", "load", batch_size=2))
        storage.add_config(link("load"))

        batch.start("extract", {"count": 5})
        assert local.run_pending() == 1
        assert events("extract") == [("extract", [0, 1]), ("extract", [2, 3]), ("extract", [4])]

        assert local.run_pending() == 1
        assert events("load.params") == [("load.params", {"count": 5, "extracted": 5})]
        assert local.run_pending() == 0

        states = [u.state for u in storage.get_all_units()]
        assert states == [UnitState.COMPLETED, UnitState.COMPLETED]

    def test_failed_chunk_retried(self, runtime, storage):
        local, batch, _ = runtime()
        storage.add_config(link("extract", "load", batch_size=2, max_retries=1))
        storage.add_config(link("load"))

        batch.start("extract", {"count": 4, "fail_on": 2})
        local.run_pending()
        first = storage.get_all_units()[0]
        assert first.state == UnitState.FAILED
        assert first.outcome == OutcomeKind.RECOVERABLE_FAILURE
        assert events("extract.after") == [("extract.after", OutcomeKind.RECOVERABLE_FAILURE)]

        local.run_pending()
        retried = storage.get_all_units()[1]
        assert retried.request.job_identifier == "extract"
        assert retried.request.attempt == 2
        assert retried.state == UnitState.COMPLETED

        local.run_pending()
        assert [u.request.job_identifier for u in storage.get_all_units()] == ["extract", "extract", "load"]

    def test_unrecoverable_start_aborts_chain(self, runtime, storage):
        local, batch, _ = runtime()
        storage.add_config(link("broken", "load", max_retries=3))
        storage.add_config(link("load"))

        batch.start("broken")
        local.run_pending()
        local.run_pending()
        units = storage.get_all_units()
        assert len(units) == 1
        assert units[0].outcome == OutcomeKind.UNRECOVERABLE_FAILURE
        assert units[0].error_message == "start: no source"

    def test_active_batch_ceiling_defers(self, runtime, storage, clock):
        local, batch, _ = runtime(max_active_batch_jobs=1)
        storage.add_config(link("load"))

        batch.start("load")
        batch.start("load")
        first, second = storage.get_all_units()
        assert first.eligible_at == clock.now()
        assert second.eligible_at == clock.now() + timedelta(seconds=60)

    def test_finishing_job_does_not_block_its_successor(self, runtime, storage, clock):
        local, batch, _ = runtime(max_active_batch_jobs=1)
        storage.add_config(link("extract", "load"))
        storage.add_config(link("load"))

        batch.start("extract", {"count": 1})
        assert local.run_pending() == 1
        first, second = storage.get_all_units()
        assert first.state == UnitState.COMPLETED
        assert second.request.job_identifier == "load"
        assert second.eligible_at == clock.now()

        assert local.run_pending() == 1
        assert len(events("load.params")) == 1

    def test_link_deactivated_while_delayed_is_skipped(self, runtime, storage, clock):
        local, batch, _ = runtime()
        storage.add_config(link("extract", "load", execution_delay=timedelta(minutes=5)))
        storage.add_config(link("load"))

        batch.start("extract", {"count": 1})
        local.run_pending()
        storage.deactivate_config(ChainType.BATCH, "load")

        clock.advance(timedelta(minutes=6))
        assert local.run_pending() == 0
        assert events("load.params") == []
        skipped = storage.get_all_units()[1]
        assert skipped.state == UnitState.FAILED
        assert skipped.error_message.startswith("skipped:")


class TestQueueableChains:
    """Queueable jobs and their hooks."""

    def test_hooks_fire_once_each(self, runtime, storage):
        local, _, queueable = runtime()
        storage.add_config(link("notify", chain_type=ChainType.QUEUEABLE))

        queueable.start("notify", {"mode": "fail"})
        local.run_pending()

        assert events("notify.error") == [("notify.error", "smtp down")]
        assert events("notify.after") == [("notify.after", OutcomeKind.RECOVERABLE_FAILURE)]
        assert events("notify.hook") == [("notify.hook", OutcomeKind.RECOVERABLE_FAILURE)]

    def test_explicit_path_continues(self, runtime, storage):
        local, _, queueable = runtime()
        storage.add_config(link("notify", "audit", chain_type=ChainType.QUEUEABLE))
        storage.add_config(link("audit", chain_type=ChainType.QUEUEABLE))

        queueable.start("notify", {"mode": "ok"})
        local.run_pending()
        local.run_pending()
        assert events("audit") == [("audit", {"mode": "ok"})]

    def test_completion_hook_path_continues_exactly_once(self, runtime, storage):
        local, _, queueable = runtime()
        storage.add_config(link("notify", "audit", chain_type=ChainType.QUEUEABLE, use_completion_hook=True))
        storage.add_config(link("audit", chain_type=ChainType.QUEUEABLE))

        queueable.start("notify", {"mode": "ok"})
        local.run_pending()
        assert [u.request.job_identifier for u in storage.get_all_units()] == ["notify", "audit"]
        local.run_pending()
        assert len(events("audit")) == 1

    def test_uncaught_error_continues_when_tolerated(self, runtime, storage):
        local, _, queueable = runtime()
        storage.add_config(link("notify", "audit", chain_type=ChainType.QUEUEABLE,
                                use_completion_hook=True, continue_on_failure=True))
        storage.add_config(link("audit", chain_type=ChainType.QUEUEABLE))

        queueable.start("notify", {"mode": "fatal"})
        local.run_pending()
        local.run_pending()
        assert events("notify.error") == [("notify.error", "bad template")]
        assert len(events("audit")) == 1

    def test_preparation_failure_still_fires_hooks(self, runtime, storage):
        local, _, queueable = runtime()
        storage.add_config(link("unprepared", "audit", chain_type=ChainType.QUEUEABLE,
                                use_completion_hook=True, continue_on_failure=True))
        storage.add_config(link("audit", chain_type=ChainType.QUEUEABLE))

        queueable.start("unprepared", {"to": "ops"})
        local.run_pending()
        assert events("unprepared") == []
        assert events("unprepared.error") == [("unprepared.error", "missing credentials")]
        assert events("unprepared.hook") == [("unprepared.hook", OutcomeKind.RECOVERABLE_FAILURE)]

        first, second = storage.get_all_units()
        assert first.state == UnitState.FAILED
        assert first.error_message == "prepare: missing credentials"
        assert second.request.job_identifier == "audit"

        local.run_pending()
        assert events("audit") == [("audit", {"to": "ops"})]

    def test_enqueue_ceiling_defers(self, runtime, storage, clock):
        local, _, queueable = runtime(max_enqueue_per_burst=2)
        storage.add_config(link("audit", chain_type=ChainType.QUEUEABLE))

        for _ in range(3):
            queueable.start("audit")
        eligible = [u.eligible_at for u in storage.get_all_units()]
        assert eligible == [clock.now(), clock.now(), clock.now() + timedelta(seconds=60)]

    def test_delay_honored(self, runtime, storage, clock):
        local, _, queueable = runtime()
        storage.add_config(link("notify", "audit", chain_type=ChainType.QUEUEABLE,
                                execution_delay=timedelta(seconds=30)))
        storage.add_config(link("audit", chain_type=ChainType.QUEUEABLE))

        queueable.start("notify", {"mode": "ok"})
        local.run_pending()
        assert local.run_pending() == 0

        clock.advance(timedelta(seconds=29))
        assert local.run_pending() == 0
        clock.advance(timedelta(seconds=1))
        assert local.run_pending() == 1
        assert len(events("audit")) == 1


class TestLocalPlatform:
    """Platform mechanics."""

    def test_burst_ceiling_rejects_submission(self, runtime):
        local, _, _ = runtime(max_enqueue_per_burst=1)
        request = JobRequest(job_identifier="audit", chain_type=ChainType.QUEUEABLE, chain_id="c")
        local.submit(request)
        with pytest.raises(SubmissionRejected):
            local.submit(request)
        local.new_burst()
        local.submit(request)

    def test_unregistered_job_fails_unit(self, runtime, storage):
        local, _, _ = runtime()
        local.submit(JobRequest(job_identifier="ghost", chain_type=ChainType.QUEUEABLE, chain_id="c"))
        assert local.run_pending() == 0
        [unit] = storage.get_all_units()
        assert unit.state == UnitState.FAILED
        assert "ghost" in unit.error_message

    def test_locked_unit_is_skipped(self, runtime, storage):
        local, _, _ = runtime()
        storage.add_config(link("audit", chain_type=ChainType.QUEUEABLE))
        tracking_id = local.submit(JobRequest(job_identifier="audit", chain_type=ChainType.QUEUEABLE, chain_id="c"))

        fd = storage.acquire_lock(tracking_id)
        try:
            assert local.run_pending() == 0
        finally:
            storage.release_lock(fd)
        assert local.run_pending() == 1

    def test_worker_tick_fires_timers(self, storage, registry, settings, clock):
        local = LocalJobPlatform(storage, registry=registry, settings=settings, clock=clock, native_delay=False)
        sched = DelayScheduler(local, timers=storage, clock=clock)
        install_engines(
            BatchChainEngine(storage, local, sched, settings, clock),
            QueueableChainEngine(storage, local, sched, settings, clock),
        )
        storage.add_config(link("audit", chain_type=ChainType.QUEUEABLE))
        sched.schedule_start(
            JobRequest(job_identifier="audit", chain_type=ChainType.QUEUEABLE, parameters={"n": 1}, chain_id="c"),
            timedelta(seconds=10),
        )

        w = Worker(local, sched)
        assert w.tick() == 0
        clock.advance(timedelta(seconds=10))
        assert w.tick() == 1
        assert events("audit") == [("audit", {"n": 1})]
