"""
Tests for the pipeline scheduler.

Covers: RepeatingTask run-lock semantics (skip vs wait), failure
bookkeeping, stage wiring, APScheduler job registration.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from finshadow.core.config import Settings
from finshadow.intel.scheduler import (
    STAGE_INGESTION,
    STAGE_SCORING,
    STAGE_SPIKES,
    PipelineScheduler,
    RepeatingTask,
)


def _blocking_task():
    started = threading.Event()
    release = threading.Event()

    def work():
        started.set()
        release.wait(5)
        return "done"

    return RepeatingTask("blocking", work, 60), started, release


class TestRepeatingTask:
    def test_run_returns_result(self):
        task = RepeatingTask("t", lambda: 42, 60)
        assert task.run() == 42
        assert task.runs == 1
        assert task.is_running is False

    def test_overlapping_run_skipped(self):
        task, started, release = _blocking_task()
        worker = threading.Thread(target=task.run)
        worker.start()
        assert started.wait(5)

        assert task.is_running is True
        assert task.run() is None
        assert task.skipped == 1

        release.set()
        worker.join(5)
        assert task.runs == 1

    def test_trigger_waits_for_in_flight_run(self):
        task, started, release = _blocking_task()
        worker = threading.Thread(target=task.run)
        worker.start()
        assert started.wait(5)

        results = []
        manual = threading.Thread(target=lambda: results.append(task.trigger()))
        manual.start()
        time.sleep(0.05)
        assert results == []

        release.set()
        worker.join(5)
        manual.join(5)
        assert results == ["done"]
        assert task.runs == 2
        assert task.skipped == 0

    def test_trigger_passes_kwargs(self):
        func = MagicMock(return_value="ok")
        task = RepeatingTask("t", func, 60)
        assert task.trigger(force=True) == "ok"
        func.assert_called_once_with(force=True)

    def test_failure_recorded_and_lock_released(self):
        task = RepeatingTask("t", MagicMock(side_effect=RuntimeError("boom")), 60)
        with pytest.raises(RuntimeError):
            task.run()
        assert task.failures == 1
        assert task.last_error == "boom"
        assert task.is_running is False
        d = task.to_dict()
        assert d["runs"] == 1
        assert d["last_started"] is not None


@pytest.fixture
def components():
    orchestrator = MagicMock()
    orchestrator.states.return_value = {"feed-a": "idle"}
    scorer = MagicMock()
    scorer.compute_all_risks.return_value.scores = ["s1", "s2"]
    scorer.compute_all_risks.return_value.to_dict.return_value = {"scored": 2}
    tracker = MagicMock()
    tracker.detect_spikes.return_value = []
    emitter = MagicMock()
    emitter.emit_for_scores.return_value = ["a1"]
    emitter.emit_for_spikes.return_value = []
    return orchestrator, scorer, tracker, emitter


@pytest.fixture
def pipeline(components):
    sched = PipelineScheduler(Settings(), *components)
    yield sched
    sched.stop()


class TestPipelineScheduler:
    def test_intervals_from_settings(self, components):
        settings = Settings(ingest_interval_minutes=5, scoring_interval_minutes=30)
        sched = PipelineScheduler(settings, *components)
        assert sched.tasks[STAGE_INGESTION].interval_seconds == 300
        assert sched.tasks[STAGE_SCORING].interval_seconds == 1800
        assert sched.tasks[STAGE_SPIKES].interval_seconds == 3600

    def test_scoring_stage_emits_alerts(self, pipeline, components):
        _, scorer, _, emitter = components
        result = pipeline.run_stage(STAGE_SCORING)
        emitter.emit_for_scores.assert_called_once_with(["s1", "s2"])
        assert result == {"scoring": {"scored": 2}, "alerts_created": 1}

    def test_spike_stage(self, pipeline, components):
        _, _, tracker, emitter = components
        assert pipeline.run_stage(STAGE_SPIKES) == {"spikes": [], "alerts_created": 0}
        tracker.detect_spikes.assert_called_once()
        emitter.emit_for_spikes.assert_called_once_with([])

    def test_forced_ingestion(self, pipeline, components):
        orchestrator = components[0]
        pipeline.run_stage(STAGE_INGESTION, force=True)
        orchestrator.run.assert_called_once_with(force=True)

    def test_unknown_stage(self, pipeline):
        with pytest.raises(KeyError):
            pipeline.run_stage("reporting")

    def test_start_registers_jobs(self, pipeline):
        pipeline.start()
        assert pipeline.is_running
        jobs = {job.id: job for job in pipeline._scheduler.get_jobs()}
        assert set(jobs) == {"finshadow_ingestion", "finshadow_scoring", "finshadow_spikes"}
        assert all(job.max_instances == 1 and job.coalesce for job in jobs.values())
        pipeline.start()  # second start is a no-op
        pipeline.stop()
        assert not pipeline.is_running

    def test_stats(self, pipeline):
        stats = pipeline.stats()
        assert stats["running"] is False
        assert set(stats["stages"]) == {STAGE_INGESTION, STAGE_SCORING, STAGE_SPIKES}
        assert stats["sources"] == {"feed-a": "idle"}
