"""
Tests for assembling job definitions into runnable jobs, and for the
``load_job`` entry point.
"""

import pytest

from stepflow_kernel.exceptions import BatchConfigError

from stepflow_batch.domain.types import BatchStatus, JobExecution
from stepflow_batch.job.job import FlowJob
from stepflow_batch.services.repository import SqlJobRepository
from stepflow_batch.step.base import ChunkOrientedStep, TaskletStep
from stepflow_batch.step.chunk_processor import FaultTolerantChunkProcessor
from stepflow_batch.step.item import ListItemReader, ListItemWriter
from stepflow_batch.step.transaction import SessionTransactionManager

from stepflow_config import ComponentRegistry, build_job, load_job, load_job_definition
from stepflow_config.loader import parse_job


NIGHTLY = """
job:
  name: nightly
  listeners: [audit]
steps:
  - name: load
    chunk: {reader: rows, processor: clean, writer: sink, size: 2}
    fault_tolerance:
      skip_limit: 5
      skippable: [ValueError]
      retry_limit: 1
      retryable: [ConnectionError]
    transitions:
      - {on: FAILED, end: FAILED}
      - {on: "*", to: route}
  - name: report
    tasklet: report
  - name: notify
    tasklet: notify
decisions:
  - name: route
    decider: router
    transitions:
      - {on: SKIPPED, to: notify}
      - {on: "*", to: report}
"""


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, contribution, step_execution):
        self.calls.append(step_execution.step_name)


class AuditListener:
    def __init__(self):
        self.jobs = []

    def after_job(self, job_execution):
        self.jobs.append(job_execution.status)


def _clean(item):
    if item == "bad":
        raise ValueError("unparseable row")
    return item.upper()


def _router(job_execution, step_execution):
    return "SKIPPED" if step_execution.skip_count else "CLEAN"


@pytest.fixture
def components():
    registry = ComponentRegistry()
    registry.register_factory("rows", lambda: ListItemReader(["a", "bad", "c"]))
    registry.register("clean", _clean)
    registry.register("sink", ListItemWriter())
    registry.register("report", Recorder())
    registry.register("notify", Recorder())
    registry.register("router", _router)
    registry.register("audit", AuditListener())
    return registry


@pytest.fixture
def nightly_yaml(tmp_path):
    path = tmp_path / "nightly.yaml"
    path.write_text(NIGHTLY)
    return path


# =============================================================================
# ComponentRegistry
# =============================================================================


class TestComponentRegistry:
    def test_instances_are_shared(self):
        registry = ComponentRegistry()
        writer = ListItemWriter()
        registry.register("sink", writer)
        assert registry.get("sink") is writer

    def test_factories_build_fresh_instances(self):
        registry = ComponentRegistry()
        registry.register_factory("rows", lambda: ListItemReader([1]))
        assert registry.get("rows") is not registry.get("rows")

    def test_duplicate_names_rejected(self):
        registry = ComponentRegistry()
        registry.register("x", 1)
        with pytest.raises(ValueError):
            registry.register_factory("x", lambda: 2)

    def test_missing_name_lists_available(self):
        registry = ComponentRegistry()
        registry.register("sink", 1)
        with pytest.raises(KeyError, match="sink"):
            registry.get("rows")
        assert "sink" in registry
        assert len(registry) == 1


# =============================================================================
# build_job
# =============================================================================


class TestBuildJob:
    def test_builds_steps_and_states(self, nightly_yaml, components):
        definition = load_job_definition(nightly_yaml)

        job = build_job(definition, components)

        assert isinstance(job, FlowJob)
        assert set(job.flow.state_names) >= {"load", "route", "report", "notify"}
        load = job.flow.get_state("load").step
        assert isinstance(load, ChunkOrientedStep)
        assert isinstance(load.chunk_processor, FaultTolerantChunkProcessor)
        assert load.chunk_processor.chunk_size == 2
        assert load.chunk_processor.retry_policy.max_attempts == 2
        assert isinstance(job.flow.get_state("report").step, TaskletStep)

    def test_assembled_job_runs(self, nightly_yaml, components):
        job = build_job(load_job_definition(nightly_yaml), components)
        job_execution = JobExecution(job_name="nightly")

        job.execute(job_execution)

        assert job_execution.status == BatchStatus.COMPLETED
        assert components.get("sink").written == ["A", "C"]
        assert components.get("notify").calls == ["notify"]
        assert components.get("report").calls == []
        assert components.get("audit").jobs == [BatchStatus.COMPLETED]
        load = job_execution.step_executions[0]
        assert load.process_skip_count == 1

    def test_missing_components(self, nightly_yaml):
        with pytest.raises(BatchConfigError) as info:
            build_job(load_job_definition(nightly_yaml), ComponentRegistry())
        assert any("'rows'" in e for e in info.value.errors)

    def test_declaration_ordering(self, components):
        definition = parse_job({
            "job": {"name": "ordered", "ordering": "declaration"},
            "steps": [{
                "name": "report",
                "tasklet": "report",
                "transitions": [{"on": "*", "end": True}, {"on": "COMPLETED", "end": "FAILED"}],
            }],
        })
        job = build_job(definition, components)
        job_execution = JobExecution(job_name="ordered")

        job.execute(job_execution)

        assert [t.pattern for t in job.flow.transitions_for("report")] == ["*", "COMPLETED"]
        assert job_execution.status == BatchStatus.COMPLETED

    def test_start_limit_and_restart_flags(self, components):
        definition = parse_job({
            "job": {"name": "flags", "restartable": False},
            "steps": [{
                "name": "report",
                "tasklet": "report",
                "start_limit": 2,
                "allow_start_if_complete": True,
            }],
        })
        job = build_job(definition, components)
        step = job.flow.get_state("report").step
        assert step.start_limit == 2
        assert step.allow_start_if_complete
        assert not job.restartable


# =============================================================================
# load_job
# =============================================================================


class TestLoadJob:
    def test_logs_trace(self, nightly_yaml, components, captured_logs):
        job = load_job(nightly_yaml, components)

        traces = [r for r in captured_logs() if r["message"] == "STEPFLOW_CONFIG_TRACE"]
        assert len(traces) == 1
        trace = traces[0]
        assert trace["trace_type"] == "JOB_LOADED"
        assert trace["job_name"] == "nightly"
        assert trace["step_count"] == 3
        assert trace["decision_count"] == 1
        assert len(trace["checksum"]) == 64
        assert job.name == "nightly"

    def test_wires_repository_and_transactions(self, nightly_yaml, components, session,
                                               deterministic_clock):
        repository = SqlJobRepository(session, clock=deterministic_clock)

        job = load_job(
            nightly_yaml,
            components,
            job_repository=repository,
            transaction_manager=SessionTransactionManager(session),
            clock=deterministic_clock,
        )
        job_execution = repository.create_job_execution(job.name, {"date": "d1"})
        job.execute(job_execution)

        stored = repository.get_job_execution(job_execution.id)
        assert stored.status == BatchStatus.COMPLETED
        assert [s.step_name for s in stored.step_executions] == ["load", "notify"]
        assert stored.step_executions[0].process_skip_count == 1

    def test_missing_file(self, tmp_path, components):
        with pytest.raises(FileNotFoundError):
            load_job(tmp_path / "missing.yaml", components)

    def test_malformed_yaml(self, tmp_path, components):
        path = tmp_path / "broken.yaml"
        path.write_text("job: [unclosed\n")
        with pytest.raises(BatchConfigError):
            load_job(path, components)

    def test_missing_key(self, tmp_path, components):
        path = tmp_path / "nameless.yaml"
        path.write_text("job: {}\nsteps: []\n")
        with pytest.raises(BatchConfigError, match="missing key"):
            load_job(path, components)

    def test_invalid_definition_lists_every_error(self, tmp_path, components):
        path = tmp_path / "invalid.yaml"
        path.write_text(
            "job: {name: bad, ordering: random}\n"
            "steps:\n"
            "  - name: a\n"
            "    tasklet: report\n"
            "    transitions: [{on: '*', to: ghost}]\n"
        )
        with pytest.raises(BatchConfigError) as info:
            load_job(path, components)
        assert len(info.value.errors) == 3

    def test_warnings_are_logged(self, tmp_path, components, captured_logs):
        path = tmp_path / "warn.yaml"
        path.write_text(
            "job: {name: warn}\n"
            "steps:\n"
            "  - {name: a, tasklet: report}\n"
            "  - {name: orphan, tasklet: notify}\n"
        )

        load_job(path, components)

        warnings = [r for r in captured_logs() if r["message"] == "job_definition_warning"]
        assert [w["warning"] for w in warnings] == ["State 'orphan' is not reachable from 'a'"]
