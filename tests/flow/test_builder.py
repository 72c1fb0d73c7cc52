"""Tests for FlowBuilder and the State variants it produces."""

import pytest

from stepflow_kernel.exceptions import FlowDefinitionError

from stepflow_batch.domain.types import FlowExecutionStatus
from stepflow_batch.flow.builder import FlowBuilder
from stepflow_batch.flow.state import (
    DecisionState,
    EndState,
    FlowState,
    SplitState,
    StepState,
)


class TestFlowBuilder:
    def test_next_chains_steps(self, make_step, executor):
        s1, s2, s3 = make_step("S1"), make_step("S2"), make_step("S3")
        flow = FlowBuilder("chain").start(s1).next(s2).next(s3).build()

        result = flow.start(executor)

        assert executor.visited == ["S1", "S2", "S3"]
        assert result.name == "S3"

    def test_conditional_routes(self, make_step, executor):
        load = make_step("load", "FAILED")
        report = make_step("report")
        cleanup = make_step("cleanup")
        flow = (
            FlowBuilder("nightly")
            .start(load)
            .on("FAILED").to(cleanup)
            .from_(load).on("*").to(report)
            .build()
        )

        result = flow.start(executor)

        assert executor.visited == ["load", "cleanup"]
        assert result.name == "cleanup"

    def test_from_refers_back_to_registered_state(self, make_step):
        load = make_step("load")
        report = make_step("report")
        flow = (
            FlowBuilder("nightly")
            .start(load)
            .on("FAILED").end()
            .from_(load).on("*").to(report)
            .build()
        )
        assert set(flow.state_names) == {"load", "report"}
        assert [t.pattern for t in flow.transitions_for("load")] == ["FAILED", "*"]

    def test_plain_end_finishes_on_current_state(self, make_step, executor):
        s1 = make_step("S1", "COMPLETED")
        flow = FlowBuilder("plain").start(s1).on("*").end().build()

        result = flow.start(executor)

        assert result.name == "S1"
        assert result.status == FlowExecutionStatus.COMPLETED
        assert executor.exit_codes == []

    def test_fail_routes_to_end_state(self, make_step, executor):
        s1 = make_step("S1", "BROKEN")
        flow = (
            FlowBuilder("failing")
            .start(s1)
            .on("BROKEN").fail()
            .from_(s1).on("*").end()
            .build()
        )

        result = flow.start(executor)

        assert result.status == FlowExecutionStatus.FAILED
        assert result.name == "failing.end1"
        assert executor.exit_codes == ["FAILED"]

    def test_stop_and_complete(self, make_step, make_executor):
        s1 = make_step("S1", "HOLD", "DONE")
        flow = (
            FlowBuilder("pausing")
            .start(s1)
            .on("HOLD").stop()
            .from_(s1).on("DONE").complete()
            .build()
        )

        first = make_executor()
        assert flow.start(first).status == FlowExecutionStatus.STOPPED
        second = make_executor()
        assert flow.start(second).status == FlowExecutionStatus.COMPLETED

    def test_end_with_custom_code(self, make_step, executor):
        s1 = make_step("S1", "COMPLETED")
        flow = (
            FlowBuilder("custom")
            .start(s1)
            .on("*").end_with("COMPLETED", "COMPLETED_WITH_WARNINGS")
            .build()
        )

        flow.start(executor)

        assert executor.exit_codes == ["COMPLETED_WITH_WARNINGS"]

    def test_on_before_start(self):
        with pytest.raises(FlowDefinitionError):
            FlowBuilder("empty").on("*")

    def test_unknown_state_name(self, make_step):
        builder = FlowBuilder("names").start(make_step("S1"))
        with pytest.raises(FlowDefinitionError, match="unknown state"):
            builder.on("*").to("missing")

    def test_state_name_reference(self, make_step, executor):
        s1, s2 = make_step("S1", "RETRY", "COMPLETED"), make_step("S2")
        flow = (
            FlowBuilder("loop")
            .start(s1)
            .on("RETRY").to("S1")
            .from_(s1).on("*").to(s2)
            .build()
        )
        flow.start(executor)
        assert executor.visited == ["S1", "S1", "S2"]

    def test_declaration_ordering(self, make_step, executor):
        s1 = make_step("S1", "FAILED")
        wide, narrow = make_step("wide"), make_step("narrow")
        flow = (
            FlowBuilder("declared", ordering=None)
            .start(s1)
            .on("*").to(wide)
            .from_(s1).on("FAILED").to(narrow)
            .build()
        )
        flow.start(executor)
        assert executor.visited == ["S1", "wide"]


class TestDecisionState:
    def test_decider_object(self, make_step, executor):
        class Router:
            def decide(self, job_execution, step_execution):
                return "EVEN" if step_execution.step_name == "S1" else "ODD"

        s1, even, odd = make_step("S1"), make_step("even"), make_step("odd")
        builder = FlowBuilder("routed")
        route = builder.decision("route", Router())
        flow = (
            builder.start(s1).next(route)
            .on("EVEN").to(even)
            .from_(route).on("*").to(odd)
            .build()
        )

        flow.start(executor)

        assert executor.visited == ["S1", "even"]

    def test_plain_callable_sees_job_execution(self, executor):
        seen = []

        def decide(job_execution, step_execution):
            seen.append((job_execution.job_name, step_execution))
            return "COMPLETED"

        state = DecisionState("d", decide)
        assert state.handle(executor) == "COMPLETED"
        assert seen == [("test", None)]
        assert not state.is_end_state


class TestCompositeStates:
    def test_flow_state_returns_nested_status(self, make_step, executor):
        inner = FlowBuilder("inner").start(make_step("I1")).on("*").fail().build()
        state = FlowState(inner)

        assert state.name == "inner"
        assert state.handle(executor) == "FAILED"

    def test_nested_flow_in_builder(self, make_step, executor):
        inner = FlowBuilder("inner").start(make_step("I1")).next(make_step("I2")).build()
        outer = (
            FlowBuilder("outer")
            .start(make_step("O1"))
            .next(inner)
            .next(make_step("O2"))
            .build()
        )

        outer.start(executor)

        assert executor.visited == ["O1", "I1", "I2", "O2"]

    def test_split_runs_flows_in_order_and_keeps_most_severe(self, make_step, executor):
        ok = FlowBuilder("ok").start(make_step("A")).build()
        bad = FlowBuilder("bad").start(make_step("B")).on("*").fail().build()
        split = SplitState("both", (ok, bad))

        assert split.handle(executor) == "FAILED"
        assert executor.visited == ["A", "B"]

    def test_split_stops_between_flows(self, make_step, executor):
        def stop(job_execution, step_execution):
            job_execution.request_stop()
            return "COMPLETED"

        stopper = FlowBuilder("stopper")
        stopper_flow = stopper.start(stopper.decision("halt", stop)).build()
        never = FlowBuilder("never").start(make_step("N")).build()

        status = SplitState("split", (stopper_flow, never)).handle(executor)

        assert status == "STOPPED"
        assert executor.visited == []

    def test_empty_split_completes(self, executor):
        assert SplitState("none", ()).handle(executor) == "COMPLETED"

    def test_split_from_builder(self, make_step, executor):
        left = FlowBuilder("left").start(make_step("L")).build()
        right = FlowBuilder("right").start(make_step("R")).build()
        builder = FlowBuilder("parallel")
        split = builder.split("fan_out", left, right)
        flow = builder.start(split).next(make_step("after")).build()

        flow.start(executor)

        assert executor.visited == ["L", "R", "after"]

    def test_end_state_records_code(self, executor):
        state = EndState("end", FlowExecutionStatus.STOPPED, code="PAUSED")
        assert state.is_end_state
        assert state.handle(executor) == "STOPPED"
        assert executor.exit_codes == ["PAUSED"]

    def test_step_state_name_defaults_to_step(self, make_step):
        assert StepState(make_step("load")).name == "load"
        assert StepState(make_step("load"), name="alias").name == "alias"
