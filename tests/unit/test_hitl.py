"""
Unit Tests for Human-in-the-Loop Gates

Pausing, resuming (in-process and from a snapshot), timeouts and
cancellation of paused runs.
"""

from datetime import datetime, timedelta

import pytest

from workflow_engine.exceptions import HITLAlreadyAnswered, HITLTimeout, InvalidExecutionState
from workflow_engine.workflows.hitl import HITLGate
from workflow_engine.workflows.registry import create_default_registry
from workflow_engine.workflows.state import (
    ExecutionOptions,
    ExecutionStatus,
    HITLRequestStatus,
    NodeExecutionStatus,
)
from workflow_engine.workflows.walker import GraphWalker


TRIGGER = {"id": "trigger", "kind": "trigger"}


def executed(execution):
    return [entry.node_id for entry in execution.node_executions]


def gated_graph(make_graph, phase="hitlBefore", **gate):
    review = {
        "id": "review",
        "kind": "action",
        "config": {
            "actionType": "edit-fields",
            "fieldMappings": [{"sourceField": "${execution.hitlResponse.value}", "targetField": "decision"}],
            phase: {"enabled": True, "prompt": "Approve ${execution.formData.fields.company}?", **gate},
        },
    }
    return make_graph(
        [TRIGGER, review, {"id": "after", "kind": "action", "config": {"actionType": "webhook"}}],
        [("trigger", "review"), ("review", "after")],
    )


def splitter_graph(make_graph, phase):
    gated = {
        "id": "a",
        "kind": "action",
        "config": {
            "actionType": "edit-fields",
            "fieldMappings": [{"sourceField": "${execution.hitlResponse.value}", "targetField": "decision"}],
            phase: {"enabled": True, "prompt": "Run branch a?"},
        },
    }
    return make_graph(
        [
            TRIGGER,
            {"id": "split", "kind": "action", "config": {"actionType": "multi-action-splitter", "executionMode": "parallel"}},
            gated,
            {"id": "b", "kind": "action", "config": {"actionType": "webhook"}},
        ],
        [("trigger", "split"), ("split", "a"), ("split", "b")],
    )


async def expire_now(data_store, request_id):
    request = await data_store.get_hitl_request(request_id)
    request.expires_at = datetime.utcnow() - timedelta(minutes=1)
    await data_store.save_hitl_request(request)


# ==================== Pause and Resume ====================


class TestPauseResume:
    """Gated nodes pause the run until answered"""

    @pytest.mark.asyncio
    async def test_gate_before_pauses_and_resumes(self, walker, make_graph, lead_fields, data_store, execution_store):
        """The run waits before the gated node and finishes after the answer"""
        events = []
        walker.subscribe(lambda event, data: events.append(event))

        graph = gated_graph(make_graph)
        paused = await walker.run(graph, {"fields": lead_fields})

        assert paused.status == ExecutionStatus.WAITING_HITL
        assert executed(paused) == ["trigger"]
        assert paused.current_node_id == "review"
        assert events[-1] == "execution_waiting_hitl"

        request = await data_store.get_hitl_request(paused.current_hitl_request_id)
        assert request.status == HITLRequestStatus.PENDING
        assert request.prompt == "Approve Acme?"
        assert request.phase == "before"
        assert request.expires_at > datetime.utcnow()

        stored = await execution_store.get(paused.id)
        assert stored.status == ExecutionStatus.WAITING_HITL
        assert await execution_store.get_snapshot(paused.id) is not None

        finished = await walker.resume(paused.id, "approved")

        assert finished.status == ExecutionStatus.COMPLETED
        assert executed(finished) == ["trigger", "review", "after"]
        review_output = finished.node_executions_for("review")[0].output
        assert review_output["transformedFields"] == {"decision": "approved"}
        assert "execution_resumed" in events
        assert (await data_store.get_hitl_request(request.id)).status == HITLRequestStatus.ANSWERED
        assert await execution_store.get_snapshot(paused.id) is None

    @pytest.mark.asyncio
    async def test_second_answer_rejected(self, walker, make_graph, lead_fields):
        """A request is consumed exactly once"""
        paused = await walker.run(gated_graph(make_graph), {"fields": lead_fields})
        await walker.resume(paused.id, "approved")

        with pytest.raises(HITLAlreadyAnswered):
            await walker.resume(paused.id, "approved again")

    @pytest.mark.asyncio
    async def test_gate_after_holds_children(self, walker, make_graph, lead_fields):
        """An after-gate lets the node complete but holds its children"""
        paused = await walker.run(gated_graph(make_graph, phase="hitlAfter"), {"fields": lead_fields})

        assert paused.status == ExecutionStatus.WAITING_HITL
        assert executed(paused) == ["trigger", "review"]
        assert paused.node_executions_for("review")[0].status == NodeExecutionStatus.COMPLETED

        finished = await walker.resume(paused.id, "looks good", {"reviewer": "sam"})

        assert finished.status == ExecutionStatus.COMPLETED
        assert executed(finished) == ["trigger", "review", "after"]
        assert len(finished.node_executions_for("review")) == 1

    @pytest.mark.asyncio
    async def test_gated_splitter_branch_waits(self, walker, make_graph, lead_fields, data_store):
        """A gated splitter branch waits for its answer while the other branch runs"""
        graph = splitter_graph(make_graph, "hitlBefore")

        paused = await walker.run(graph, {"fields": lead_fields})

        assert paused.status == ExecutionStatus.WAITING_HITL
        assert paused.node_executions_for("a") == []
        assert paused.node_executions_for("b")[0].status == NodeExecutionStatus.COMPLETED
        split_output = paused.node_executions_for("split")[0].output
        assert split_output["success"] is True
        assert split_output["deferredActions"] == 1
        assert split_output["failedActions"] == 0
        request = await data_store.get_hitl_request(paused.current_hitl_request_id)
        assert request.node_id == "a"
        assert request.phase == "before"

        finished = await walker.resume(paused.id, "approved")

        assert finished.status == ExecutionStatus.COMPLETED
        assert len(finished.node_executions_for("a")) == 1
        assert finished.node_executions_for("a")[0].output["transformedFields"] == {"decision": "approved"}
        assert len(finished.node_executions_for("b")) == 1

    @pytest.mark.asyncio
    async def test_after_gated_splitter_branch(self, walker, make_graph, lead_fields):
        """An after-gated splitter branch runs in the main walk and holds there"""
        paused = await walker.run(splitter_graph(make_graph, "hitlAfter"), {"fields": lead_fields})

        assert paused.status == ExecutionStatus.WAITING_HITL
        assert paused.current_node_id == "a"
        assert set(executed(paused)) == {"trigger", "split", "a", "b"}
        assert paused.node_executions_for("a")[0].status == NodeExecutionStatus.COMPLETED

        finished = await walker.resume(paused.id, "fine")

        assert finished.status == ExecutionStatus.COMPLETED
        assert len(finished.node_executions_for("a")) == 1

    @pytest.mark.asyncio
    async def test_resume_from_snapshot_in_new_walker(
        self, walker, make_graph, lead_fields, data_store, execution_store, effects, identity, services, test_settings
    ):
        """Another walker sharing the stores can finish a paused run"""
        paused = await walker.run(gated_graph(make_graph), {"fields": lead_fields})

        other = GraphWalker(
            registry=create_default_registry(),
            execution_store=execution_store,
            hitl_gate=HITLGate(data_store, effects=effects, identity=identity, settings=test_settings),
            services=services,
            settings=test_settings,
        )
        finished = await other.resume(paused.id, "approved")

        assert finished.status == ExecutionStatus.COMPLETED
        assert executed(finished) == ["trigger", "review", "after"]
        assert finished.node_executions_for("review")[0].output["transformedFields"] == {"decision": "approved"}

    @pytest.mark.asyncio
    async def test_resume_requires_waiting_run(self, walker, make_graph):
        """Resuming a run that never paused is an invalid state"""
        execution = await walker.run(make_graph([TRIGGER], []))

        with pytest.raises(InvalidExecutionState):
            await walker.resume(execution.id, "yes")


# ==================== Timeouts ====================


class TestTimeouts:
    """Expired requests apply their timeout action"""

    @pytest.mark.asyncio
    async def test_use_default(self, walker, make_graph, lead_fields, data_store):
        """use_default resumes the run with the configured default value"""
        paused = await walker.run(
            gated_graph(make_graph, timeoutAction="use_default", defaultValue="auto"), {"fields": lead_fields}
        )
        request_id = paused.current_hitl_request_id
        await expire_now(data_store, request_id)

        processed = await walker.process_expired_hitl_requests()

        assert [e.id for e in processed] == [paused.id]
        finished = processed[0]
        assert finished.status == ExecutionStatus.COMPLETED
        assert finished.node_executions_for("review")[0].output["transformedFields"] == {"decision": "auto"}
        request = await data_store.get_hitl_request(request_id)
        assert request.status == HITLRequestStatus.EXPIRED
        assert request.response_value is None

    @pytest.mark.asyncio
    async def test_continue(self, walker, make_graph, lead_fields, data_store):
        """continue resumes the run without a value"""
        paused = await walker.run(gated_graph(make_graph, timeoutAction="continue"), {"fields": lead_fields})
        request_id = paused.current_hitl_request_id
        await expire_now(data_store, request_id)

        [finished] = await walker.process_expired_hitl_requests()

        assert finished.status == ExecutionStatus.COMPLETED
        assert (await data_store.get_hitl_request(request_id)).status == HITLRequestStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_fail_on_late_answer(self, walker, make_graph, lead_fields, data_store, execution_store):
        """An answer after expiry fails the run and raises HITLTimeout"""
        paused = await walker.run(gated_graph(make_graph), {"fields": lead_fields})
        await expire_now(data_store, paused.current_hitl_request_id)

        with pytest.raises(HITLTimeout):
            await walker.resume(paused.id, "too late")

        stored = await execution_store.get(paused.id)
        assert stored.status == ExecutionStatus.FAILED
        assert stored.error_log[-1]["error_code"] == "HITL_001"
        assert stored.error_log[-1]["node_id"] == "review"

    @pytest.mark.asyncio
    async def test_nothing_expired(self, walker, make_graph, lead_fields):
        """Requests within their window are left alone"""
        await walker.run(gated_graph(make_graph), {"fields": lead_fields})

        assert await walker.process_expired_hitl_requests() == []


# ==================== Cancellation and Simulation ====================


class TestPausedRunControl:
    """Cancelling paused runs and skipping gates in simulation"""

    @pytest.mark.asyncio
    async def test_cancel_paused_run(self, walker, make_graph, lead_fields, data_store):
        """Cancelling a paused run finalizes it and expires its request"""
        paused = await walker.run(gated_graph(make_graph), {"fields": lead_fields})
        request_id = paused.current_hitl_request_id

        cancelled = await walker.cancel(paused.id)

        assert cancelled.status == ExecutionStatus.CANCELLED
        assert (await data_store.get_hitl_request(request_id)).status == HITLRequestStatus.EXPIRED
        with pytest.raises(InvalidExecutionState):
            await walker.cancel(paused.id)

    @pytest.mark.asyncio
    async def test_simulation_skips_gates(self, walker, make_graph, lead_fields):
        """Simulation runs skip HITL gates by default"""
        execution = await walker.run(
            gated_graph(make_graph), {"fields": lead_fields}, ExecutionOptions(is_simulation=True)
        )

        assert execution.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_simulation_can_keep_gates(self, walker, make_graph, lead_fields, data_store):
        """skip_hitl_in_simulation=False keeps gates in simulation"""
        execution = await walker.run(
            gated_graph(make_graph),
            {"fields": lead_fields},
            ExecutionOptions(is_simulation=True, skip_hitl_in_simulation=False),
        )

        assert execution.status == ExecutionStatus.WAITING_HITL
        request = await data_store.get_hitl_request(execution.current_hitl_request_id)
        assert request.is_test_mode is True


# ==================== Gate ====================


class TestHITLGate:
    """HITLGate in isolation"""

    @pytest.mark.asyncio
    async def test_slack_channel_notifies(self, hitl_gate, effects, make_graph, make_context, lead_fields):
        """Requests routed to slack dispatch a notification effect"""
        graph = gated_graph(make_graph, channels=["in_app", "slack"], options=["yes", "no"], requestType="choice")
        context = make_context(graph, fields=lead_fields)

        request = await hitl_gate.open_request(graph.get_node("review"), "before", context)

        [effect] = effects.of_type("hitl_notification")
        assert effect["payload"]["request_id"] == request.id
        assert effect["payload"]["options"] == ["yes", "no"]
        assert request.request_type == "choice"

    def test_disabled_gate(self, hitl_gate, make_graph, make_context):
        """A gate with enabled=False never pauses"""
        graph = gated_graph(make_graph)
        graph.get_node("review").hitl_before.enabled = False

        assert hitl_gate.should_gate(graph.get_node("review"), "before", make_context(graph)) is False
        assert hitl_gate.should_gate(graph.get_node("review"), "after", make_context(graph)) is False

    @pytest.mark.asyncio
    async def test_answer_twice(self, hitl_gate, make_graph, make_context, lead_fields):
        """answer() consumes the request once"""
        graph = gated_graph(make_graph)
        request = await hitl_gate.open_request(graph.get_node("review"), "before", make_context(graph, lead_fields))

        answered = await hitl_gate.answer(request.id, "yes")

        assert answered.status == HITLRequestStatus.ANSWERED
        assert answered.response_value == "yes"
        with pytest.raises(HITLAlreadyAnswered):
            await hitl_gate.answer(request.id, "no")
