"""
Tests for the in-process EventBus and the default gate validator.

Verifies:
1. Per-instance sequence numbers and retained history
2. Subscription filtering by instance and kind
3. Failing subscribers do not affect publishers or other subscribers
4. Async streaming replays history then delivers live events
5. key_lookup_validator semantics (outputs before variables, negation)
"""

import asyncio

from ulid import ULID

from phaseflow.runtime.events import EventBus
from phaseflow.runtime.gates import GateRequest, key_lookup_validator
from phaseflow.runtime.types import EventKind, PhaseEvent, PhaseType, WorkflowPhase


def _event(instance_id="wfi-a", kind=EventKind.PHASE_STARTED, index=0):
    return PhaseEvent(instance_id=instance_id, kind=kind, phase_index=index)


# =============================================================================
# EventBus
# =============================================================================


class TestEventBus:
    """Tests for publish/subscribe."""

    def test_sequence_is_per_instance(self):
        bus = EventBus()
        seqs = [bus.publish(_event(i)).seq for i in ("wfi-a", "wfi-a", "wfi-b", "wfi-a")]
        assert seqs == [1, 2, 1, 3]

    def test_event_ids_are_ulids(self):
        bus = EventBus()
        first = bus.publish(_event())
        second = bus.publish(_event())
        assert len(first.event_id) == 26
        assert ULID.from_str(first.event_id).timestamp <= ULID.from_str(second.event_id).timestamp
        assert first.to_dict()["eventId"] == first.event_id

    def test_filters(self):
        bus = EventBus()
        everything, only_a, approvals = [], [], []
        bus.subscribe(everything.append)
        bus.subscribe(only_a.append, instance_id="wfi-a")
        bus.subscribe(approvals.append, kinds=[EventKind.APPROVAL_REQUIRED])

        bus.publish(_event("wfi-a"))
        bus.publish(_event("wfi-b", EventKind.APPROVAL_REQUIRED, 2))

        assert len(everything) == 2
        assert [e.instance_id for e in only_a] == ["wfi-a"]
        assert [(e.instance_id, e.phase_index) for e in approvals] == [("wfi-b", 2)]

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        sub = bus.subscribe(seen.append)
        bus.publish(_event())
        sub.unsubscribe()
        sub.unsubscribe()
        bus.publish(_event())
        assert len(seen) == 1

    def test_failing_subscriber_is_isolated(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("view closed")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        bus.publish(_event())
        assert len(seen) == 1

    def test_history_and_forget(self):
        bus = EventBus(history_size=2)
        for index in range(3):
            bus.publish(_event(index=index))
        assert [e.seq for e in bus.history("wfi-a")] == [2, 3]
        assert [e.seq for e in bus.history("wfi-a", since_seq=2)] == [3]
        bus.forget("wfi-a")
        assert bus.history("wfi-a") == []
        assert bus.publish(_event()).seq == 1


class TestEventStream:
    """Tests for EventBus.stream()."""

    def test_replays_then_follows(self):
        bus = EventBus()
        bus.publish(_event(index=0))
        bus.publish(_event(index=1))

        async def scenario():
            received = []

            async def consume():
                async for event in bus.stream("wfi-a", since_seq=1):
                    received.append(event.seq)
                    if len(received) == 3:
                        break

            task = asyncio.ensure_future(consume())
            await asyncio.sleep(0)
            bus.publish(_event("wfi-b"))
            bus.publish(_event(index=2))
            bus.publish(_event(index=3))
            await asyncio.wait_for(task, 5)
            return received

        assert asyncio.run(scenario()) == [2, 3, 4]


# =============================================================================
# Default gate validator
# =============================================================================


def _gate_request(condition, outputs=None, variables=None):
    phase = WorkflowPhase(index=1, id=1, name="Check", type=PhaseType.GATE, agent="editor")
    return GateRequest(
        instance_id="wfi-a",
        phase=phase,
        condition=condition,
        outputs=outputs or [],
        variables=variables or {},
    )


class TestKeyLookupValidator:
    """Tests for key_lookup_validator()."""

    def test_empty_condition_passes(self):
        assert key_lookup_validator(_gate_request(None)).passed
        assert key_lookup_validator(_gate_request("  ")).passed

    def test_latest_output_wins(self):
        request = _gate_request("approved", outputs=[{"approved": True}, {"approved": False}])
        assert key_lookup_validator(request).passed is False

    def test_falls_back_to_variables(self):
        request = _gate_request("approved", outputs=[{"other": 1}], variables={"approved": "yes"})
        decision = key_lookup_validator(request)
        assert decision.passed
        assert decision.details == {"key": "approved", "value": "yes"}

    def test_negation(self):
        request = _gate_request("!needs_rewrite", outputs=[{"needs_rewrite": False}])
        assert key_lookup_validator(request).passed

    def test_unknown_key_fails(self):
        decision = key_lookup_validator(_gate_request("approved"))
        assert decision.passed is False
        assert "unknown value 'approved'" in decision.reason
