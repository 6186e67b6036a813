"""Tests for programhub.services.provisioning_service.

Test strategy
-------------
Most tests drive ProvisioningOrchestrator against `FakeGateway`, an
in-memory ProgramGateway with failure injection (fail the Nth create of a
kind, lose a write on read-back, fail the read). A final group runs the
whole flow against DatabaseProgramGateway inside the test app context.

Coverage
--------
    - Literacy 2025 happy path: 1 program, 2 activities, 3 tasks, verified
    - failure of the 3rd task names it and its activity, first 2 tasks exist
    - failure of the k-th activity reports k-1 created activities
    - program creation failure persists nothing; rerun yields one program
    - rerun after a partial failure duplicates the program
    - hydration mismatch and failed verification read
    - saga compensation removes the partial tree
"""

import pytest

from programhub.core.exceptions import (
    HydrationMismatch,
    IncompleteDraftError,
    PartialProvisioningFailure,
    ProgramCreationFailed,
    VerificationReadFailed,
)
from programhub.integrations.program_gateway import (
    DatabaseProgramGateway,
    GatewayUnavailableError,
    GatewayValidationError,
)
from programhub.models.program import Activity, Program, Task
from programhub.services.draft_builder import DraftTreeBuilder
from programhub.services.provisioning_service import (
    ProvisioningOrchestrator,
    build_orchestrator,
    provision_from_payload,
    validate_payload,
)

from fakes import FakeGateway


def _draft(payload):
    return DraftTreeBuilder.from_payload(payload).finalize()


def _outreach_first(payload):
    """Outreach (2 tasks) followed by Training (1 task)."""
    training, outreach = payload["activities"]
    outreach["tasks"] = [
        {"name": "Map households", "target": "500"},
        {"name": "Enrol learners", "target": "500"},
    ]
    training["tasks"] = [{"name": "Certify facilitators", "target": "40"}]
    payload["activities"] = [outreach, training]
    return payload


class TestHappyPath:
    def test_outreach_first_tree_has_consistent_parents(self, wizard_payload):
        gateway = FakeGateway()
        tree = ProvisioningOrchestrator(gateway).provision(_draft(_outreach_first(wizard_payload)))

        assert tree.counts == (2, 3)
        outreach, training = tree.activities
        assert [t.name for t in outreach.tasks] == ["Map households", "Enrol learners"]
        assert [t.name for t in training.tasks] == ["Certify facilitators"]
        assert all(t.activity_id == outreach.id for t in outreach.tasks)
        assert training.tasks[0].activity_id == training.id

    def test_literacy_program_is_created_and_verified(self, wizard_payload):
        """Given the Literacy 2025 draft (2 activities, 3 tasks),
        provisioning returns a tree with 1 program, 2 activities, 3 tasks."""
        gateway = FakeGateway()
        tree = ProvisioningOrchestrator(gateway).provision(_draft(wizard_payload), run_id="r1")

        assert tree.program.name == "Literacy 2025"
        assert tree.counts == (2, 3)
        assert [a.name for a in tree.activities] == ["Training", "Outreach"]
        assert all(t.activity_id == tree.activities[0].id for t in tree.tasks)
        assert all(a.program_id == tree.program.id for a in tree.activities)
        assert tree.run_id == "r1"

    def test_typed_fields_reach_the_gateway(self, wizard_payload):
        gateway = FakeGateway()
        ProvisioningOrchestrator(gateway).provision(_draft(wizard_payload))

        program = next(iter(gateway.programs.values()))
        assert program["year"] == 2025
        assert program["budget_total"] == 500000
        activity = next(iter(gateway.activities.values()))
        assert activity["timeline_start"] == "2025-01-15"
        assert activity["budget_utilized"] == 0
        first_task, second_task = list(gateway.tasks.values())[:2]
        # No due date given → activity start
        assert first_task["activity_timeline"] == "2025-01-15"
        assert second_task["activity_timeline"] == "2025-02-10"

    def test_every_create_carries_a_run_scoped_key(self, wizard_payload):
        gateway = FakeGateway()
        ProvisioningOrchestrator(gateway).provision(_draft(wizard_payload), run_id="abc")

        assert gateway.idempotency_keys[:3] == [
            "abc:program",
            "abc:activities[0]",
            "abc:activities[0].tasks[0]",
        ]
        assert len(set(gateway.idempotency_keys)) == 6

    def test_rejects_unfinalized_input(self, wizard_payload):
        with pytest.raises(TypeError):
            ProvisioningOrchestrator(FakeGateway()).provision(wizard_payload)


class TestPartialFailure:
    def test_third_task_failure_names_task_and_activity(self, wizard_payload):
        gateway = FakeGateway(fail_at={"task": 3})

        with pytest.raises(PartialProvisioningFailure) as exc_info:
            ProvisioningOrchestrator(gateway).provision(_draft(wizard_payload))

        failure = exc_info.value
        assert failure.failed_step.describe() == (
            "task #3 'Certify facilitators' of activity 'Training'"
        )
        assert "task #3" in str(failure)
        assert len(failure.task_ids) == 2
        assert len(failure.activity_ids) == 1
        # First two tasks really exist, nothing after the failure was attempted
        assert sorted(gateway.tasks) == sorted(failure.task_ids)
        assert gateway.create_counts["activity"] == 1
        assert failure.program_id in gateway.programs
        assert failure.compensated is False
        assert failure.failed_step.to_dict()["retryable"] is True

    def test_third_task_in_second_activity(self, wizard_payload):
        """Outreach (2 tasks) then Training (1 task); the 3rd task call fails."""
        gateway = FakeGateway(fail_at={"task": 3})

        with pytest.raises(PartialProvisioningFailure) as exc_info:
            ProvisioningOrchestrator(gateway).provision(_draft(_outreach_first(wizard_payload)))

        failure = exc_info.value
        assert failure.program_id in gateway.programs
        assert len(failure.activity_ids) == 2
        assert sorted(gateway.activities) == sorted(failure.activity_ids)
        assert [t["name"] for t in gateway.tasks.values()] == ["Map households", "Enrol learners"]
        assert failure.failed_step.describe() == (
            "task #3 'Certify facilitators' of activity 'Training'"
        )
        assert failure.failed_step.path_label == "activities[1].tasks[0]"

    def test_unexpected_gateway_crash_is_reported_with_created_ids(self, wizard_payload):
        gateway = FakeGateway(fail_at={"task": 2}, error=RuntimeError("serializer exploded"))

        with pytest.raises(PartialProvisioningFailure) as exc_info:
            ProvisioningOrchestrator(gateway).provision(_draft(wizard_payload))

        failure = exc_info.value
        assert isinstance(failure.cause, RuntimeError)
        assert len(failure.task_ids) == 1
        assert failure.failed_step.to_dict()["retryable"] is False

    @pytest.mark.parametrize("k", [1, 2])
    def test_kth_activity_failure_reports_previous_activities(self, wizard_payload, k):
        gateway = FakeGateway(fail_at={"activity": k})

        with pytest.raises(PartialProvisioningFailure) as exc_info:
            ProvisioningOrchestrator(gateway).provision(_draft(wizard_payload))

        failure = exc_info.value
        assert len(failure.activity_ids) == k - 1
        assert failure.failed_step.kind == "activity"
        assert failure.failed_step.ordinal == k
        assert failure.failed_step.parent_label == "Literacy 2025"

    def test_rerun_after_partial_failure_duplicates_program(self, wizard_payload):
        """Creates are not idempotent: without compensation a rerun makes a second program."""
        gateway = FakeGateway(fail_at={"task": 2})
        orchestrator = ProvisioningOrchestrator(gateway)
        draft = _draft(wizard_payload)

        with pytest.raises(PartialProvisioningFailure):
            orchestrator.provision(draft)
        orchestrator.provision(draft)

        names = [p["name"] for p in gateway.programs.values()]
        assert names == ["Literacy 2025", "Literacy 2025"]

    def test_to_dict_exposes_created_ids(self, wizard_payload):
        gateway = FakeGateway(fail_at={"task": 2})
        with pytest.raises(PartialProvisioningFailure) as exc_info:
            ProvisioningOrchestrator(gateway).provision(_draft(wizard_payload), run_id="r9")

        body = exc_info.value.to_dict()
        assert body["run_id"] == "r9"
        assert body["failed_step"]["kind"] == "task"
        assert body["failed_step"]["ordinal"] == 2
        assert body["failed_step"]["path"] == "activities[0].tasks[1]"
        assert len(body["task_ids"]) == 1


class TestProgramCreationFailure:
    def test_nothing_persisted(self, wizard_payload):
        gateway = FakeGateway(fail_at={"program": 1})

        with pytest.raises(ProgramCreationFailed) as exc_info:
            ProvisioningOrchestrator(gateway).provision(_draft(wizard_payload))

        assert exc_info.value.retryable is True
        assert gateway.programs == {}
        assert gateway.create_counts["activity"] == 0

    def test_rejected_program_is_not_retryable(self, wizard_payload):
        gateway = FakeGateway(
            fail_at={"program": 1},
            error=GatewayValidationError("name taken", status_code=409),
        )
        with pytest.raises(ProgramCreationFailed) as exc_info:
            ProvisioningOrchestrator(gateway).provision(_draft(wizard_payload))
        assert exc_info.value.retryable is False

    def test_rerun_after_program_failure_creates_exactly_one(self, wizard_payload):
        gateway = FakeGateway(fail_at={"program": 1})
        orchestrator = ProvisioningOrchestrator(gateway)
        draft = _draft(wizard_payload)

        with pytest.raises(ProgramCreationFailed):
            orchestrator.provision(draft)
        tree = orchestrator.provision(draft)

        assert len(gateway.programs) == 1
        assert tree.counts == (2, 3)


class TestVerification:
    def test_lost_write_raises_hydration_mismatch(self, wizard_payload):
        gateway = FakeGateway(drop_tasks_on_read=1)

        with pytest.raises(HydrationMismatch) as exc_info:
            ProvisioningOrchestrator(gateway).provision(_draft(wizard_payload))

        assert exc_info.value.expected_counts == (2, 3)
        assert exc_info.value.actual_counts == (2, 2)

    def test_activity_under_foreign_program_raises_hydration_mismatch(self, wizard_payload):
        def reparent(data):
            data["activities"] = [{**a, "program_id": 999} for a in data["activities"]]
            return data

        gateway = FakeGateway(rewrite_read=reparent)

        with pytest.raises(HydrationMismatch) as exc_info:
            ProvisioningOrchestrator(gateway).provision(_draft(wizard_payload))

        mismatch = exc_info.value
        assert mismatch.actual_counts == mismatch.expected_counts == (2, 3)
        assert mismatch.wrong_parents == ["activities[0]", "activities[1]"]
        assert "wrong parent references" in str(mismatch)

    def test_task_under_foreign_activity_raises_hydration_mismatch(self, wizard_payload):
        def swap_task_parent(data):
            first = data["activities"][0]
            first["tasks"] = [
                {**t, "activity_id": data["activities"][1]["id"]} if i == 1 else t
                for i, t in enumerate(first["tasks"])
            ]
            return data

        gateway = FakeGateway(rewrite_read=swap_task_parent)

        with pytest.raises(HydrationMismatch) as exc_info:
            ProvisioningOrchestrator(gateway).provision(_draft(wizard_payload))

        assert exc_info.value.wrong_parents == ["activities[0].tasks[1]"]
        assert exc_info.value.to_dict()["wrong_parents"] == ["activities[0].tasks[1]"]

    def test_failed_read_raises_verification_error(self, wizard_payload):
        gateway = FakeGateway(read_error=GatewayUnavailableError("timeout"))

        with pytest.raises(VerificationReadFailed) as exc_info:
            ProvisioningOrchestrator(gateway).provision(_draft(wizard_payload))

        assert exc_info.value.program_id in gateway.programs


class TestSagaCompensation:
    def test_partial_tree_is_removed(self, wizard_payload):
        gateway = FakeGateway(fail_at={"task": 3})

        with pytest.raises(PartialProvisioningFailure) as exc_info:
            ProvisioningOrchestrator(gateway, compensation="saga").provision(_draft(wizard_payload))

        assert exc_info.value.compensated is True
        assert exc_info.value.orphaned_ids == []
        assert gateway.programs == {} and gateway.activities == {} and gateway.tasks == {}
        assert [kind for kind, _ in gateway.deleted] == ["task", "task", "activity", "program"]

    def test_unexpected_crash_is_compensated(self, wizard_payload):
        gateway = FakeGateway(fail_at={"task": 3}, error=RuntimeError("serializer exploded"))

        with pytest.raises(PartialProvisioningFailure) as exc_info:
            ProvisioningOrchestrator(gateway, compensation="saga").provision(_draft(wizard_payload))

        assert exc_info.value.compensated is True
        assert gateway.programs == {} and gateway.activities == {} and gateway.tasks == {}

    def test_rerun_after_compensation_yields_single_program(self, wizard_payload):
        gateway = FakeGateway(fail_at={"activity": 2})
        orchestrator = ProvisioningOrchestrator(gateway, compensation="saga")
        draft = _draft(wizard_payload)

        with pytest.raises(PartialProvisioningFailure):
            orchestrator.provision(draft)
        orchestrator.provision(draft)

        assert len(gateway.programs) == 1

    def test_parallel_mode_provisions_full_tree(self, wizard_payload):
        gateway = FakeGateway()
        tree = ProvisioningOrchestrator(
            gateway, compensation="saga", max_workers=2,
        ).provision(_draft(wizard_payload))

        assert tree.counts == (2, 3)
        assert sorted(a.name for a in tree.activities) == ["Outreach", "Training"]


# ── Database gateway end to end ──────────────────────────────────────────────


class TestDatabaseProvisioning:
    def test_provision_from_payload_persists_tree(self, wizard_payload):
        tree = provision_from_payload(wizard_payload, run_id="db-run")

        assert tree.counts == (2, 3)
        assert Program.query.count() == 1
        assert Activity.query.count() == 2
        assert Task.query.count() == 3
        assert tree.program.impact_metrics["activities_completed"] == 0

    def test_incomplete_payload_writes_nothing(self, wizard_payload):
        wizard_payload["activities"][1]["kpi"] = ""

        with pytest.raises(IncompleteDraftError) as exc_info:
            provision_from_payload(wizard_payload)

        assert exc_info.value.field == "activities[1].kpi"
        assert Program.query.count() == 0

    def test_database_rejection_mid_tree_leaves_partial_program(self, wizard_payload, monkeypatch):
        from programhub.services import program_service

        real_create_task = program_service.create_task
        calls = {"n": 0}

        def flaky_create_task(data):
            calls["n"] += 1
            if calls["n"] == 3:
                raise program_service.ValidationError("Invalid task data", details={"name": "x"})
            return real_create_task(data)

        monkeypatch.setattr(program_service, "create_task", flaky_create_task)

        with pytest.raises(PartialProvisioningFailure) as exc_info:
            ProvisioningOrchestrator(DatabaseProgramGateway()).provision(_draft(wizard_payload))

        assert exc_info.value.failed_step.to_dict()["status_code"] == 422
        assert Program.query.count() == 1
        assert Task.query.count() == 2

    def test_database_saga_removes_partial_program(self, app, wizard_payload, monkeypatch):
        from programhub.services import program_service

        def failing_create_activity(data):
            raise program_service.ValidationError("Invalid activity data")

        monkeypatch.setattr(program_service, "create_activity", failing_create_activity)
        app.config["PROVISIONING_COMPENSATION"] = "saga"
        try:
            with pytest.raises(PartialProvisioningFailure) as exc_info:
                build_orchestrator(app).provision(_draft(wizard_payload))
        finally:
            app.config["PROVISIONING_COMPENSATION"] = "none"

        assert exc_info.value.compensated is True
        assert Program.query.count() == 0


class TestValidatePayload:
    def test_reports_stage_completeness(self, wizard_payload):
        wizard_payload["activities"][0]["tasks"][1]["status"] = "42"
        result = validate_payload(wizard_payload)

        assert result["stages"] == {
            "program": True, "activities": True, "tasks": False, "review": False,
        }
        assert result["complete"] is False
        assert result["first_missing"]["field"] == "activities[0].tasks[1].status"
        assert result["counts"] == {"activities": 2, "tasks": 3}

    def test_complete_payload(self, wizard_payload):
        result = validate_payload(wizard_payload)
        assert result["complete"] is True
        assert result["first_missing"] is None
