"""Provisioning service: turns a finished program wizard draft into records.

Flow:
    DraftTreeBuilder.finalize() → ProvisioningOrchestrator.provision(draft)
        → program / activity / task creates through a ProgramGateway
        → ConsistencyVerifier re-read → ProvisionedTree

Failure contract (all raised, never swallowed):
    ProgramCreationFailed       first call failed, nothing persisted, safe to re-run
    PartialProvisioningFailure  program exists, tree incomplete; NOT safe to re-run
                                (creates are not idempotent; a rerun makes a second
                                program) unless the saga policy compensated it
    HydrationMismatch           writes succeeded, read-back counts differ
    VerificationReadFailed      writes succeeded, read-back failed

Every run gets a run_id; each create carries the idempotency key
"<run_id>:<entity path>". Passing the same run_id again lets a deduplicating
backend recognise replays; the bundled backends do not deduplicate.
"""

from __future__ import annotations

import logging
import uuid

from flask import current_app, g

from programhub.core.exceptions import PartialProvisioningFailure, ProgramCreationFailed
from programhub.integrations.program_gateway import ProgramGateway, build_program_gateway
from programhub.services.consistency_verifier import ConsistencyVerifier, ProvisionedTree
from programhub.services.draft_builder import DraftTree, DraftTreeBuilder
from programhub.services.tree_provisioner import CompensationPolicy, EntityKind, TreeProvisioner

logger = logging.getLogger(__name__)


def program_hierarchy(gateway: ProgramGateway) -> list[EntityKind]:
    """Program → Activity → Task levels wired to a gateway."""
    return [
        EntityKind(
            name="program",
            create=lambda _parent, fields, key: gateway.create_program(fields, idempotency_key=key),
            fields=lambda tree, _parent: tree.program.to_fields(),
            children=lambda tree: tree.activities,
            delete=gateway.delete_program,
            label=lambda tree: tree.program.name,
        ),
        EntityKind(
            name="activity",
            collection="activities",
            create=lambda program_id, fields, key: gateway.create_activity(
                program_id, fields, idempotency_key=key),
            fields=lambda activity, _tree: activity.to_fields(),
            children=lambda activity: activity.tasks,
            delete=gateway.delete_activity,
        ),
        EntityKind(
            name="task",
            collection="tasks",
            create=lambda activity_id, fields, key: gateway.create_task(
                activity_id, fields, idempotency_key=key),
            fields=lambda task, activity: task.to_fields(activity),
            delete=gateway.delete_task,
        ),
    ]


class ProvisioningOrchestrator:
    """Creates a whole program tree against a non-transactional gateway."""

    def __init__(
        self,
        gateway: ProgramGateway,
        *,
        compensation: CompensationPolicy | str = CompensationPolicy.NONE,
        max_workers: int = 1,
        context_factory=None,
    ) -> None:
        self.gateway = gateway
        self.provisioner = TreeProvisioner(
            program_hierarchy(gateway),
            compensation=compensation,
            max_workers=max_workers,
            context_factory=context_factory,
        )
        self.verifier = ConsistencyVerifier(gateway)

    def provision(self, draft: DraftTree, *, run_id: str | None = None) -> ProvisionedTree:
        """Materialise `draft` and return the verified tree.

        Args:
            draft:  Finalized, immutable draft (see DraftTreeBuilder.finalize).
            run_id: Optional caller-chosen run id (used in idempotency keys and logs).
        """
        if not isinstance(draft, DraftTree):
            raise TypeError("provision() expects a finalized DraftTree")

        outcome = self.provisioner.run(draft, run_id=run_id)
        run_id = outcome.run_id

        if outcome.root is None:
            step = outcome.failed_step
            logger.warning("Program creation failed: %s", step.cause,
                           extra={"run_id": run_id, "gateway": self.gateway.name})
            raise ProgramCreationFailed(step.cause, run_id=run_id)

        program_id = outcome.root.entity_id
        if not outcome.ok:
            failure = PartialProvisioningFailure(
                program_id=program_id,
                activity_ids=outcome.ids_of("activity"),
                task_ids=outcome.ids_of("task"),
                failed_step=outcome.failed_step,
                compensated=outcome.compensated,
                orphaned_ids=outcome.orphaned,
                run_id=run_id,
            )
            logger.error("Partial provisioning failure: %s (compensated=%s)",
                         failure, outcome.compensated,
                         extra={"run_id": run_id, "program_id": program_id,
                                "gateway": self.gateway.name})
            raise failure

        tree = self.verifier.verify(program_id, draft.counts, run_id=run_id)
        logger.info("Provisioned program %s with %d activities and %d tasks",
                    program_id, *tree.counts,
                    extra={"run_id": run_id, "program_id": program_id,
                           "gateway": self.gateway.name})
        return tree


# ── Flask entry points ───────────────────────────────────────────────────────


def build_orchestrator(app=None, gateway: ProgramGateway | None = None) -> ProvisioningOrchestrator:
    """Orchestrator configured from the app config (PROGRAM_GATEWAY, PROVISIONING_*)."""
    app = app or current_app._get_current_object()
    max_workers = int(app.config.get("PROVISIONING_MAX_WORKERS") or 1)
    return ProvisioningOrchestrator(
        gateway or build_program_gateway(app.config),
        compensation=app.config.get("PROVISIONING_COMPENSATION") or CompensationPolicy.NONE,
        max_workers=max_workers,
        # Worker threads need their own app context for the database gateway
        context_factory=app.app_context if max_workers > 1 else None,
    )


def provision_from_payload(payload: dict, *, run_id: str | None = None) -> ProvisionedTree:
    """Validate a wizard submission and provision it.

    Raises:
        ValidationError / IncompleteDraftError before any write.
        ProvisioningError subclasses once writes have started.
    """
    draft = DraftTreeBuilder.from_payload(payload).finalize()
    orchestrator = build_orchestrator()
    run_id = run_id or uuid.uuid4().hex
    g.provisioning_run_id = run_id
    return orchestrator.provision(draft, run_id=run_id)


def validate_payload(payload: dict) -> dict:
    """Per-stage completeness of a wizard payload (no writes)."""
    builder = DraftTreeBuilder.from_payload(payload)
    stages = {}
    for stage in ("program", "activities", "tasks", "review"):
        stages[stage] = builder.is_stage_complete(stage)
    problem = builder.first_problem("review")
    return {
        "stages": stages,
        "complete": problem is None,
        "first_missing": (
            {"field": problem[0], "reason": problem[1]} if problem else None
        ),
        "counts": dict(zip(("activities", "tasks"), builder.snapshot.counts)),
    }
