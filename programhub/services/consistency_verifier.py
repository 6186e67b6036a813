"""Consistency verifier: re-reads a freshly provisioned program.

After every create call reported success, the program is read back once
with its nested activities and tasks. The read, not the write responses, is
what the caller gets: if the backend lost a write or has not caught up yet,
the counts differ and HydrationMismatch is raised instead of returning a
stale or partial tree. The same happens when a record comes back attached
to a parent other than the one it was created under.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from programhub.core.exceptions import HydrationMismatch, VerificationReadFailed
from programhub.integrations.program_gateway import GatewayError, ProgramGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionedTask:
    id: Any
    activity_id: Any
    name: str
    data: dict


@dataclass(frozen=True)
class ProvisionedActivity:
    id: Any
    program_id: Any
    name: str
    data: dict
    tasks: tuple[ProvisionedTask, ...] = ()


@dataclass(frozen=True)
class ProvisionedProgram:
    id: Any
    name: str
    data: dict
    activities: tuple[ProvisionedActivity, ...] = ()
    impact_metrics: dict | None = None


@dataclass(frozen=True)
class ProvisionedTree:
    """The materialised, verified result of one provisioning run."""

    program: ProvisionedProgram
    run_id: str | None = None

    @property
    def activities(self) -> tuple[ProvisionedActivity, ...]:
        return self.program.activities

    @property
    def tasks(self) -> tuple[ProvisionedTask, ...]:
        return tuple(t for a in self.program.activities for t in a.tasks)

    @property
    def counts(self) -> tuple[int, int]:
        return len(self.activities), len(self.tasks)

    @classmethod
    def from_hydrated(cls, data: dict, *, run_id: str | None = None) -> ProvisionedTree:
        """Build from a read_program_with_children() payload.

        Children are nested under their parent in the payload, so a missing
        parent reference is filled from the enclosing record.
        """
        program_id = data.get("id")
        activities = []
        for raw_activity in data.get("activities") or []:
            activity_fields = {k: v for k, v in raw_activity.items() if k != "tasks"}
            activity_id = raw_activity.get("id")
            tasks = tuple(
                ProvisionedTask(
                    id=raw_task.get("id"),
                    activity_id=raw_task.get("activity_id", activity_id),
                    name=raw_task.get("name", ""),
                    data=dict(raw_task),
                )
                for raw_task in raw_activity.get("tasks") or []
            )
            activities.append(ProvisionedActivity(
                id=activity_id,
                program_id=raw_activity.get("program_id", program_id),
                name=raw_activity.get("name", ""),
                data=activity_fields,
                tasks=tasks,
            ))
        program = ProvisionedProgram(
            id=program_id,
            name=data.get("name", ""),
            data={k: v for k, v in data.items() if k not in ("activities", "impact_metrics")},
            activities=tuple(activities),
            impact_metrics=data.get("impact_metrics"),
        )
        return cls(program=program, run_id=run_id)

    def to_dict(self) -> dict:
        result = dict(self.program.data)
        result["activities"] = [
            {**a.data, "tasks": [dict(t.data) for t in a.tasks]}
            for a in self.program.activities
        ]
        if self.program.impact_metrics is not None:
            result["impact_metrics"] = self.program.impact_metrics
        return result


def hydrated_counts(data: dict) -> tuple[int, int]:
    activities = data.get("activities") or []
    return len(activities), sum(len(a.get("tasks") or []) for a in activities)


def _same_id(reported, expected) -> bool:
    # A nested record may omit its parent id; absent means "the enclosing record"
    return reported is None or str(reported) == str(expected)


def wrong_parent_refs(data: dict, program_id) -> list[str]:
    """Dotted paths of hydrated records whose parent id is not their enclosing record's."""
    wrong = []
    if not _same_id(data.get("id"), program_id):
        wrong.append("program")
    for a_index, activity in enumerate(data.get("activities") or []):
        if not _same_id(activity.get("program_id"), program_id):
            wrong.append(f"activities[{a_index}]")
        for t_index, task in enumerate(activity.get("tasks") or []):
            if not _same_id(task.get("activity_id"), activity.get("id")):
                wrong.append(f"activities[{a_index}].tasks[{t_index}]")
    return wrong


class ConsistencyVerifier:
    """Reads a program back and checks it against what was written."""

    def __init__(self, gateway: ProgramGateway) -> None:
        self.gateway = gateway

    def verify(
        self,
        program_id,
        expected_counts: tuple[int, int],
        *,
        run_id: str | None = None,
    ) -> ProvisionedTree:
        """Return the hydrated tree, or raise if the read disagrees with the writes.

        Raises:
            VerificationReadFailed: the read itself failed.
            HydrationMismatch: activity or task counts differ from expected_counts,
                or a record is attached to a parent other than its own.
        """
        try:
            data = self.gateway.read_program_with_children(program_id)
        except GatewayError as exc:
            logger.error("Verification read failed for program %s: %s", program_id, exc,
                         extra={"run_id": run_id, "program_id": program_id})
            raise VerificationReadFailed(program_id=program_id, cause=exc, run_id=run_id) from exc

        actual = hydrated_counts(data)
        if actual != tuple(expected_counts):
            logger.error(
                "Hydration mismatch for program %s: expected %s got %s",
                program_id, tuple(expected_counts), actual,
                extra={"run_id": run_id, "program_id": program_id},
            )
            raise HydrationMismatch(
                program_id=program_id,
                expected_counts=tuple(expected_counts),
                actual_counts=actual,
                run_id=run_id,
            )

        wrong_parents = wrong_parent_refs(data, program_id)
        if wrong_parents:
            logger.error(
                "Hydration mismatch for program %s: wrong parent references at %s",
                program_id, wrong_parents,
                extra={"run_id": run_id, "program_id": program_id},
            )
            raise HydrationMismatch(
                program_id=program_id,
                expected_counts=tuple(expected_counts),
                actual_counts=actual,
                wrong_parents=wrong_parents,
                run_id=run_id,
            )
        return ProvisionedTree.from_hydrated(data, run_id=run_id)
