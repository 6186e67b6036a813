"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from programhub.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Program", resource_id=42)
    raise ValidationError("Name is required", details={"name": "required"})

Provisioning failures are exceptions that carry the typed payload the caller
needs to decide what to do next (retry, clean up, alert):

    IncompleteDraftError        — draft not finished; no I/O happened
    ProgramCreationFailed       — first gateway call failed; nothing persisted
    PartialProvisioningFailure  — program (and maybe children) persisted, tree incomplete
    HydrationMismatch           — all writes succeeded, verifying read disagrees
    VerificationReadFailed      — all writes succeeded, verifying read itself failed
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Program", "Task").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
                 Keys are field names; values are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class IncompleteDraftError(ValidationError):
    """Raised by the draft builder when a required field is missing or malformed.

    Fully recoverable: the caller supplies the field and tries again.

    Args:
        field: Dotted path of the first offending field, e.g. "activities[1].kpi".
        reason: What is wrong with it ("required", "must be a non-negative number", ...).
        stage: Wizard stage the field belongs to.
    """

    def __init__(self, field: str, reason: str = "required", stage: str | None = None) -> None:
        self.field = field
        self.reason = reason
        self.stage = stage
        super().__init__(
            f"Draft incomplete: {field} {reason}",
            details={field: reason},
        )


# ── Provisioning failures ────────────────────────────────────────────────


class ProvisioningError(Exception):
    """Base class for failures raised by the provisioning orchestrator."""

    def __init__(self, message: str, *, run_id: str | None = None) -> None:
        self.run_id = run_id
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": str(self), "run_id": self.run_id}


class ProgramCreationFailed(ProvisioningError):
    """The program itself could not be created; no state was persisted.

    Safe to re-run once the cause is fixed.
    """

    def __init__(self, cause: Exception, *, run_id: str | None = None) -> None:
        self.cause = cause
        super().__init__(f"Program creation failed: {cause}", run_id=run_id)

    @property
    def retryable(self) -> bool:
        return bool(getattr(self.cause, "retryable", False))

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retryable"] = self.retryable
        return data


class PartialProvisioningFailure(ProvisioningError):
    """A program exists but its tree is incomplete.

    NOT safe to blindly re-run: create calls are not idempotent, so a rerun
    produces a second program. The already-created ids are exposed so an
    operator (or the saga policy) can delete or resume the partial tree.

    Attributes:
        program_id:        Persisted program id.
        activity_ids:      Ids of activities created in this run, in creation order.
        task_ids:          Ids of tasks created in this run, in creation order.
        failed_step:       The step that failed (kind, position, label, cause).
        compensated:       True when the saga policy removed the partial tree.
        orphaned_ids:      (kind, id) pairs the saga could not delete.
    """

    def __init__(
        self,
        *,
        program_id,
        activity_ids: list,
        task_ids: list,
        failed_step,
        compensated: bool = False,
        orphaned_ids: list | None = None,
        run_id: str | None = None,
    ) -> None:
        self.program_id = program_id
        self.activity_ids = list(activity_ids)
        self.task_ids = list(task_ids)
        self.failed_step = failed_step
        self.compensated = compensated
        self.orphaned_ids = list(orphaned_ids or [])
        super().__init__(
            f"Provisioning stopped at {failed_step.describe()}: {failed_step.cause}",
            run_id=run_id,
        )

    @property
    def cause(self) -> Exception:
        return self.failed_step.cause

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "program_id": self.program_id,
            "activity_ids": self.activity_ids,
            "task_ids": self.task_ids,
            "failed_step": self.failed_step.to_dict(),
            "compensated": self.compensated,
            "orphaned_ids": [
                {"kind": kind, "id": entity_id} for kind, entity_id in self.orphaned_ids
            ],
        })
        return data


class HydrationMismatch(ProvisioningError):
    """Every write succeeded but the verifying read returned a different tree.

    This is a data-consistency alarm (lost write or eventually consistent
    backend), not a user input error. Raised when the counts differ, or when
    a record read back points at a parent other than the one it was created
    under (`wrong_parents` lists those records as dotted paths).
    """

    def __init__(
        self,
        *,
        program_id,
        expected_counts: tuple[int, int],
        actual_counts: tuple[int, int],
        wrong_parents: list[str] | None = None,
        run_id: str | None = None,
    ) -> None:
        self.program_id = program_id
        self.expected_counts = expected_counts
        self.actual_counts = actual_counts
        self.wrong_parents = list(wrong_parents or [])
        if tuple(actual_counts) != tuple(expected_counts):
            message = (f"Program {program_id} hydrated with (activities, tasks)={actual_counts}, "
                       f"expected {expected_counts}")
        else:
            message = (f"Program {program_id} hydrated with wrong parent references: "
                       f"{', '.join(self.wrong_parents)}")
        super().__init__(message, run_id=run_id)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "program_id": self.program_id,
            "expected_counts": {
                "activities": self.expected_counts[0],
                "tasks": self.expected_counts[1],
            },
            "actual_counts": {
                "activities": self.actual_counts[0],
                "tasks": self.actual_counts[1],
            },
            "wrong_parents": self.wrong_parents,
        })
        return data


class VerificationReadFailed(ProvisioningError):
    """Every write succeeded but the verifying read could not be performed."""

    def __init__(self, *, program_id, cause: Exception, run_id: str | None = None) -> None:
        self.program_id = program_id
        self.cause = cause
        super().__init__(
            f"Could not re-read program {program_id} after provisioning: {cause}",
            run_id=run_id,
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["program_id"] = self.program_id
        return data
