"""Ordered tree provisioning over a non-transactional backend.

Creates a draft hierarchy (root → children → grandchildren ...) one record
at a time, feeding each parent's server id into its children. The
hierarchy shape is described by a list of EntityKind levels, so the same
engine serves the program wizard (program → activity → task) and any other
parent/child wizard.

Guarantees:
  - A parent is always created before any of its children.
  - Siblings are created in draft order when running sequentially.
  - The first failure stops all further creates (in parallel mode: branches
    that have not started are cancelled, running ones stop at their next
    step). Below the root, any exception from a create counts as a failure,
    not only gateway errors.
  - The caller-owned draft objects are only read.

Compensation policies:
  none: leave whatever was created in place and report it
  saga: delete everything created in this run, newest first

Parallel mode (max_workers > 1) runs the root's child branches on a thread
pool once the root id exists. Because several branches may have written by
the time a failure is seen, it is only allowed together with the saga
policy.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Sequence

from programhub.integrations.program_gateway import GatewayError

logger = logging.getLogger(__name__)


class CompensationPolicy(str, Enum):
    NONE = "none"
    SAGA = "saga"


@dataclass(frozen=True)
class EntityKind:
    """Operations for one level of the hierarchy.

    Attributes:
        name:        Entity name used in logs and failure reports ("activity").
        collection:  Key of this level in draft paths ("activities"); unused for the root.
        create:      (parent_id, fields, idempotency_key) -> new id. parent_id is None for the root.
        fields:      (draft, parent_draft) -> payload dict for `create`.
        children:    draft -> ordered child drafts (next level).
        delete:      id -> None; required for saga compensation.
        label:       draft -> human-readable name for reports.
    """

    name: str
    create: Callable[[Any, dict, str], Any]
    fields: Callable[[Any, Any], dict]
    collection: str = ""
    children: Callable[[Any], Sequence] = lambda draft: ()
    delete: Callable[[Any], None] | None = None
    label: Callable[[Any], str] = lambda draft: str(getattr(draft, "name", "") or "")


@dataclass
class CreatedNode:
    kind: str
    entity_id: Any
    path: tuple[int, ...]
    label: str
    children: list[CreatedNode] = field(default_factory=list)


@dataclass(frozen=True)
class FailedStep:
    """Where a run stopped.

    `ordinal` is the 1-based position of the entity among all entities of
    its kind in draft order (the third task of the tree is task #3).
    """

    kind: str
    path: tuple[int, ...]
    path_label: str
    ordinal: int
    label: str
    cause: Exception
    parent_kind: str | None = None
    parent_label: str | None = None

    def describe(self) -> str:
        text = f"{self.kind} #{self.ordinal} '{self.label}'"
        if self.parent_kind:
            text += f" of {self.parent_kind} '{self.parent_label}'"
        return text

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "ordinal": self.ordinal,
            "path": self.path_label,
            "label": self.label,
            "parent_kind": self.parent_kind,
            "parent_label": self.parent_label,
            "error": str(self.cause),
            "retryable": bool(getattr(self.cause, "retryable", False)),
            "status_code": getattr(self.cause, "status_code", None),
        }


@dataclass
class ProvisionOutcome:
    run_id: str
    root: CreatedNode | None = None
    created: list[CreatedNode] = field(default_factory=list)
    failures: list[FailedStep] = field(default_factory=list)
    compensated: bool = False
    orphaned: list[tuple[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def failed_step(self) -> FailedStep | None:
        return self.failures[0] if self.failures else None

    def ids_of(self, kind: str) -> list:
        return [node.entity_id for node in self.created if node.kind == kind]


class _StepFailed(Exception):
    def __init__(self, step: FailedStep) -> None:
        self.step = step
        super().__init__(step.describe())


class _Run:
    """Mutable bookkeeping for a single provisioning run."""

    def __init__(self, run_id: str, ordinals: dict) -> None:
        self.outcome = ProvisionOutcome(run_id=run_id)
        self.ordinals = ordinals
        self.stop = threading.Event()
        self.lock = threading.Lock()

    def record(self, node: CreatedNode, parent: CreatedNode | None) -> None:
        with self.lock:
            self.outcome.created.append(node)
            if parent is not None:
                parent.children.append(node)

    def fail(self, step: FailedStep) -> None:
        with self.lock:
            self.outcome.failures.append(step)
        self.stop.set()


class TreeProvisioner:
    """Materialises a draft tree through per-level create operations."""

    def __init__(
        self,
        levels: Sequence[EntityKind],
        *,
        compensation: CompensationPolicy | str = CompensationPolicy.NONE,
        max_workers: int = 1,
        context_factory: Callable[[], Any] | None = None,
    ) -> None:
        if not levels:
            raise ValueError("At least one entity level is required")
        self.levels = tuple(levels)
        self.compensation = CompensationPolicy(compensation)
        self.max_workers = max(1, int(max_workers))
        self.context_factory = context_factory or nullcontext
        if self.max_workers > 1 and self.compensation is not CompensationPolicy.SAGA:
            raise ValueError("Parallel provisioning requires the saga compensation policy")
        if self.compensation is CompensationPolicy.SAGA:
            missing = [level.name for level in self.levels if level.delete is None]
            if missing:
                raise ValueError(f"Saga compensation needs delete operations for: {missing}")

    # ── Draft inspection ─────────────────────────────────────────────────

    def _path_label(self, path: tuple[int, ...]) -> str:
        if not path:
            return self.levels[0].name
        return ".".join(
            f"{self.levels[depth + 1].collection or self.levels[depth + 1].name}[{index}]"
            for depth, index in enumerate(path)
        )

    def _ordinals(self, root_draft) -> dict[tuple[int, ...], int]:
        """Number every draft node 1..n within its level, in draft (pre-)order."""
        counters = [0] * len(self.levels)
        ordinals: dict[tuple[int, ...], int] = {}

        def walk(draft, path, depth):
            counters[depth] += 1
            ordinals[path] = counters[depth]
            if depth + 1 < len(self.levels):
                for index, child in enumerate(self.levels[depth].children(draft)):
                    walk(child, path + (index,), depth + 1)

        walk(root_draft, (), 0)
        return ordinals

    # ── Creation ─────────────────────────────────────────────────────────

    def _create(self, run: _Run, draft, parent_draft, parent: CreatedNode | None, path) -> CreatedNode:
        depth = len(path)
        kind = self.levels[depth]
        label = kind.label(draft)
        path_label = self._path_label(path)
        key = f"{run.outcome.run_id}:{path_label}"
        try:
            entity_id = kind.create(
                parent.entity_id if parent else None,
                kind.fields(draft, parent_draft),
                key,
            )
        except Exception as exc:
            if not isinstance(exc, GatewayError):
                # Nothing exists yet when the root fails, so there is nothing to report or undo
                if parent is None:
                    raise
                logger.exception(
                    "Unexpected error in provisioning step %s %s", kind.name, path_label,
                    extra={"run_id": run.outcome.run_id, "entity_kind": kind.name},
                )
            else:
                logger.warning(
                    "Provisioning step failed: %s %s: %s", kind.name, path_label, exc,
                    extra={"run_id": run.outcome.run_id, "entity_kind": kind.name},
                )
            raise _StepFailed(FailedStep(
                kind=kind.name,
                path=path,
                path_label=path_label,
                ordinal=run.ordinals.get(path, 0),
                label=label,
                cause=exc,
                parent_kind=self.levels[depth - 1].name if parent else None,
                parent_label=parent.label if parent else None,
            )) from exc

        node = CreatedNode(kind=kind.name, entity_id=entity_id, path=path, label=label)
        run.record(node, parent)
        logger.debug("Created %s id=%s at %s", kind.name, entity_id, path_label,
                     extra={"run_id": run.outcome.run_id, "entity_kind": kind.name})
        return node

    def _build_subtree(self, run: _Run, draft, parent_draft, parent: CreatedNode, path) -> None:
        """Create `draft` and everything below it depth-first, in draft order."""
        if run.stop.is_set():
            return
        node = self._create(run, draft, parent_draft, parent, path)
        depth = len(path)
        if depth + 1 >= len(self.levels):
            return
        for index, child in enumerate(self.levels[depth].children(draft)):
            if run.stop.is_set():
                return
            self._build_subtree(run, child, draft, node, path + (index,))

    def _run_branch(self, run: _Run, draft, parent_draft, parent: CreatedNode, path) -> None:
        with self.context_factory():
            try:
                self._build_subtree(run, draft, parent_draft, parent, path)
            except _StepFailed as exc:
                run.fail(exc.step)

    def _build_children_parallel(self, run: _Run, root_draft, root: CreatedNode) -> None:
        branches = list(self.levels[0].children(root_draft))
        with ThreadPoolExecutor(max_workers=self.max_workers,
                                thread_name_prefix="provision") as pool:
            # A branch that starts after the stop flag is set returns without writing
            futures = [
                pool.submit(self._run_branch, run, child, root_draft, root, (index,))
                for index, child in enumerate(branches)
            ]
            for future in futures:
                future.result()
        root.children.sort(key=lambda node: node.path)
        run.outcome.failures.sort(key=lambda step: step.path)

    def run(self, root_draft, *, run_id: str | None = None) -> ProvisionOutcome:
        """Create the whole tree and return the outcome.

        Only a non-gateway error from the root create propagates; every
        other failure is recorded in the outcome.
        """
        run = _Run(run_id or uuid.uuid4().hex, self._ordinals(root_draft))
        extra = {"run_id": run.outcome.run_id}
        logger.info("Provisioning run started: %d %s level(s), workers=%d, compensation=%s",
                    len(self.levels), self.levels[0].name, self.max_workers,
                    self.compensation.value, extra=extra)

        try:
            root = self._create(run, root_draft, None, None, ())
        except _StepFailed as exc:
            run.fail(exc.step)
            return run.outcome
        run.outcome.root = root

        if len(self.levels) > 1:
            if self.max_workers > 1:
                self._build_children_parallel(run, root_draft, root)
            else:
                for index, child in enumerate(self.levels[0].children(root_draft)):
                    try:
                        self._build_subtree(run, child, root_draft, root, (index,))
                    except _StepFailed as exc:
                        run.fail(exc.step)
                        break

        if run.outcome.failures and self.compensation is CompensationPolicy.SAGA:
            self._compensate(run)

        if run.outcome.ok:
            logger.info("Provisioning run finished: %d record(s) created",
                        len(run.outcome.created), extra=extra)
        return run.outcome

    # ── Compensation ─────────────────────────────────────────────────────

    def _compensate(self, run: _Run) -> None:
        """Delete every record created in this run, newest first."""
        outcome = run.outcome
        by_name = {level.name: level for level in self.levels}
        for node in reversed(outcome.created):
            try:
                by_name[node.kind].delete(node.entity_id)
            except Exception as exc:
                logger.error(
                    "Compensation could not delete %s id=%s: %s", node.kind, node.entity_id, exc,
                    extra={"run_id": outcome.run_id, "entity_kind": node.kind},
                )
                outcome.orphaned.append((node.kind, node.entity_id))
        outcome.compensated = True
        logger.warning("Compensated provisioning run: %d deleted, %d orphaned",
                       len(outcome.created) - len(outcome.orphaned), len(outcome.orphaned),
                       extra={"run_id": outcome.run_id})
