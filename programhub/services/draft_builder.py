"""Draft tree builder: the in-memory side of the program wizard.

The wizard collects one program, an ordered list of activities and, per
activity, an ordered list of tasks across four stages:

    program → activities → tasks → review

Drafts hold the raw form values (strings as typed by the user) and are
frozen dataclasses holding tuples, so a DraftTree handed to the
orchestrator cannot be mutated by anyone. Every builder edit swaps in a new
snapshot instead of changing the old one.

Nothing here performs I/O.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any

from programhub.core.exceptions import IncompleteDraftError, ValidationError
from programhub.models.program import (
    ACTIVITY_STATUSES,
    DEFAULT_LOCATION,
    FOCUS_AREAS,
    PROGRAM_STATUSES,
    TASK_STATUS_MAX,
    TASK_STATUS_MIN,
)
from programhub.utils.helpers import parse_bool, parse_date, parse_int, parse_number

logger = logging.getLogger(__name__)


class WizardStage(str, Enum):
    PROGRAM = "program"
    ACTIVITIES = "activities"
    TASKS = "tasks"
    REVIEW = "review"


STAGE_ORDER = (
    WizardStage.PROGRAM,
    WizardStage.ACTIVITIES,
    WizardStage.TASKS,
    WizardStage.REVIEW,
)


def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _text_or_none(value) -> str | None:
    if _blank(value):
        return None
    return str(value).strip()


def _known_fields(cls, data: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


# ── Drafts ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TaskDraft:
    name: str = ""
    target: Any = None
    task_timeline: str = ""
    activity_timeline: Any = None
    budget: Any = None
    output: str | None = None
    outcome: str | None = None
    evaluation_criteria: str | None = None
    risks: str | None = None
    mitigation_measures: str | None = None
    resource_person: str | None = None
    learning_and_development: str | None = None
    self_evaluation: str | None = None
    notes: str | None = None
    status: Any = 0

    @classmethod
    def from_dict(cls, data: dict) -> TaskDraft:
        return cls(**_known_fields(cls, data))

    def to_fields(self, activity: ActivityDraft | None = None) -> dict:
        """Typed payload for the gateway; due date falls back to the activity start."""
        due = parse_date(self.activity_timeline)
        if due is None and activity is not None:
            due = parse_date(activity.timeline_start)
        status = parse_int(self.status)
        return {
            "name": str(self.name).strip(),
            "target": parse_number(self.target),
            "task_timeline": _text_or_none(self.task_timeline),
            "activity_timeline": due.isoformat() if due else None,
            "budget": parse_number(self.budget) or 0,
            "output": _text_or_none(self.output),
            "outcome": _text_or_none(self.outcome),
            "evaluation_criteria": _text_or_none(self.evaluation_criteria),
            "risks": _text_or_none(self.risks),
            "mitigation_measures": _text_or_none(self.mitigation_measures),
            "resource_person": _text_or_none(self.resource_person),
            "status": status if status is not None else TASK_STATUS_MIN,
            "learning_and_development": _text_or_none(self.learning_and_development),
            "self_evaluation": _text_or_none(self.self_evaluation),
            "notes": _text_or_none(self.notes),
        }


@dataclass(frozen=True)
class ActivityDraft:
    name: str = ""
    description: str = ""
    outcome: str = ""
    kpi: str = ""
    timeline_start: Any = ""
    timeline_end: Any = ""
    budget_allocated: Any = ""
    status: str = "planned"
    responsible_person: str = ""
    progress: Any = "0"
    challenges: str | None = None
    next_steps: str | None = None
    tasks: tuple[TaskDraft, ...] = ()

    @classmethod
    def from_dict(cls, data: dict) -> ActivityDraft:
        values = _known_fields(cls, data)
        values["tasks"] = tuple(
            t if isinstance(t, TaskDraft) else TaskDraft.from_dict(t)
            for t in data.get("tasks") or ()
        )
        return cls(**values)

    def to_fields(self) -> dict:
        start = parse_date(self.timeline_start)
        end = parse_date(self.timeline_end)
        progress = parse_int(self.progress)
        return {
            "name": str(self.name).strip(),
            "description": str(self.description).strip(),
            "outcome": str(self.outcome).strip(),
            "kpi": str(self.kpi).strip(),
            "timeline_start": start.isoformat() if start else None,
            "timeline_end": end.isoformat() if end else None,
            "budget_allocated": parse_number(self.budget_allocated) or 0,
            "budget_utilized": 0,
            "status": self.status or "planned",
            "responsible_person": _text_or_none(self.responsible_person),
            "progress": progress if progress is not None else 0,
            "challenges": _text_or_none(self.challenges),
            "next_steps": _text_or_none(self.next_steps),
        }


@dataclass(frozen=True)
class ProgramDraft:
    name: str = ""
    description: str = ""
    year: Any = ""
    status: str = "planned"
    budget_total: Any = ""
    public_visible: Any = True
    focus_area: str = ""
    location: str = DEFAULT_LOCATION
    strategic_objective: str = ""
    program_image: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> ProgramDraft:
        return cls(**_known_fields(cls, data))

    def to_fields(self) -> dict:
        return {
            "name": str(self.name).strip(),
            "description": str(self.description).strip(),
            "year": parse_int(self.year),
            "status": self.status,
            "budget_total": parse_number(self.budget_total),
            "public_visible": parse_bool(self.public_visible, default=True),
            "focus_area": self.focus_area,
            "location": _text_or_none(self.location) or DEFAULT_LOCATION,
            "strategic_objective": _text_or_none(self.strategic_objective),
            "program_image": _text_or_none(self.program_image),
        }


@dataclass(frozen=True)
class DraftTree:
    """Immutable snapshot of a whole wizard session."""

    program: ProgramDraft = field(default_factory=ProgramDraft)
    activities: tuple[ActivityDraft, ...] = ()

    @property
    def activity_count(self) -> int:
        return len(self.activities)

    @property
    def task_count(self) -> int:
        return sum(len(a.tasks) for a in self.activities)

    @property
    def counts(self) -> tuple[int, int]:
        return self.activity_count, self.task_count

    @classmethod
    def from_dict(cls, payload: dict) -> DraftTree:
        return cls(
            program=ProgramDraft.from_dict(payload.get("program") or {}),
            activities=tuple(
                ActivityDraft.from_dict(a) for a in payload.get("activities") or ()
            ),
        )


# ── Stage validation ─────────────────────────────────────────────────────────


def _non_negative_problem(value) -> str | None:
    number = parse_number(value)
    if number is None or number < 0:
        return "must be a non-negative number"
    return None


def _program_problem(program: ProgramDraft) -> tuple[str, str] | None:
    for name in ("name", "description"):
        if _blank(getattr(program, name)):
            return f"program.{name}", "required"
    if _blank(program.year):
        return "program.year", "required"
    if parse_int(program.year) is None:
        return "program.year", "must be an integer"
    if _blank(program.status):
        return "program.status", "required"
    if program.status not in PROGRAM_STATUSES:
        return "program.status", f"must be one of {list(PROGRAM_STATUSES)}"
    if _blank(program.budget_total):
        return "program.budget_total", "required"
    if problem := _non_negative_problem(program.budget_total):
        return "program.budget_total", problem
    if _blank(program.focus_area):
        return "program.focus_area", "required"
    if program.focus_area not in FOCUS_AREAS:
        return "program.focus_area", f"must be one of {list(FOCUS_AREAS)}"
    if _blank(program.location):
        return "program.location", "required"
    if parse_bool(program.public_visible, default=True) is None:
        return "program.public_visible", "must be a boolean"
    return None


def _activity_problem(activity: ActivityDraft, prefix: str) -> tuple[str, str] | None:
    for name in ("name", "description", "outcome", "kpi", "timeline_start", "timeline_end"):
        if _blank(getattr(activity, name)):
            return f"{prefix}.{name}", "required"
    start = parse_date(activity.timeline_start)
    if start is None:
        return f"{prefix}.timeline_start", "must be a date"
    end = parse_date(activity.timeline_end)
    if end is None:
        return f"{prefix}.timeline_end", "must be a date"
    if start > end:
        return f"{prefix}.timeline_end", "must not be before timeline_start"
    if _blank(activity.budget_allocated):
        return f"{prefix}.budget_allocated", "required"
    if problem := _non_negative_problem(activity.budget_allocated):
        return f"{prefix}.budget_allocated", problem
    if activity.status and activity.status not in ACTIVITY_STATUSES:
        return f"{prefix}.status", f"must be one of {list(ACTIVITY_STATUSES)}"
    if not _blank(activity.progress):
        progress = parse_int(activity.progress)
        if progress is None or not 0 <= progress <= 100:
            return f"{prefix}.progress", "must be an integer between 0 and 100"
    return None


def _task_problem(task: TaskDraft, prefix: str) -> tuple[str, str] | None:
    if _blank(task.name):
        return f"{prefix}.name", "required"
    if not _blank(task.status):
        status = parse_int(task.status)
        if status is None or not TASK_STATUS_MIN <= status <= TASK_STATUS_MAX:
            return (
                f"{prefix}.status",
                f"must be an integer between {TASK_STATUS_MIN} and {TASK_STATUS_MAX}",
            )
    for name in ("budget", "target"):
        value = getattr(task, name)
        if not _blank(value) and (problem := _non_negative_problem(value)):
            return f"{prefix}.{name}", problem
    if not _blank(task.activity_timeline) and parse_date(task.activity_timeline) is None:
        return f"{prefix}.activity_timeline", "must be a date"
    return None


def first_problem(tree: DraftTree, stage: WizardStage) -> tuple[str, str] | None:
    """Return (field path, reason) for the first issue blocking `stage`, else None.

    The review stage is blocked by anything blocking an earlier stage.
    """
    stage = WizardStage(stage)
    if stage is WizardStage.PROGRAM:
        return _program_problem(tree.program)
    if stage is WizardStage.ACTIVITIES:
        if not tree.activities:
            return "activities", "at least one activity is required"
        for i, activity in enumerate(tree.activities):
            if problem := _activity_problem(activity, f"activities[{i}]"):
                return problem
        return None
    if stage is WizardStage.TASKS:
        for i, activity in enumerate(tree.activities):
            for j, task in enumerate(activity.tasks):
                if problem := _task_problem(task, f"activities[{i}].tasks[{j}]"):
                    return problem
        return None
    for earlier in STAGE_ORDER[:-1]:
        if problem := first_problem(tree, earlier):
            return problem
    return None


# ── Builder ──────────────────────────────────────────────────────────────────


class DraftTreeBuilder:
    """Holds the in-progress draft and gates movement between wizard stages."""

    def __init__(self, tree: DraftTree | None = None, stage: WizardStage = WizardStage.PROGRAM):
        # A new wizard starts with one empty activity card, as the form does
        self._tree = tree if tree is not None else DraftTree(activities=(ActivityDraft(),))
        self.stage = WizardStage(stage)

    @classmethod
    def from_payload(cls, payload: dict) -> DraftTreeBuilder:
        """Build from the JSON body the wizard posts on submit."""
        if not isinstance(payload, dict):
            raise ValidationError("Draft payload must be a JSON object")
        activities = payload.get("activities") or []
        if not isinstance(activities, list) or not all(isinstance(a, dict) for a in activities):
            raise ValidationError("activities must be a list of objects",
                                  details={"activities": "must be a list"})
        for i, activity in enumerate(activities):
            tasks = activity.get("tasks") or []
            if not isinstance(tasks, list) or not all(isinstance(t, dict) for t in tasks):
                raise ValidationError("tasks must be a list of objects",
                                      details={f"activities[{i}].tasks": "must be a list"})
        if not isinstance(payload.get("program") or {}, dict):
            raise ValidationError("program must be an object", details={"program": "must be an object"})
        return cls(DraftTree.from_dict(payload))

    @property
    def snapshot(self) -> DraftTree:
        return self._tree

    # ── Edits (each one swaps in a new snapshot) ─────────────────────────

    def set_program(self, **changes) -> DraftTree:
        self._tree = replace(self._tree, program=replace(self._tree.program, **changes))
        return self._tree

    def _activity(self, index: int) -> ActivityDraft:
        if not 0 <= index < len(self._tree.activities):
            raise IndexError(f"No activity at position {index}")
        return self._tree.activities[index]

    def _replace_activity(self, index: int, activity: ActivityDraft) -> DraftTree:
        activities = list(self._tree.activities)
        activities[index] = activity
        self._tree = replace(self._tree, activities=tuple(activities))
        return self._tree

    def add_activity(self, draft: ActivityDraft | None = None, **fields_) -> int:
        """Append an activity and return its position."""
        draft = draft or ActivityDraft(**fields_)
        self._tree = replace(self._tree, activities=self._tree.activities + (draft,))
        return len(self._tree.activities) - 1

    def update_activity(self, index: int, **changes) -> DraftTree:
        return self._replace_activity(index, replace(self._activity(index), **changes))

    def remove_activity(self, index: int) -> DraftTree:
        """Drop an activity together with its tasks; the last one cannot go."""
        self._activity(index)
        if len(self._tree.activities) == 1:
            raise ValidationError("A program needs at least one activity",
                                  details={"activities": "at least one activity is required"})
        activities = self._tree.activities[:index] + self._tree.activities[index + 1:]
        self._tree = replace(self._tree, activities=activities)
        return self._tree

    def add_task(self, activity_index: int, draft: TaskDraft | None = None, **fields_) -> int:
        """Append a task to an activity and return its position within it.

        A task without a due date defaults to the activity's start date.
        """
        activity = self._activity(activity_index)
        if draft is None:
            fields_.setdefault("activity_timeline", activity.timeline_start or None)
            draft = TaskDraft(**fields_)
        self._replace_activity(activity_index, replace(activity, tasks=activity.tasks + (draft,)))
        return len(activity.tasks)

    def _task_index(self, activity: ActivityDraft, task_index: int) -> None:
        if not 0 <= task_index < len(activity.tasks):
            raise IndexError(f"No task at position {task_index}")

    def update_task(self, activity_index: int, task_index: int, **changes) -> DraftTree:
        activity = self._activity(activity_index)
        self._task_index(activity, task_index)
        tasks = list(activity.tasks)
        tasks[task_index] = replace(tasks[task_index], **changes)
        return self._replace_activity(activity_index, replace(activity, tasks=tuple(tasks)))

    def remove_task(self, activity_index: int, task_index: int) -> DraftTree:
        activity = self._activity(activity_index)
        self._task_index(activity, task_index)
        tasks = activity.tasks[:task_index] + activity.tasks[task_index + 1:]
        return self._replace_activity(activity_index, replace(activity, tasks=tasks))

    # ── Stage gating ─────────────────────────────────────────────────────

    def first_problem(self, stage: WizardStage | None = None) -> tuple[str, str] | None:
        return first_problem(self._tree, stage or self.stage)

    def is_stage_complete(self, stage: WizardStage) -> bool:
        return first_problem(self._tree, stage) is None

    def advance(self) -> WizardStage:
        """Move to the next stage; raises IncompleteDraftError if this one is unfinished."""
        if problem := self.first_problem(self.stage):
            raise IncompleteDraftError(problem[0], problem[1], stage=self.stage.value)
        position = STAGE_ORDER.index(self.stage)
        if position < len(STAGE_ORDER) - 1:
            self.stage = STAGE_ORDER[position + 1]
        return self.stage

    def back(self) -> WizardStage:
        position = STAGE_ORDER.index(self.stage)
        if position > 0:
            self.stage = STAGE_ORDER[position - 1]
        return self.stage

    def finalize(self) -> DraftTree:
        """Return the snapshot to provision, or raise naming the first missing field."""
        for stage in STAGE_ORDER[:-1]:
            if problem := first_problem(self._tree, stage):
                logger.info("Draft not ready: %s %s (stage=%s)", problem[0], problem[1], stage.value)
                raise IncompleteDraftError(problem[0], problem[1], stage=stage.value)
        return self._tree
