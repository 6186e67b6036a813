"""Program service layer: business logic for programs, activities and tasks.

Transaction policy: every public create/delete commits on its own. There is
deliberately no multi-record transaction here: each call is one record, one
commit, which is the contract the provisioning orchestrator is written
against (see services/provisioning_service.py).

Provides:
- Program / Activity / Task create, get, list, delete
- Server-side normalisation of wizard form values (strings → typed columns)
- Field validation raising ValidationError with field-level details
"""
import logging
from typing import Any

from programhub.core.exceptions import NotFoundError, ValidationError
from programhub.models import db
from programhub.models.program import (
    ACTIVITY_STATUSES,
    DEFAULT_LOCATION,
    FOCUS_AREAS,
    PROGRAM_STATUSES,
    TASK_STATUS_MAX,
    TASK_STATUS_MIN,
    Activity,
    Program,
    Task,
)
from programhub.utils.helpers import parse_bool, parse_date, parse_int, parse_number

logger = logging.getLogger(__name__)

_TASK_TEXT_FIELDS = (
    "output",
    "outcome",
    "evaluation_criteria",
    "risks",
    "mitigation_measures",
    "resource_person",
    "learning_and_development",
    "self_evaluation",
    "notes",
)


def _validate_enum(value: str, allowed, field_name: str) -> str | None:
    """Return error message if value not in allowed set, else None."""
    if value and value not in allowed:
        return f"Invalid {field_name}: '{value}'. Allowed: {sorted(allowed)}"
    return None


def _text(data: dict, key: str) -> str:
    value = data.get(key)
    return str(value).strip() if value is not None else ""


def _optional_text(data: dict, key: str) -> str | None:
    return _text(data, key) or None


def _require_text(data: dict, key: str, errors: dict) -> str:
    value = _text(data, key)
    if not value:
        errors[key] = "required"
    return value


def _non_negative(data: dict, key: str, errors: dict, *, required: bool, default=0):
    raw = data.get(key)
    if raw is None or raw == "":
        if required:
            errors[key] = "required"
        return default
    number = parse_number(raw)
    if number is None or number < 0:
        errors[key] = "must be a non-negative number"
        return default
    return number


def _raise_if(errors: dict, entity: str) -> None:
    if errors:
        raise ValidationError(f"Invalid {entity} data", details=errors)


# ═════════════════════════════════════════════════════════════════════════════
# PROGRAMS
# ═════════════════════════════════════════════════════════════════════════════


def create_program(data: dict[str, Any]) -> Program:
    """Validate and persist a single program row."""
    errors: dict[str, str] = {}
    name = _require_text(data, "name", errors)
    description = _require_text(data, "description", errors)

    year = parse_int(data.get("year"))
    if year is None:
        errors["year"] = "must be an integer"

    status = _text(data, "status") or "planned"
    if err := _validate_enum(status, PROGRAM_STATUSES, "status"):
        errors["status"] = err

    focus_area = _require_text(data, "focus_area", errors)
    if err := _validate_enum(focus_area, FOCUS_AREAS, "focus_area"):
        errors["focus_area"] = err

    budget_total = _non_negative(data, "budget_total", errors, required=True)

    public_visible = parse_bool(data.get("public_visible"), default=True)
    if public_visible is None:
        errors["public_visible"] = "must be a boolean"
    _raise_if(errors, "program")

    program = Program(
        name=name,
        description=description,
        year=year,
        status=status,
        public_visible=public_visible,
        budget_total=budget_total,
        focus_area=focus_area,
        location=_text(data, "location") or DEFAULT_LOCATION,
        strategic_objective=_optional_text(data, "strategic_objective"),
        program_image=_optional_text(data, "program_image"),
    )
    db.session.add(program)
    db.session.commit()
    logger.info("Program created id=%s name=%s", program.id, program.name,
                extra={"program_id": program.id})
    return program


def get_program(program_id: int) -> Program:
    program = db.session.get(Program, program_id)
    if not program:
        raise NotFoundError(resource="Program", resource_id=program_id)
    return program


def list_programs(*, status=None, year=None, focus_area=None) -> list[Program]:
    """Return programs newest first, optionally filtered ("all" means no filter)."""
    q = Program.query
    if status and status != "all":
        q = q.filter(Program.status == status)
    if year and year != "all":
        parsed = parse_int(year)
        if parsed is None:
            raise ValidationError("Invalid year filter", details={"year": "must be an integer"})
        q = q.filter(Program.year == parsed)
    if focus_area and focus_area != "all":
        q = q.filter(Program.focus_area == focus_area)
    return q.order_by(Program.created_at.desc(), Program.id.desc()).all()


def delete_program(program_id: int) -> None:
    """Delete a program; activities and tasks go with it (FK cascade)."""
    program = get_program(program_id)
    db.session.delete(program)
    db.session.commit()
    logger.info("Program deleted id=%s", program_id, extra={"program_id": program_id})


# ═════════════════════════════════════════════════════════════════════════════
# ACTIVITIES
# ═════════════════════════════════════════════════════════════════════════════


def create_activity(data: dict[str, Any]) -> Activity:
    """Validate and persist a single activity under an existing program."""
    program_id = parse_int(data.get("program_id"))
    if program_id is None:
        raise ValidationError("program_id is required", details={"program_id": "required"})
    get_program(program_id)

    errors: dict[str, str] = {}
    name = _require_text(data, "name", errors)

    timeline_start = parse_date(data.get("timeline_start"))
    timeline_end = parse_date(data.get("timeline_end"))
    if data.get("timeline_start") and timeline_start is None:
        errors["timeline_start"] = "must be a date"
    if data.get("timeline_end") and timeline_end is None:
        errors["timeline_end"] = "must be a date"
    if timeline_start and timeline_end and timeline_start > timeline_end:
        errors["timeline_end"] = "must not be before timeline_start"

    status = _text(data, "status") or "planned"
    if err := _validate_enum(status, ACTIVITY_STATUSES, "status"):
        errors["status"] = err

    budget_allocated = _non_negative(data, "budget_allocated", errors, required=True)
    budget_utilized = _non_negative(data, "budget_utilized", errors, required=False)

    progress = 0
    if data.get("progress") not in (None, ""):
        progress = parse_int(data.get("progress"))
        if progress is None or not 0 <= progress <= 100:
            errors["progress"] = "must be an integer between 0 and 100"
            progress = 0
    _raise_if(errors, "activity")

    activity = Activity(
        program_id=program_id,
        name=name,
        description=_text(data, "description"),
        outcome=_text(data, "outcome"),
        kpi=_text(data, "kpi"),
        timeline_start=timeline_start,
        timeline_end=timeline_end,
        budget_allocated=budget_allocated,
        budget_utilized=budget_utilized,
        status=status,
        responsible_person=_optional_text(data, "responsible_person"),
        progress=progress,
        challenges=_optional_text(data, "challenges"),
        next_steps=_optional_text(data, "next_steps"),
    )
    db.session.add(activity)
    db.session.commit()
    logger.info("Activity created id=%s program=%s", activity.id, program_id,
                extra={"program_id": program_id, "activity_id": activity.id})
    return activity


def get_activity(activity_id: int) -> Activity:
    activity = db.session.get(Activity, activity_id)
    if not activity:
        raise NotFoundError(resource="Activity", resource_id=activity_id)
    return activity


def list_activities(*, program_id=None) -> list[Activity]:
    q = Activity.query
    if program_id is not None:
        q = q.filter(Activity.program_id == program_id)
    return q.order_by(Activity.id).all()


def delete_activity(activity_id: int) -> None:
    activity = get_activity(activity_id)
    db.session.delete(activity)
    db.session.commit()
    logger.info("Activity deleted id=%s", activity_id, extra={"activity_id": activity_id})


# ═════════════════════════════════════════════════════════════════════════════
# TASKS
# ═════════════════════════════════════════════════════════════════════════════


def create_task(data: dict[str, Any]) -> Task:
    """Validate and persist a single task under an existing activity."""
    activity_id = parse_int(data.get("activity_id"))
    if activity_id is None:
        raise ValidationError("activity_id is required", details={"activity_id": "required"})
    get_activity(activity_id)

    errors: dict[str, str] = {}
    name = _require_text(data, "name", errors)

    target = None
    if data.get("target") not in (None, ""):
        target = parse_number(data.get("target"))
        if target is None or target < 0:
            errors["target"] = "must be a non-negative number"
            target = None

    budget = _non_negative(data, "budget", errors, required=False)

    status = TASK_STATUS_MIN
    if data.get("status") not in (None, ""):
        status = parse_int(data.get("status"))
        if status is None or not TASK_STATUS_MIN <= status <= TASK_STATUS_MAX:
            errors["status"] = f"must be an integer between {TASK_STATUS_MIN} and {TASK_STATUS_MAX}"
            status = TASK_STATUS_MIN

    due = parse_date(data.get("activity_timeline"))
    if data.get("activity_timeline") and due is None:
        errors["activity_timeline"] = "must be a date"
    _raise_if(errors, "task")

    task = Task(
        activity_id=activity_id,
        name=name,
        target=target,
        task_timeline=_optional_text(data, "task_timeline"),
        activity_timeline=due,
        budget=budget,
        status=status,
        **{key: _optional_text(data, key) for key in _TASK_TEXT_FIELDS},
    )
    db.session.add(task)
    db.session.commit()
    logger.debug("Task created id=%s activity=%s", task.id, activity_id,
                 extra={"activity_id": activity_id})
    return task


def get_task(task_id: int) -> Task:
    task = db.session.get(Task, task_id)
    if not task:
        raise NotFoundError(resource="Task", resource_id=task_id)
    return task


def list_tasks(*, activity_id=None) -> list[Task]:
    q = Task.query
    if activity_id is not None:
        q = q.filter(Task.activity_id == activity_id)
    return q.order_by(Task.id).all()


def delete_task(task_id: int) -> None:
    task = get_task(task_id)
    db.session.delete(task)
    db.session.commit()
    logger.debug("Task deleted id=%s", task_id)
