"""
Program Blueprint — CRUD API for programs, activities and tasks.

Each POST creates exactly one record and commits it; these are the same
per-entity operations the provisioning orchestrator drives through
RestProgramGateway when the dashboard talks to a remote instance.

Endpoints:
    Programs:
        GET    /api/v1/programs                 — List with children + metrics (?status=&year=&focus_area=)
        POST   /api/v1/programs                 — Create
        GET    /api/v1/programs/<id>            — Detail (+ activities, tasks, impact metrics)
        DELETE /api/v1/programs/<id>            — Delete (cascades)

    Activities:
        GET    /api/v1/activities               — List (?program_id=)
        POST   /api/v1/activities               — Create (body carries program_id)
        GET    /api/v1/activities/<id>          — Detail (+ tasks)
        DELETE /api/v1/activities/<id>          — Delete (cascades)

    Tasks:
        GET    /api/v1/tasks                    — List (?activity_id=)
        POST   /api/v1/tasks                    — Create (body carries activity_id)
        GET    /api/v1/tasks/<id>               — Detail
        DELETE /api/v1/tasks/<id>               — Delete
"""

import logging

from flask import Blueprint, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from programhub.core.exceptions import NotFoundError, ValidationError
from programhub.models import db
from programhub.services import program_service
from programhub.utils.errors import E, api_error

logger = logging.getLogger(__name__)

program_bp = Blueprint("program", __name__, url_prefix="/api/v1")


# ── Error handlers ───────────────────────────────────────────────────────────


@program_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, f"{error.resource} not found")


@program_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@program_bp.errorhandler(SQLAlchemyError)
def _handle_database(error: SQLAlchemyError):
    db.session.rollback()
    logger.exception("Database error in program_bp endpoint=%s", request.endpoint)
    return api_error(E.DATABASE, "Database error")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _int_arg(name: str):
    raw = request.args.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"Invalid {name} filter", details={name: "must be an integer"})


# ═════════════════════════════════════════════════════════════════════════════
# PROGRAMS
# ═════════════════════════════════════════════════════════════════════════════


@program_bp.route("/programs", methods=["GET"])
def list_programs():
    programs = program_service.list_programs(
        status=request.args.get("status"),
        year=request.args.get("year"),
        focus_area=request.args.get("focus_area"),
    )
    return jsonify([p.to_dict(include_children=True) for p in programs]), 200


@program_bp.route("/programs", methods=["POST"])
def create_program():
    program = program_service.create_program(_json_body())
    return jsonify(program.to_dict()), 201


@program_bp.route("/programs/<int:program_id>", methods=["GET"])
def get_program(program_id):
    program = program_service.get_program(program_id)
    return jsonify(program.to_dict(include_children=True)), 200


@program_bp.route("/programs/<int:program_id>", methods=["DELETE"])
def delete_program(program_id):
    program_service.delete_program(program_id)
    return jsonify({"message": "Program deleted", "id": program_id}), 200


# ═════════════════════════════════════════════════════════════════════════════
# ACTIVITIES
# ═════════════════════════════════════════════════════════════════════════════


@program_bp.route("/activities", methods=["GET"])
def list_activities():
    activities = program_service.list_activities(program_id=_int_arg("program_id"))
    return jsonify([a.to_dict() for a in activities]), 200


@program_bp.route("/activities", methods=["POST"])
def create_activity():
    activity = program_service.create_activity(_json_body())
    return jsonify(activity.to_dict()), 201


@program_bp.route("/activities/<int:activity_id>", methods=["GET"])
def get_activity(activity_id):
    activity = program_service.get_activity(activity_id)
    return jsonify(activity.to_dict(include_children=True)), 200


@program_bp.route("/activities/<int:activity_id>", methods=["DELETE"])
def delete_activity(activity_id):
    program_service.delete_activity(activity_id)
    return jsonify({"message": "Activity deleted", "id": activity_id}), 200


# ═════════════════════════════════════════════════════════════════════════════
# TASKS
# ═════════════════════════════════════════════════════════════════════════════


@program_bp.route("/tasks", methods=["GET"])
def list_tasks():
    tasks = program_service.list_tasks(activity_id=_int_arg("activity_id"))
    return jsonify([t.to_dict() for t in tasks]), 200


@program_bp.route("/tasks", methods=["POST"])
def create_task():
    task = program_service.create_task(_json_body())
    return jsonify(task.to_dict()), 201


@program_bp.route("/tasks/<int:task_id>", methods=["GET"])
def get_task(task_id):
    return jsonify(program_service.get_task(task_id).to_dict()), 200


@program_bp.route("/tasks/<int:task_id>", methods=["DELETE"])
def delete_task(task_id):
    program_service.delete_task(task_id)
    return jsonify({"message": "Task deleted", "id": task_id}), 200
