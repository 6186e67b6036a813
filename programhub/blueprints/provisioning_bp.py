"""
Provisioning Blueprint — submit a finished program wizard in one request.

Endpoints:
    POST /api/v1/provisioning/programs          — Provision program + activities + tasks
    POST /api/v1/provisioning/drafts/validate   — Per-stage completeness, no writes

Body (both endpoints):
    {
        "program":    {name, description, year, status, budget_total, focus_area, ...},
        "activities": [{name, ..., "tasks": [{name, ...}, ...]}, ...]
    }

Outcome → HTTP:
    verified tree                   201
    draft incomplete                422  ERR_DRAFT_INCOMPLETE
    program rejected by backend     422  PROVISIONING_PROGRAM_REJECTED
    program creation failed         502  PROVISIONING_PROGRAM_CREATION_FAILED
    partial tree                    502  PROVISIONING_PARTIAL_FAILURE
    read-back counts differ         500  PROVISIONING_HYDRATION_MISMATCH
    read-back failed                500  PROVISIONING_VERIFICATION_FAILED

An optional X-Request-ID header (or "run_id" in the body) is used as the
provisioning run id so a client can correlate retries.
"""

import logging

from flask import Blueprint, jsonify, request

from programhub.core.exceptions import (
    HydrationMismatch,
    IncompleteDraftError,
    PartialProvisioningFailure,
    ProgramCreationFailed,
    ValidationError,
    VerificationReadFailed,
)
from programhub.services.provisioning_service import provision_from_payload, validate_payload
from programhub.utils.errors import E, api_error

logger = logging.getLogger(__name__)

provisioning_bp = Blueprint("provisioning", __name__, url_prefix="/api/v1/provisioning")


# ── Error handlers ───────────────────────────────────────────────────────────


@provisioning_bp.errorhandler(IncompleteDraftError)
def _handle_incomplete(error: IncompleteDraftError):
    return api_error(
        E.DRAFT_INCOMPLETE, str(error),
        details={"field": error.field, "reason": error.reason, "stage": error.stage},
    )


@provisioning_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@provisioning_bp.errorhandler(ProgramCreationFailed)
def _handle_program_failed(error: ProgramCreationFailed):
    if error.retryable:
        return api_error(E.PROGRAM_CREATION_FAILED, str(error), details=error.to_dict())
    details = error.to_dict()
    if cause_details := getattr(error.cause, "details", None):
        details["fields"] = cause_details
    return api_error(E.PROGRAM_REJECTED, str(error), details=details)


@provisioning_bp.errorhandler(PartialProvisioningFailure)
def _handle_partial(error: PartialProvisioningFailure):
    return api_error(E.PARTIAL_FAILURE, str(error), details=error.to_dict())


@provisioning_bp.errorhandler(HydrationMismatch)
def _handle_mismatch(error: HydrationMismatch):
    return api_error(E.HYDRATION_MISMATCH, str(error), details=error.to_dict())


@provisioning_bp.errorhandler(VerificationReadFailed)
def _handle_read_failed(error: VerificationReadFailed):
    return api_error(E.VERIFICATION_FAILED, str(error), details=error.to_dict())


def _payload() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ── Routes ───────────────────────────────────────────────────────────────────


@provisioning_bp.route("/programs", methods=["POST"])
def provision_program():
    """Provision a program with its activities and tasks, then return the re-read tree."""
    data = _payload()
    run_id = data.get("run_id") or request.headers.get("X-Request-ID")
    tree = provision_from_payload(data, run_id=run_id)
    body = tree.to_dict()
    body["run_id"] = tree.run_id
    return jsonify(body), 201


@provisioning_bp.route("/drafts/validate", methods=["POST"])
def validate_draft():
    return jsonify(validate_payload(_payload())), 200
