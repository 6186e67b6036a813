"""Standardised API error responses.

Usage
-----
    from programhub.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Program not found")
    return api_error(E.DRAFT_INCOMPLETE, str(exc), details=exc.details)
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • PROVISIONING_ prefix for tree provisioning outcomes
    """

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    DRAFT_INCOMPLETE = "ERR_DRAFT_INCOMPLETE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"

    # Provisioning – HTTP 422 / 502 / 500
    PROGRAM_REJECTED = "PROVISIONING_PROGRAM_REJECTED"
    PROGRAM_CREATION_FAILED = "PROVISIONING_PROGRAM_CREATION_FAILED"
    PARTIAL_FAILURE = "PROVISIONING_PARTIAL_FAILURE"
    HYDRATION_MISMATCH = "PROVISIONING_HYDRATION_MISMATCH"
    VERIFICATION_FAILED = "PROVISIONING_VERIFICATION_FAILED"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.DRAFT_INCOMPLETE: 422,
    E.NOT_FOUND: 404,
    E.DATABASE: 500,
    E.INTERNAL: 500,
    E.PROGRAM_REJECTED: 422,
    E.PROGRAM_CREATION_FAILED: 502,
    E.PARTIAL_FAILURE: 502,
    E.HYDRATION_MISMATCH: 500,
    E.VERIFICATION_FAILED: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (created ids, failed step, counts, ...).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
