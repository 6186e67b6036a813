"""
Program persistence gateway.

The provisioning orchestrator never talks to the database or to HTTP
directly; it talks to a ProgramGateway, which exposes independent,
non-transactional create / read / delete calls per entity kind:

    create_program(fields)                 -> program id
    create_activity(program_id, fields)    -> activity id
    create_task(activity_id, fields)       -> task id
    read_program_with_children(program_id) -> program dict with nested activities/tasks
    delete_program / delete_activity / delete_task

There is no batch endpoint and no cross-entity transaction. Every failure is
raised as a GatewayError subclass so callers can tell a rejected input
(retrying is pointless) from an unavailable backend (retrying may help).

Implementations:
  - RestProgramGateway      — remote CRUD API over HTTP (requests)
  - DatabaseProgramGateway  — in-process SQLAlchemy backend, one commit per record

RestProgramGateway mirrors the platform's other outbound gateways:
  - Bearer token auth (optional)
  - Retry: max 2 extra attempts, backoff 1 s → 4 s, for reads and deletes only.
    Creates are sent once: they are not idempotent and a retried POST whose
    first response was lost would duplicate the record.
  - Timeout: 30 s (configurable)
  - Circuit breaker: ≥5 unavailability failures in 60 s → 30 s pause

Testability: pass a mock `session` to RestProgramGateway() in tests instead of
letting it create a real requests.Session internally.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any

import requests
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

logger = logging.getLogger(__name__)

# ── Circuit breaker constants ──────────────────────────────────────────────
_CB_FAILURE_THRESHOLD = 5          # failures within window before opening
_CB_WINDOW_SECONDS = 60            # failure counting window (seconds)
_CB_OPEN_DURATION_SECONDS = 30     # how long circuit stays open

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [1, 4]    # sleep[0] after 1st fail, sleep[1] after 2nd

# ── Default request timeout ────────────────────────────────────────────────
_DEFAULT_TIMEOUT = 30

# Statuses that mean "the backend is struggling", not "your input is wrong"
_UNAVAILABLE_STATUSES = frozenset({408, 429})


# ── Errors ─────────────────────────────────────────────────────────────────


class GatewayError(Exception):
    """Base class for every gateway failure.

    Attributes:
        retryable:   True when repeating the same call may succeed.
        status_code: HTTP status (None for in-process or network-level failures).
        details:     Field-level breakdown when the backend supplied one.
    """

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: dict | None = None,
    ) -> None:
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class GatewayValidationError(GatewayError):
    """The backend rejected the input (4xx, unknown parent, constraint)."""

    retryable = False


class GatewayUnavailableError(GatewayError):
    """Transport or availability failure (5xx, timeout, network, circuit open)."""

    retryable = True


class CircuitOpenError(GatewayUnavailableError):
    """Raised when the circuit breaker is open; callers should back off."""


class GatewayResult:
    """Structured return value of a single RestProgramGateway HTTP exchange.

    Attributes:
        ok:             True if the call succeeded (HTTP 2xx + no exception).
        status_code:    HTTP status code (None if network-level failure).
        data:           Parsed JSON response body (dict or list), else None.
        error:          Human-readable error message or None.
        duration_ms:    Round-trip latency in milliseconds.
    """

    __slots__ = ("ok", "status_code", "data", "error", "duration_ms", "circuit_open")

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        data: dict | list | None,
        error: str | None,
        duration_ms: int,
        circuit_open: bool = False,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.duration_ms = duration_ms
        self.circuit_open = circuit_open

    @property
    def unavailable(self) -> bool:
        """True when the failure is transport/availability rather than rejection."""
        if self.ok:
            return False
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code in _UNAVAILABLE_STATUSES

    def raise_for_error(self, action: str) -> None:
        """Raise the matching GatewayError subclass when the call failed."""
        if self.ok:
            return
        details = None
        if isinstance(self.data, dict):
            details = self.data.get("details")
        message = f"{action} failed: {self.error}"
        if self.circuit_open:
            raise CircuitOpenError(message)
        if self.unavailable:
            raise GatewayUnavailableError(message, status_code=self.status_code, details=details)
        raise GatewayValidationError(message, status_code=self.status_code, details=details)


# ── Interface ──────────────────────────────────────────────────────────────


class ProgramGateway(ABC):
    """Independent per-entity CRUD operations the orchestrator relies on.

    `idempotency_key` is forwarded to backends that can deduplicate replays;
    backends that cannot must still accept and ignore it.
    """

    name = "abstract"

    @abstractmethod
    def create_program(self, fields: dict, *, idempotency_key: str | None = None) -> Any:
        """Persist one program and return its server-assigned id."""

    @abstractmethod
    def create_activity(
        self, program_id: Any, fields: dict, *, idempotency_key: str | None = None,
    ) -> Any:
        """Persist one activity under `program_id` and return its id."""

    @abstractmethod
    def create_task(
        self, activity_id: Any, fields: dict, *, idempotency_key: str | None = None,
    ) -> Any:
        """Persist one task under `activity_id` and return its id."""

    @abstractmethod
    def read_program_with_children(self, program_id: Any) -> dict:
        """Return the program dict with nested `activities[*].tasks`."""

    @abstractmethod
    def delete_program(self, program_id: Any) -> None:
        """Delete one program."""

    @abstractmethod
    def delete_activity(self, activity_id: Any) -> None:
        """Delete one activity."""

    @abstractmethod
    def delete_task(self, task_id: Any) -> None:
        """Delete one task."""


# ── HTTP implementation ────────────────────────────────────────────────────


class RestProgramGateway(ProgramGateway):
    """Gateway to the program CRUD REST API.

    Usage:
        gw = RestProgramGateway("https://dashboard.example.org", token="...")
        program_id = gw.create_program({"name": "Literacy 2025", ...})
    """

    name = "rest"

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: int = _DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        # Inject custom session for testing; create real one lazily otherwise.
        self._session: requests.Session | None = session

        # Circuit breaker: {"failures": [datetime, ...], "open_until": datetime|None}
        self._cb_state: dict = {"failures": [], "open_until": None}
        self._cb_lock = threading.Lock()

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    # ── Circuit breaker ───────────────────────────────────────────────────────

    def _circuit_closed(self) -> bool:
        """Return True if the circuit allows calls; False if open (paused)."""
        now = datetime.now(timezone.utc)
        with self._cb_lock:
            state = self._cb_state
            if state["open_until"] and now < state["open_until"]:
                logger.warning("Program gateway circuit open until %s", state["open_until"])
                return False

            # Prune failures outside the counting window
            window_start = now - timedelta(seconds=_CB_WINDOW_SECONDS)
            state["failures"] = [f for f in state["failures"] if f >= window_start]

            if len(state["failures"]) >= _CB_FAILURE_THRESHOLD:
                state["open_until"] = now + timedelta(seconds=_CB_OPEN_DURATION_SECONDS)
                logger.error(
                    "Program gateway circuit opened: %d failures in %ds window",
                    len(state["failures"]), _CB_WINDOW_SECONDS,
                )
                return False
        return True

    def _record_failure(self) -> None:
        with self._cb_lock:
            self._cb_state["failures"].append(datetime.now(timezone.utc))

    def _record_success(self) -> None:
        """On success, reset failure history and close the circuit."""
        with self._cb_lock:
            self._cb_state["failures"].clear()
            self._cb_state["open_until"] = None

    # ── Core request dispatcher ───────────────────────────────────────────────

    def _headers(self, idempotency_key: str | None) -> dict:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict | None = None,
        params: dict | None = None,
        idempotency_key: str | None = None,
        retry: bool = True,
    ) -> GatewayResult:
        """Execute a request against the CRUD API.

        Implements:
          1. Circuit breaker check: reject immediately if paused.
          2. Execute request; on 2xx → return success result.
          3. On 4xx (except 408/429) → return rejection result, never retried.
          4. On 5xx / 408 / 429 / network error:
             - Record failure for circuit breaker.
             - When `retry` is set, retry up to _RETRY_MAX times with backoff.

        Returns:
            GatewayResult; never raises. Callers check .ok or call
            .raise_for_error().
        """
        if not self._circuit_closed():
            return GatewayResult(
                ok=False,
                status_code=None,
                data=None,
                error="Circuit breaker is open; program backend calls temporarily suspended",
                duration_ms=0,
                circuit_open=True,
            )

        url = f"{self.base_url}{path}"
        attempts = _RETRY_MAX + 1 if retry else 1
        last_error = "Unknown error"
        last_status: int | None = None
        last_data = None
        total_ms = 0

        for attempt in range(attempts):
            kwargs: dict[str, Any] = {
                "headers": self._headers(idempotency_key),
                "timeout": self.timeout,
            }
            if json_body is not None:
                kwargs["json"] = json_body
            if params:
                kwargs["params"] = params

            t0 = time.perf_counter()
            try:
                resp = self.session.request(method, url, **kwargs)
                duration_ms = int((time.perf_counter() - t0) * 1000)
                total_ms += duration_ms
                last_status = resp.status_code
                try:
                    last_data = resp.json() if resp.content else {}
                except ValueError:
                    last_data = None

                if resp.ok:
                    self._record_success()
                    return GatewayResult(
                        ok=True,
                        status_code=resp.status_code,
                        data=last_data if last_data is not None else {},
                        error=None,
                        duration_ms=total_ms,
                    )

                if isinstance(last_data, dict) and last_data.get("error"):
                    last_error = f"HTTP {resp.status_code}: {last_data['error']}"
                else:
                    last_error = f"HTTP {resp.status_code}: {resp.text[:500]}"

                result = GatewayResult(
                    ok=False, status_code=resp.status_code, data=last_data,
                    error=last_error, duration_ms=total_ms,
                )
                if not result.unavailable:
                    logger.info("Program backend rejected %s %s status=%d",
                                method, path, resp.status_code)
                    return result

                self._record_failure()
                logger.warning(
                    "Program backend request failed attempt=%d/%d status=%d %s %s",
                    attempt + 1, attempts, resp.status_code, method, path,
                )

            except requests.Timeout:
                total_ms += int(self.timeout * 1000)
                last_status = None
                last_data = None
                last_error = f"Request timed out after {self.timeout}s"
                self._record_failure()
                logger.warning(
                    "Program backend request timed out attempt=%d/%d %s %s",
                    attempt + 1, attempts, method, path,
                )

            except requests.RequestException as exc:
                last_status = None
                last_data = None
                last_error = str(exc)[:500]
                self._record_failure()
                logger.warning(
                    "Program backend network error attempt=%d/%d %s %s error=%s",
                    attempt + 1, attempts, method, path, last_error,
                )

            # Sleep before retry (except after last attempt)
            if attempt < attempts - 1:
                sleep_s = _RETRY_BACKOFF_SECONDS[min(attempt, len(_RETRY_BACKOFF_SECONDS) - 1)]
                logger.info("Retrying %s %s in %ss (attempt %d)", method, path, sleep_s, attempt + 2)
                time.sleep(sleep_s)

        return GatewayResult(
            ok=False,
            status_code=last_status,
            data=last_data,
            error=last_error,
            duration_ms=total_ms,
        )

    def _created_id(self, result: GatewayResult, action: str) -> Any:
        result.raise_for_error(action)
        data = result.data if isinstance(result.data, dict) else {}
        if data.get("id") is None:
            # 2xx without an id: the write may or may not have happened
            raise GatewayUnavailableError(
                f"{action} returned no id", status_code=result.status_code,
            )
        return data["id"]

    # ── Entity operations ─────────────────────────────────────────────────────

    def create_program(self, fields: dict, *, idempotency_key: str | None = None) -> Any:
        result = self.request(
            "POST", "/api/v1/programs",
            json_body=fields, idempotency_key=idempotency_key, retry=False,
        )
        return self._created_id(result, "Create program")

    def create_activity(
        self, program_id: Any, fields: dict, *, idempotency_key: str | None = None,
    ) -> Any:
        result = self.request(
            "POST", "/api/v1/activities",
            json_body={**fields, "program_id": program_id},
            idempotency_key=idempotency_key, retry=False,
        )
        return self._created_id(result, "Create activity")

    def create_task(
        self, activity_id: Any, fields: dict, *, idempotency_key: str | None = None,
    ) -> Any:
        result = self.request(
            "POST", "/api/v1/tasks",
            json_body={**fields, "activity_id": activity_id},
            idempotency_key=idempotency_key, retry=False,
        )
        return self._created_id(result, "Create task")

    def read_program_with_children(self, program_id: Any) -> dict:
        result = self.request("GET", f"/api/v1/programs/{program_id}")
        result.raise_for_error("Read program")
        if not isinstance(result.data, dict):
            raise GatewayUnavailableError("Read program returned a non-object body",
                                          status_code=result.status_code)
        return result.data

    def delete_program(self, program_id: Any) -> None:
        self.request("DELETE", f"/api/v1/programs/{program_id}").raise_for_error("Delete program")

    def delete_activity(self, activity_id: Any) -> None:
        self.request("DELETE", f"/api/v1/activities/{activity_id}").raise_for_error("Delete activity")

    def delete_task(self, task_id: Any) -> None:
        self.request("DELETE", f"/api/v1/tasks/{task_id}").raise_for_error("Delete task")


# ── In-process implementation ──────────────────────────────────────────────


class DatabaseProgramGateway(ProgramGateway):
    """Gateway backed by the local SQLAlchemy service layer.

    Each call is its own transaction (program_service commits per record),
    so the orchestrator sees exactly the same non-transactional contract as
    with the remote API. Must be used inside a Flask app context.
    """

    name = "database"

    def _call(self, action: str, fn, *args):
        from programhub.core.exceptions import NotFoundError, ValidationError
        from programhub.models import db

        try:
            return fn(*args)
        except (ValidationError, NotFoundError) as exc:
            db.session.rollback()
            raise GatewayValidationError(
                f"{action} failed: {exc}",
                status_code=404 if isinstance(exc, NotFoundError) else 422,
                details=getattr(exc, "details", None),
            ) from exc
        except IntegrityError as exc:
            db.session.rollback()
            raise GatewayValidationError(f"{action} failed: constraint violation",
                                         status_code=409) from exc
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception("%s failed with a database error", action)
            raise GatewayUnavailableError(f"{action} failed: database error") from exc

    def create_program(self, fields: dict, *, idempotency_key: str | None = None) -> Any:
        from programhub.services import program_service

        return self._call("Create program", program_service.create_program, fields).id

    def create_activity(
        self, program_id: Any, fields: dict, *, idempotency_key: str | None = None,
    ) -> Any:
        from programhub.services import program_service

        payload = {**fields, "program_id": program_id}
        return self._call("Create activity", program_service.create_activity, payload).id

    def create_task(
        self, activity_id: Any, fields: dict, *, idempotency_key: str | None = None,
    ) -> Any:
        from programhub.services import program_service

        payload = {**fields, "activity_id": activity_id}
        return self._call("Create task", program_service.create_task, payload).id

    def read_program_with_children(self, program_id: Any) -> dict:
        from programhub.services import program_service

        program = self._call("Read program", program_service.get_program, program_id)
        return program.to_dict(include_children=True)

    def delete_program(self, program_id: Any) -> None:
        from programhub.services import program_service

        self._call("Delete program", program_service.delete_program, program_id)

    def delete_activity(self, activity_id: Any) -> None:
        from programhub.services import program_service

        self._call("Delete activity", program_service.delete_activity, activity_id)

    def delete_task(self, task_id: Any) -> None:
        from programhub.services import program_service

        self._call("Delete task", program_service.delete_task, task_id)


def build_program_gateway(config) -> ProgramGateway:
    """Return the gateway selected by PROGRAM_GATEWAY in the given config mapping."""
    kind = (config.get("PROGRAM_GATEWAY") or "database").lower()
    if kind == "database":
        return DatabaseProgramGateway()
    if kind == "rest":
        return RestProgramGateway(
            config.get("PROGRAM_GATEWAY_URL") or "",
            token=config.get("PROGRAM_GATEWAY_TOKEN"),
            timeout=int(config.get("PROGRAM_GATEWAY_TIMEOUT") or _DEFAULT_TIMEOUT),
        )
    raise ValueError(f"Unknown PROGRAM_GATEWAY: {kind!r} (expected 'database' or 'rest')")
