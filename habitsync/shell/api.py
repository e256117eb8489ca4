"""HTTP handlers for the /api/habits contract.

Every response body is a JSON object carrying `success`; failures add an
`error` message. The authenticated user comes from the auth middleware
through a context variable.
"""

import logging
import os
from contextvars import ContextVar
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse

from ..core.errors import ValidationError
from ..core.goals import GoalCatalog
from .auth import AuthClient
from .firestore_client import ActivityFirestoreClient, FirestoreConfig
from .repository import ActivityPayload, ActivityRepository, ConflictError, InMemoryActivityRepository, RepositoryError


logger = logging.getLogger(__name__)

# Context variable to store current user_id per request
current_user_id: ContextVar[str | None] = ContextVar("current_user_id", default=None)

# Lazy-initialized backends
_repository: ActivityRepository | None = None
_auth_client: AuthClient | None = None


def get_repository() -> ActivityRepository:
    """Get or create the activity repository selected by HABITSYNC_STORAGE."""
    global _repository
    if _repository is None:
        storage = os.environ.get("HABITSYNC_STORAGE", "memory")
        if storage == "firestore":
            _repository = ActivityFirestoreClient(FirestoreConfig.from_env())
        else:
            _repository = InMemoryActivityRepository()
        logger.info("Using %s activity storage", storage)
    return _repository


def get_auth_client() -> AuthClient:
    """Get or create Auth client, sharing Firestore with the repository."""
    global _auth_client
    if _auth_client is None:
        repository = get_repository()
        if isinstance(repository, ActivityFirestoreClient):
            _auth_client = AuthClient(repository.client)
        else:
            _auth_client = AuthClient()
    return _auth_client


# ==================== Helpers ====================


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


def _user_id() -> str | None:
    return current_user_id.get()


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _parse_activity(body: dict[str, Any], catalog: GoalCatalog) -> ActivityPayload:
    raw = body.get("activity")
    if not isinstance(raw, dict):
        raise ValidationError("Missing activity object")
    try:
        activity = ActivityPayload(**raw)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid activity: {e.errors()[0]['msg']}") from e
    catalog.require(activity.goal)
    return activity


def _record_id(body: dict[str, Any]) -> str:
    record_id = body.get("id")
    if isinstance(record_id, int):
        record_id = str(record_id)
    if not isinstance(record_id, str) or not record_id:
        raise ValidationError("Missing activity id")
    return record_id


def _state(request: Request) -> tuple[ActivityRepository, GoalCatalog]:
    return request.app.state.repository, request.app.state.catalog


# ==================== Route Handlers ====================


async def list_activities(request: Request) -> JSONResponse:
    """GET /api/habits - every record of the user, in both shapes."""
    user_id = _user_id()
    if user_id is None:
        return _error("Authentication required", 401)
    repository, _ = _state(request)
    try:
        records = repository.list_records(user_id)
    except RepositoryError as e:
        logger.error("Listing activities failed: %s", str(e))
        return _error("Failed to load activities", 500)
    return JSONResponse({"success": True, "activities": records})


async def create_activity(request: Request) -> JSONResponse:
    """POST /api/habits - store a new event-shape record."""
    user_id = _user_id()
    if user_id is None:
        return _error("Authentication required", 401)
    repository, catalog = _state(request)
    try:
        activity = _parse_activity(await _json_body(request), catalog)
        if activity.amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        record = repository.create_event(user_id, activity)
    except ValidationError as e:
        return _error(str(e), 400)
    except RepositoryError as e:
        logger.error("Creating activity failed: %s", str(e))
        return _error("Failed to save activity", 500)
    return JSONResponse({"success": True, "activity": record}, status_code=201)


async def update_activity(request: Request) -> JSONResponse:
    """PUT /api/habits - edit an event record or one slot of an aggregate row."""
    user_id = _user_id()
    if user_id is None:
        return _error("Authentication required", 401)
    repository, catalog = _state(request)
    try:
        body = await _json_body(request)
        record_id = _record_id(body)
        activity = _parse_activity(body, catalog)
        record = repository.update_record(user_id, record_id, activity)
    except ValidationError as e:
        return _error(str(e), 400)
    except ConflictError as e:
        return _error(str(e), 409)
    except RepositoryError as e:
        logger.error("Updating activity failed: %s", str(e))
        return _error("Failed to update activity", 500)
    if record is None:
        return _error("Activity not found", 404)
    return JSONResponse({"success": True, "activity": record})


async def delete_activity(request: Request) -> JSONResponse:
    """DELETE /api/habits - remove a record."""
    user_id = _user_id()
    if user_id is None:
        return _error("Authentication required", 401)
    repository, _ = _state(request)
    try:
        record_id = _record_id(await _json_body(request))
        deleted = repository.delete_record(user_id, record_id)
    except ValidationError as e:
        return _error(str(e), 400)
    except RepositoryError as e:
        logger.error("Deleting activity failed: %s", str(e))
        return _error("Failed to delete activity", 500)
    if not deleted:
        return _error("Activity not found", 404)
    return JSONResponse({"success": True, "id": record_id})
