"""HabitSync reference service - Entry point.

Serves the /api/habits contract the sync client talks to, plus account
registration and a health probe.
"""

import logging
import os

import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from .core.goals import GoalCatalog, load_goal_catalog
from .shell.api import (
    create_activity,
    current_user_id,
    delete_activity,
    get_auth_client,
    get_repository,
    list_activities,
    update_activity,
)
from .shell.auth import AuthClient, hash_api_key, validate_api_key_format
from .shell.repository import ActivityRepository


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ==================== Route Handlers ====================


async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint, also used by clients as a reachability probe."""
    return JSONResponse({"status": "healthy", "service": "habitsync"})


async def register_user(request: Request) -> JSONResponse:
    """Register a new user and return their API key."""
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "Request body must be JSON"}, status_code=400)

    username = body.get("username") if isinstance(body, dict) else None
    if not isinstance(username, str) or not username.strip():
        return JSONResponse({"error": "Username is required"}, status_code=400)

    try:
        api_key, _ = request.app.state.auth_client.register_user(username.strip())
    except Exception as e:
        logger.error("Registration failed: %s", str(e))
        return JSONResponse({"error": "Registration failed."}, status_code=500)

    return JSONResponse({
        "api_key": api_key,
        "message": "Registration successful! Save your API key - it won't be shown again.",
    })


async def validate_key(request: Request) -> JSONResponse:
    """Validate an API key."""
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"valid": False, "error": "Request body must be JSON"})

    api_key = body.get("api_key") if isinstance(body, dict) else None
    if not api_key:
        return JSONResponse({"valid": False, "error": "API key required"})

    user_id = request.app.state.auth_client.validate_api_key(api_key)
    return JSONResponse({"valid": user_id is not None})


# ==================== Auth Middleware ====================


class AuthMiddleware(BaseHTTPMiddleware):
    """Authenticate /api requests using the API key in the Authorization header."""

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith("/api"):
            return await call_next(request)

        current_user_id.set(None)
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            api_key = auth_header[len("Bearer "):]
            if validate_api_key_format(api_key):
                user_id = hash_api_key(api_key)
                if request.app.state.auth_client.user_exists(user_id):
                    current_user_id.set(user_id)
                    logger.debug("Authenticated user: %s", user_id[:8])

        return await call_next(request)


# ==================== Create ASGI App ====================


def create_app(
    repository: ActivityRepository | None = None,
    auth_client: AuthClient | None = None,
    catalog: GoalCatalog | None = None,
) -> Starlette:
    """Create the Starlette application.

    Args:
        repository: Activity storage (defaults to HABITSYNC_STORAGE selection)
        auth_client: User registry (defaults to one sharing the storage)
        catalog: Goal catalog used to validate writes

    Returns:
        The configured application
    """
    routes = [
        Route("/health", health_check, methods=["GET"]),
        Route("/auth/register", register_user, methods=["POST"]),
        Route("/auth/validate", validate_key, methods=["POST"]),
        Route("/api/habits", list_activities, methods=["GET"]),
        Route("/api/habits", create_activity, methods=["POST"]),
        Route("/api/habits", update_activity, methods=["PUT"]),
        Route("/api/habits", delete_activity, methods=["DELETE"]),
    ]

    app = Starlette(
        routes=routes,
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
                allow_headers=["*"],
            ),
            Middleware(AuthMiddleware),
        ],
    )
    app.state.repository = repository if repository is not None else get_repository()
    app.state.auth_client = auth_client if auth_client is not None else get_auth_client()
    app.state.catalog = catalog if catalog is not None else load_goal_catalog()
    return app


def main() -> None:
    """Run the server."""
    port = int(os.environ.get("PORT", 8080))
    host = os.environ.get("HOST", "0.0.0.0")

    logger.info("Starting HabitSync service on %s:%d", host, port)

    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    main()
