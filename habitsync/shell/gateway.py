"""Remote Gateway - create/read/update/delete against the authoritative store.

Every call carries the session's bearer credential. Failures surface as
TransportError; retry policy belongs to the sync engine, not here.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any

import httpx

from ..core.adapter import (
    WireRequest,
    decode_record,
    decode_records,
    decode_response_event,
    plan_create,
    plan_delete,
    plan_update,
)
from ..core.errors import MalformedRecordError, MissingCredentialError, NotFoundError, TransportError
from ..core.goals import GoalCatalog
from ..core.models import ActivityEvent
from .session import Session


logger = logging.getLogger(__name__)


@dataclass
class GatewayConfig:
    """Configuration for the remote gateway.

    Attributes:
        api_url: Activities endpoint
        health_url: Endpoint probed by is_reachable (derived from api_url when None)
        timeout: Per-request transport timeout in seconds
    """

    api_url: str = "http://localhost:8080/api/habits"
    health_url: str | None = None
    timeout: float = 10.0

    @property
    def resolved_health_url(self) -> str:
        if self.health_url:
            return self.health_url
        return str(httpx.URL(self.api_url).join("/health"))

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        return cls(
            api_url=os.environ.get("HABITSYNC_API_URL", "http://localhost:8080/api/habits"),
            health_url=os.environ.get("HABITSYNC_HEALTH_URL") or None,
            timeout=float(os.environ.get("HABITSYNC_HTTP_TIMEOUT", "10")),
        )


class RemoteGateway:
    """HTTP client for the /api/habits contract.

    Wire shapes never leave this class: responses are decoded through the
    representation adapter into ActivityEvents.
    """

    def __init__(
        self,
        session: Session,
        catalog: GoalCatalog,
        config: GatewayConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            session: Supplies the bearer credential
            catalog: Goal catalog for decoding aggregate rows
            config: Gateway configuration
            client: Pre-built HTTP client (tests inject an ASGI transport)
        """
        self.config = config or GatewayConfig()
        self._session = session
        self._catalog = catalog
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy initialization of the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ==================== Transport ====================

    def _headers(self) -> dict[str, str]:
        credential = self._session.current_credential()
        if not credential:
            raise MissingCredentialError("No session credential. Sign in before syncing.")
        return {"Authorization": f"Bearer {credential}", "Content-Type": "application/json"}

    async def _send(self, method: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        headers = self._headers()
        try:
            response = await self.client.request(method, self.config.api_url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {self.config.api_url} failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code == 404:
            error = payload.get("error") if isinstance(payload, dict) else None
            raise NotFoundError(error or "Activity not found")
        if payload is None:
            raise TransportError(
                f"{method} returned a non-JSON body (HTTP {response.status_code})",
                response.status_code,
            )
        if not isinstance(payload, dict):
            raise TransportError(f"{method} returned a non-object body", response.status_code)

        if not response.is_success or not payload.get("success"):
            error = payload.get("error") or f"HTTP {response.status_code}"
            raise TransportError(f"{method} failed: {error}", response.status_code)
        return payload

    async def _execute(self, request: WireRequest) -> dict[str, Any]:
        return await self._send(request.method, request.body)

    def _decode(self, raw: Any, event_id: str, fallback: ActivityEvent) -> ActivityEvent:
        try:
            return decode_response_event(raw, event_id, fallback, self._catalog)
        except MalformedRecordError as e:
            raise TransportError(f"Malformed activity in response: {e}") from e

    # ==================== Operations ====================

    async def fetch_all(self) -> list[ActivityEvent]:
        """Fetch every activity of the signed-in user.

        Returns:
            Events decoded from records of either wire shape
        """
        payload = await self._send("GET")
        records = payload.get("activities")
        if not isinstance(records, list):
            raise TransportError("GET response is missing the activities list")
        try:
            events = decode_records(records, self._catalog)
        except MalformedRecordError as e:
            raise TransportError(f"Malformed activity in response: {e}") from e
        logger.debug("Fetched %d records (%d events)", len(records), len(events))
        return events

    async def create(self, event: ActivityEvent) -> ActivityEvent:
        """Create an activity. The returned event carries the server's id."""
        payload = await self._execute(plan_create(event))
        raw = payload.get("activity")
        try:
            created = decode_record(raw, self._catalog)
        except MalformedRecordError as e:
            raise TransportError(f"Malformed activity in response: {e}") from e
        if len(created) != 1:
            raise TransportError("POST response did not describe exactly one activity")
        return created[0]

    async def update(
        self,
        event_id: str,
        event: ActivityEvent,
        previous: ActivityEvent | None = None,
    ) -> ActivityEvent:
        """Update an activity in place.

        Args:
            event_id: Id of the activity to update
            event: New contents
            previous: Last known contents (lets synthetic events move rows)

        Returns:
            The activity as stored remotely (its id changes when a synthetic
            event moved to another goal or day)
        """
        requests = plan_update(event_id, event, previous, self._catalog)
        payload: dict[str, Any] = {}
        for request in requests:
            payload = await self._execute(request)
        last = requests[-1]
        if last.method == "POST":
            return self._decode(payload.get("activity"), "", event)
        return self._decode(payload.get("activity"), event_id, event)

    async def delete(self, event_id: str, event: ActivityEvent | None = None) -> None:
        """Delete an activity.

        Synthetic events from aggregate rows are zeroed on their parent row
        rather than removed; event-shape records are removed.
        """
        try:
            request = plan_delete(event_id, event, self._catalog)
        except MalformedRecordError as e:
            raise TransportError(str(e), 400) from e
        await self._execute(request)

    async def is_reachable(self) -> bool:
        """Probe the service health endpoint. Never raises."""
        try:
            response = await self.client.get(self.config.resolved_health_url)
        except httpx.HTTPError as e:
            logger.debug("Reachability probe failed: %s", str(e))
            return False
        return response.status_code < 500
