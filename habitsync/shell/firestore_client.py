"""Firestore Client - Persistence for activity records.

This module handles all Firestore I/O for the /api/habits service.
Record shapes and update rules live in repository; this is only storage.
"""

import logging
import os
from dataclasses import dataclass
from datetime import date
from typing import Any

from google.api_core.exceptions import GoogleAPICallError
from google.cloud import firestore

from .repository import ActivityPayload, RepositoryError, apply_update, build_aggregate_record, build_event_record


logger = logging.getLogger(__name__)


@dataclass
class FirestoreConfig:
    """Configuration for Firestore client.

    Attributes:
        project_id: GCP project ID (None for default)
        database: Firestore database name (None for default database)
    """

    project_id: str | None = None
    database: str | None = None

    @classmethod
    def from_env(cls) -> "FirestoreConfig":
        return cls(
            project_id=os.environ.get("FIRESTORE_PROJECT") or None,
            database=os.environ.get("FIRESTORE_DATABASE", "habitsync"),
        )


class ActivityFirestoreClient:
    """Client for persisting activity records to Firestore.

    Document structure per user:
        users/{user_id}/
            activities/{record_id}: event-shape or aggregate-shape record
    """

    def __init__(self, config: FirestoreConfig | None = None) -> None:
        """Initialize Firestore client.

        Args:
            config: Firestore configuration
        """
        self.config = config or FirestoreConfig()
        self._client: firestore.Client | None = None

    @property
    def client(self) -> firestore.Client:
        """Lazy initialization of Firestore client."""
        if self._client is None:
            kwargs: dict[str, Any] = {}
            if self.config.project_id:
                kwargs["project"] = self.config.project_id
            if self.config.database:
                kwargs["database"] = self.config.database
            self._client = firestore.Client(**kwargs)
        return self._client

    def _activities_ref(self, user_id: str) -> firestore.CollectionReference:
        """Get reference to a user's activities collection."""
        return self.client.collection("users").document(user_id).collection("activities")

    @staticmethod
    def _to_record(doc: firestore.DocumentSnapshot) -> dict[str, Any]:
        data = doc.to_dict() or {}
        data["id"] = doc.id
        return data

    def list_records(self, user_id: str) -> list[dict[str, Any]]:
        """Fetch every activity record of a user.

        Args:
            user_id: The user's ID

        Returns:
            Records of both shapes, each carrying its document id

        Raises:
            RepositoryError: If Firestore fails (an empty list would read as
                "the user has no activities" to syncing clients)
        """
        logger.debug("Fetching activities for user: %s", user_id[:8])
        try:
            return [self._to_record(doc) for doc in self._activities_ref(user_id).stream()]
        except GoogleAPICallError as e:
            logger.error("Failed to fetch activities: %s", str(e))
            raise RepositoryError("Failed to fetch activities") from e

    def create_event(self, user_id: str, activity: ActivityPayload) -> dict[str, Any]:
        """Store a new event-shape record under a Firestore-generated id.

        Args:
            user_id: The user's ID
            activity: Validated activity payload

        Returns:
            The stored record including its id
        """
        logger.info("Adding activity for user: %s", user_id[:8])
        try:
            ref = self._activities_ref(user_id).document()
            record = build_event_record(ref.id, activity)
            ref.set({k: v for k, v in record.items() if k != "id"})
            return record
        except GoogleAPICallError as e:
            logger.error("Failed to add activity: %s", str(e))
            raise RepositoryError("Failed to add activity") from e

    def put_aggregate(
        self,
        user_id: str,
        day: date,
        amounts: dict[str, float],
        descriptions: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Store an aggregate-shape row (legacy import)."""
        try:
            ref = self._activities_ref(user_id).document()
            record = build_aggregate_record(ref.id, day, amounts, descriptions)
            ref.set({k: v for k, v in record.items() if k != "id"})
            return record
        except GoogleAPICallError as e:
            logger.error("Failed to import aggregate row: %s", str(e))
            raise RepositoryError("Failed to import aggregate row") from e

    def update_record(self, user_id: str, record_id: str, activity: ActivityPayload) -> dict[str, Any] | None:
        """Apply a PUT to a stored record.

        Args:
            user_id: The user's ID
            record_id: Document id of the record
            activity: Validated activity payload

        Returns:
            The updated record, or None if it does not exist
        """
        logger.info("Updating activity %s for user: %s", record_id, user_id[:8])
        try:
            ref = self._activities_ref(user_id).document(record_id)
            doc = ref.get()
            if not doc.exists:
                logger.warning("Activity not found: %s", record_id)
                return None
            record = apply_update(self._to_record(doc), activity)
            ref.set({k: v for k, v in record.items() if k != "id"})
            return record
        except GoogleAPICallError as e:
            logger.error("Failed to update activity: %s", str(e))
            raise RepositoryError("Failed to update activity") from e

    def delete_record(self, user_id: str, record_id: str) -> bool:
        """Delete a record.

        Returns:
            True if it existed
        """
        logger.info("Deleting activity %s for user: %s", record_id, user_id[:8])
        try:
            ref = self._activities_ref(user_id).document(record_id)
            if not ref.get().exists:
                logger.warning("Activity not found: %s", record_id)
                return False
            ref.delete()
            return True
        except GoogleAPICallError as e:
            logger.error("Failed to delete activity: %s", str(e))
            raise RepositoryError("Failed to delete activity") from e
