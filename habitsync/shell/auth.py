"""Authentication - API key generation and validation.

Bearer tokens of the /api/habits service are API keys. Only their SHA256
hash is stored; the hash doubles as the user id.
"""

import hashlib
import logging
import secrets
import threading
from datetime import datetime
from typing import Any

from google.api_core.exceptions import GoogleAPICallError
from google.cloud import firestore

from ..core.models import User


logger = logging.getLogger(__name__)

API_KEY_PREFIX = "hbt_"


def generate_api_key() -> str:
    """Generate a cryptographically secure API key.

    Returns:
        API key in format: hbt_<random_chars>
    """
    return f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"


def hash_api_key(api_key: str) -> str:
    """Hash an API key into a user_id (32 hex chars, a valid document id)."""
    return hashlib.sha256(api_key.encode()).hexdigest()[:32]


def validate_api_key_format(api_key: str) -> bool:
    """Check if API key has valid format.

    Args:
        api_key: The API key to validate

    Returns:
        True if format is valid
    """
    if not api_key or not api_key.startswith(API_KEY_PREFIX):
        return False
    return len(api_key) >= 40


class AuthClient:
    """User registration and API key validation.

    Users live in the Firestore `users` collection when a client is given,
    otherwise in process memory (the default for local runs and tests).
    """

    def __init__(self, db: firestore.Client | None = None) -> None:
        """Initialize auth client.

        Args:
            db: Firestore client instance, or None for in-memory users
        """
        self._db = db
        self._users: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _load(self, user_id: str) -> dict[str, Any] | None:
        if self._db is None:
            with self._lock:
                return self._users.get(user_id)
        doc = self._db.collection("users").document(user_id).get()
        return doc.to_dict() if doc.exists else None

    def _save(self, user_id: str, data: dict[str, Any]) -> None:
        if self._db is None:
            with self._lock:
                self._users[user_id] = data
            return
        self._db.collection("users").document(user_id).set(data)

    def register_user(self, username: str) -> tuple[str, str]:
        """Register a new user and generate their API key.

        Args:
            username: Display name of the account

        Returns:
            Tuple of (api_key, user_id) - api_key is only returned once!
        """
        logger.info("Registering new user: %s", username)

        api_key = generate_api_key()
        user_id = hash_api_key(api_key)
        user = User(username=username, api_key_hash=user_id, created_at=datetime.utcnow())
        self._save(user_id, user.model_dump())

        logger.info("User registered successfully: %s", user_id[:8])
        return api_key, user_id

    def validate_api_key(self, api_key: str) -> str | None:
        """Validate an API key and return the user_id if valid."""
        if not validate_api_key_format(api_key):
            logger.warning("Invalid API key format")
            return None

        user_id = hash_api_key(api_key)
        if self.user_exists(user_id):
            logger.debug("API key validated for user: %s", user_id[:8])
            return user_id
        logger.warning("API key not found")
        return None

    def get_user(self, user_id: str) -> User | None:
        """Get user by ID (hashed API key)."""
        try:
            data = self._load(user_id)
        except GoogleAPICallError as e:
            logger.error("Error fetching user: %s", str(e))
            return None
        return User(**data) if data is not None else None

    def user_exists(self, user_id: str) -> bool:
        try:
            return self._load(user_id) is not None
        except GoogleAPICallError as e:
            logger.error("Error checking user: %s", str(e))
            return False
