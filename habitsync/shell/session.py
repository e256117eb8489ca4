"""Session overlay - the identity under which events are scoped.

Credential issuance happens elsewhere; this only holds the current bearer
token and tells subscribers when it changes.
"""

import logging
from collections.abc import Callable


logger = logging.getLogger(__name__)

SessionCallback = Callable[[str | None], None]


class Session:
    """Holds the current credential and notifies on sign-in/sign-out."""

    def __init__(self, credential: str | None = None) -> None:
        self._credential = credential
        self._callbacks: list[SessionCallback] = []

    def current_credential(self) -> str | None:
        return self._credential

    def on_session_change(self, callback: SessionCallback) -> Callable[[], None]:
        """Subscribe to credential changes.

        Args:
            callback: Called with the new credential (None on sign-out)

        Returns:
            Function that removes the subscription
        """
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def sign_in(self, credential: str) -> None:
        if not credential:
            raise ValueError("Credential must not be empty")
        self._set(credential)

    def sign_out(self) -> None:
        self._set(None)

    def _set(self, credential: str | None) -> None:
        if credential == self._credential:
            return
        self._credential = credential
        logger.info("Session %s", "signed in" if credential else "signed out")
        for callback in list(self._callbacks):
            callback(credential)
