"""
OAuth state store

Short-lived anti-forgery tokens for the authorization code handshake.
A state is issued before redirecting the user to the provider and consumed
exactly once when the provider redirects back.
"""

import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict

logger = logging.getLogger(__name__)

DEFAULT_STATE_TTL_SECONDS = 10 * 60


class BaseOAuthStateStore(ABC):
    """
    Registry of issued OAuth state tokens.

    Implementations must be safe for concurrent issue/consume calls.
    The in-memory store only works for a single process; deployments with
    several instances need a shared store with key expiry behind this
    same interface.
    """

    @abstractmethod
    def issue(self) -> str:
        """
        Generate and register a new state token.

        Returns:
            Opaque random token (at least 128 bits of entropy)
        """
        pass

    @abstractmethod
    def validate_and_consume(self, token: str) -> bool:
        """
        Check a state token and remove it.

        Args:
            token: State value received on the callback

        Returns:
            True only for a known, unexpired token. The token is deleted
            whether it was valid or expired, so a second call returns False.
        """
        pass


class InMemoryOAuthStateStore(BaseOAuthStateStore):
    """Lock-guarded dict of state -> absolute expiry (monotonic seconds)."""

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._states: Dict[str, float] = {}
        self._lock = threading.Lock()

    def issue(self) -> str:
        token = secrets.token_hex(16)

        with self._lock:
            self._sweep_locked()
            self._states[token] = self._clock() + self.ttl_seconds

        return token

    def validate_and_consume(self, token: str) -> bool:
        if not token:
            return False

        with self._lock:
            expires_at = self._states.pop(token, None)
            now = self._clock()

        if expires_at is None:
            return False

        if now > expires_at:
            logger.info("Rejected expired OAuth state")
            return False

        return True

    def sweep_expired(self) -> int:
        """Drop every expired, never-consumed state. Returns how many were removed."""
        with self._lock:
            return self._sweep_locked()

    def _sweep_locked(self) -> int:
        now = self._clock()
        expired = [token for token, expires_at in self._states.items() if now > expires_at]
        for token in expired:
            del self._states[token]
        if expired:
            logger.debug(f"Swept {len(expired)} expired OAuth states")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)
