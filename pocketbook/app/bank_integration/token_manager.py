"""
Provider token lifecycle

Single choke point for provider access tokens: every provider call gets its
bearer token from `ensure_access_token`, and only this module reads or
writes the token columns on the users table.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from pocketbook.app.models import User
from pocketbook.app.schemas import KftcTokenResponse

from .encryption import TokenEncryption
from .exceptions import RefreshResponseInvalid, RefreshTokenMissing, UserNotFound
from .providers.base import BaseTokenClient

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "login transfer"
DEFAULT_REFRESH_BUFFER_SECONDS = 2 * 60


def utcnow() -> datetime:
    """Naive UTC now; token expiry columns store naive UTC."""
    return datetime.now(UTC).replace(tzinfo=None)


def _as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


@dataclass
class ProviderTokenSet:
    access_token: Optional[str]
    refresh_token: Optional[str]
    user_seq_no: Optional[str]
    expires_at: Optional[datetime]
    # Refresh token exactly as stored (encrypted), for conditional updates
    stored_refresh_token: Optional[str] = None


class TokenLifecycleManager:
    """
    Per-user access token cache and refresh policy.

    The stored token is reused until it is within the buffer window of its
    expiry; then the refresh grant runs and the new set replaces the old in a
    single UPDATE. The UPDATE is conditional on the refresh token that was
    read, so when two requests race to refresh the same user the loser does
    not overwrite the winner's tokens.
    """

    def __init__(
        self,
        db: Session,
        token_client: BaseTokenClient,
        encryption: TokenEncryption,
        refresh_buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db = db
        self.token_client = token_client
        self.encryption = encryption
        self.refresh_buffer = timedelta(seconds=refresh_buffer_seconds)
        self._clock = clock

    def load_token_set(self, user_id: int) -> ProviderTokenSet:
        """
        Read and decrypt the user's stored token set.

        Raises:
            UserNotFound: If no user row exists
        """
        row = self.db.query(
            User.kftc_access_token,
            User.kftc_refresh_token,
            User.kftc_user_seq_no,
            User.kftc_token_expires_at
        ).filter(User.id == user_id).first()

        if row is None:
            raise UserNotFound(user_id)

        return ProviderTokenSet(
            access_token=self.encryption.decrypt(row.kftc_access_token),
            refresh_token=self.encryption.decrypt(row.kftc_refresh_token),
            user_seq_no=row.kftc_user_seq_no,
            expires_at=_as_naive_utc(row.kftc_token_expires_at),
            stored_refresh_token=row.kftc_refresh_token
        )

    def is_usable(self, token_set: ProviderTokenSet) -> bool:
        """Token present, expiry known, and more than the buffer away."""
        if not token_set.access_token or not token_set.expires_at:
            return False
        return token_set.expires_at - self._clock() > self.refresh_buffer

    async def ensure_access_token(self, user_id: int, requested_scope: str = DEFAULT_SCOPE) -> str:
        """
        Return a usable provider access token, refreshing it if needed.

        Args:
            user_id: Local user id
            requested_scope: Scope for the refresh grant

        Returns:
            Bearer token for provider data calls

        Raises:
            UserNotFound: No such user
            RefreshTokenMissing: Token unusable and nothing to refresh with
            RefreshError: Provider rejected the refresh
            RefreshResponseInvalid: Refresh response had no access token
        """
        current = self.load_token_set(user_id)

        if self.is_usable(current):
            return current.access_token

        if not current.refresh_token:
            raise RefreshTokenMissing(user_id)

        logger.info(f"Refreshing provider token for user {user_id} (expires_at={current.expires_at})")
        refreshed = await self.token_client.refresh(
            current.refresh_token,
            requested_scope,
            current.user_seq_no
        )

        if not refreshed.access_token:
            logger.error(f"Refresh response for user {user_id} carried no access_token")
            raise RefreshResponseInvalid(user_id)

        stored = self.store_token_response(user_id, refreshed, previous=current, conditional=True)
        if not stored:
            # Another request refreshed first; prefer what it stored
            latest = self.load_token_set(user_id)
            if self.is_usable(latest):
                logger.info(f"Concurrent refresh detected for user {user_id}, using stored token")
                return latest.access_token
            logger.warning(f"Concurrent refresh for user {user_id} left no usable stored token")

        return refreshed.access_token

    def store_token_response(
        self,
        user_id: int,
        response: KftcTokenResponse,
        previous: Optional[ProviderTokenSet] = None,
        conditional: bool = False
    ) -> bool:
        """
        Persist a token response as the user's token set in one UPDATE.

        Missing refresh_token / user_seq_no fall back to `previous` when it is
        given. Missing expires_in leaves the expiry unknown, so the next
        `ensure_access_token` call refreshes.

        Args:
            user_id: Local user id
            response: Token response with an access token
            previous: Token set the response replaces (refresh flow)
            conditional: Only write if the stored refresh token still equals
                `previous.stored_refresh_token`

        Returns:
            True if the row was written
        """
        refresh_token = response.refresh_token
        user_seq_no = response.user_seq_no
        if previous is not None:
            refresh_token = refresh_token or previous.refresh_token
            user_seq_no = user_seq_no or previous.user_seq_no

        expires_at = None
        if response.expires_in is not None:
            expires_at = self._clock() + timedelta(seconds=response.expires_in)

        stmt = update(User).where(User.id == user_id)
        if conditional and previous is not None:
            stmt = stmt.where(User.kftc_refresh_token == previous.stored_refresh_token)

        stmt = stmt.values(
            kftc_access_token=self.encryption.encrypt(response.access_token),
            kftc_refresh_token=self.encryption.encrypt(refresh_token),
            kftc_user_seq_no=user_seq_no,
            kftc_token_expires_at=expires_at
        ).execution_options(synchronize_session=False)

        result = self.db.execute(stmt)
        self.db.commit()

        return result.rowcount == 1

    def clear_tokens(self, user_id: int) -> None:
        """Forget the user's provider tokens (disconnect)."""
        result = self.db.execute(
            update(User).where(User.id == user_id).values(
                kftc_access_token=None,
                kftc_refresh_token=None,
                kftc_user_seq_no=None,
                kftc_token_expires_at=None
            ).execution_options(synchronize_session=False)
        )
        self.db.commit()

        if result.rowcount == 0:
            raise UserNotFound(user_id)
