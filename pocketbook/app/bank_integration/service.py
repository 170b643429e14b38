"""
Bank Integration Service

Main orchestration service that handles:
- OAuth handshake (authorization URL, callback state check)
- Authorization code exchange and token persistence
- Transaction synchronization (pull from provider or client push)
- Disconnecting
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from pocketbook.config import Settings
from pocketbook.app.models import BankAccount, User
from pocketbook.app.schemas import IncomingTransaction, SyncResponse

from .encryption import TokenEncryption
from .exceptions import (
    ConnectFailed, InvalidOrExpiredState, MissingParameter, UpstreamError, UserNotFound
)
from .ingestion import UNKNOWN_BANK_NAME, IngestionPipeline, IngestionResult
from .providers.base import BaseDataClient, BaseTokenClient
from .providers.kftc import KftcDataClient, KftcTokenClient
from .state_store import BaseOAuthStateStore
from .token_manager import DEFAULT_SCOPE, TokenLifecycleManager

logger = logging.getLogger(__name__)


class BankIntegrationService:
    """
    Main service for the bank connection.

    Provides high-level operations for:
    - Starting the OAuth handshake
    - Handling the OAuth callback
    - Connecting (code exchange + initial sync)
    - Syncing a single account
    - Disconnecting
    """

    def __init__(
        self,
        db: Session,
        settings: Settings,
        state_store: BaseOAuthStateStore,
        token_client: Optional[BaseTokenClient] = None,
        data_client: Optional[BaseDataClient] = None,
        encryption: Optional[TokenEncryption] = None
    ):
        """
        Initialize service with database session and collaborators.

        Args:
            db: SQLAlchemy database session
            settings: Application settings
            state_store: Process-wide OAuth state registry
            token_client: Provider token endpoint client (KFTC by default)
            data_client: Provider data client (KFTC by default)
            encryption: Token encryption (keyed from SECRET_KEY by default)
        """
        self.db = db
        self.settings = settings
        self.state_store = state_store
        self.token_client = token_client or KftcTokenClient(settings)
        self.data_client = data_client or KftcDataClient(settings)
        self.encryption = encryption or TokenEncryption(settings.secret_key)
        self.token_manager = TokenLifecycleManager(
            db,
            self.token_client,
            self.encryption,
            refresh_buffer_seconds=settings.token_refresh_buffer_seconds
        )
        self.ingestion = IngestionPipeline(db)

    def get_auth_url(self) -> Dict[str, str]:
        """
        Start the OAuth handshake.

        Returns:
            {'auth_url': str, 'state': str, 'scope': str}

        Raises:
            ConfigMissing: If provider credentials are not configured

        Example:
            >>> result = service.get_auth_url()
            >>> # Redirect user to result['auth_url']
        """
        # Check config before issuing a state nobody can use
        self.token_client.assert_configured()

        state = self.state_store.issue()
        auth_url = self.token_client.build_authorization_url(state, DEFAULT_SCOPE)

        return {
            "auth_url": auth_url,
            "state": state,
            "scope": DEFAULT_SCOPE
        }

    def handle_callback(
        self,
        code: Optional[str],
        state: Optional[str],
        scope: Optional[str] = None
    ) -> Dict[str, str]:
        """
        Validate the provider redirect and hand the code back to the client.

        The state is consumed here, so a replayed callback fails.

        Raises:
            MissingParameter: If code or state is absent
            InvalidOrExpiredState: If the state is unknown, used or expired
        """
        if not code:
            raise MissingParameter("code")
        if not state:
            raise MissingParameter("state")

        if not self.state_store.validate_and_consume(state):
            logger.warning("OAuth callback with invalid or expired state")
            raise InvalidOrExpiredState()

        return {
            "kftc_auth_code": code,
            "scope": scope or DEFAULT_SCOPE,
            "state": state
        }

    async def connect(
        self,
        user_id: int,
        auth_code: Optional[str],
        scope: Optional[str] = None,
        transactions: Optional[List[IncomingTransaction]] = None,
        bank_name: Optional[str] = None,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None
    ) -> SyncResponse:
        """
        Exchange the authorization code and run the initial sync.

        With a non-empty `transactions` batch the client-supplied rows are
        stored (push mode); otherwise every linked account's history is
        fetched from the provider (pull mode).

        Args:
            user_id: Authenticated user
            auth_code: Code returned by the callback
            scope: Scope used on the authorize call (default "login transfer")
            transactions: Client-supplied batch (push mode)
            bank_name: Display name used when the provider gives none
            from_date: Start of pulled history, YYYYMMDD
            to_date: End of pulled history, YYYYMMDD

        Returns:
            SyncResponse with a summary of every transaction handled

        Raises:
            MissingParameter: No auth code
            UserNotFound: No such user
            UnknownAccount: Push batch references another user's account
            ConnectFailed: Exchange failed or returned no access token
            ProviderError / ProviderParseError: Pull-mode fetch failed
        """
        if not auth_code:
            raise MissingParameter("authCode")

        self._require_user(user_id)
        requested_scope = scope or DEFAULT_SCOPE
        push_mode = bool(transactions)

        # Reject bad account references before the code is spent
        if push_mode:
            self.ingestion.validate_account_ids(user_id, (tx.account_id for tx in transactions))

        try:
            token_response = await self.token_client.exchange(auth_code, requested_scope)
        except UpstreamError as e:
            raise ConnectFailed(str(e), status=e.status, raw_body=e.raw_body) from e

        if not token_response.access_token:
            logger.error(
                f"Token exchange for user {user_id} returned no access_token "
                f"(fields: {sorted(token_response.extra)})"
            )
            raise ConnectFailed("KFTC token response is missing access_token")

        self.token_manager.store_token_response(user_id, token_response)
        logger.info(f"Stored provider tokens for user {user_id}")

        response_bank_name = bank_name or UNKNOWN_BANK_NAME

        if push_mode:
            result = self.ingestion.ingest_client_batch(user_id, transactions)
        else:
            access_token = token_response.access_token
            user_seq_no = token_response.user_seq_no

            user_info = await self.data_client.get_user_info(access_token, user_seq_no)
            if user_info.bank_name:
                response_bank_name = user_info.bank_name

            result = await self._pull_all_accounts(user_id, access_token, user_seq_no, from_date, to_date)

        return self._sync_response(response_bank_name, result)

    async def sync_account(
        self,
        user_id: int,
        fintech_use_num: Optional[str],
        from_date: Optional[str] = None,
        to_date: Optional[str] = None
    ) -> SyncResponse:
        """
        Pull and store the history of a single account.

        Transactions are linked to the local account with the same
        fintech_use_num when one exists.

        Raises:
            MissingParameter: No fintech_use_num
            UserNotFound / RefreshTokenMissing / RefreshResponseInvalid:
                No usable provider token
            RefreshError / ProviderError / ProviderParseError: Upstream call failed
        """
        if not fintech_use_num:
            raise MissingParameter("fintechUseNum")

        access_token = await self.token_manager.ensure_access_token(user_id)
        user_seq_no = self.token_manager.load_token_set(user_id).user_seq_no

        user_info = await self.data_client.get_user_info(access_token, user_seq_no)
        bank_name = user_info.bank_name or UNKNOWN_BANK_NAME

        raw_transactions = await self.data_client.list_transactions(
            access_token, fintech_use_num, from_date, to_date
        )

        local_account = self.ingestion.find_account_by_fintech_num(user_id, fintech_use_num)
        result = self.ingestion.ingest_account_batch(
            user_id,
            raw_transactions,
            account_id=local_account.id if local_account else None
        )

        return self._sync_response(bank_name, result)

    async def get_valid_access_token(self, user_id: int) -> str:
        """Usable provider access token for the user, refreshed if needed."""
        return await self.token_manager.ensure_access_token(user_id)

    def list_accounts(self, user_id: int) -> List[BankAccount]:
        return self.db.query(BankAccount).filter(
            BankAccount.user_id == user_id
        ).order_by(BankAccount.id).all()

    def disconnect(self, user_id: int) -> Dict[str, Any]:
        """
        Forget the user's provider tokens.

        Accounts and transactions already ingested are kept.
        """
        self.token_manager.clear_tokens(user_id)
        logger.info(f"Disconnected provider for user {user_id}")

        return {"message": "Bank connection removed"}

    async def _pull_all_accounts(
        self,
        user_id: int,
        access_token: str,
        user_seq_no: Optional[str],
        from_date: Optional[str],
        to_date: Optional[str]
    ) -> IngestionResult:
        accounts = await self.data_client.list_accounts(access_token, user_seq_no)
        logger.info(f"Provider lists {len(accounts)} accounts for user {user_id}")

        total = IngestionResult()
        for account in accounts:
            raw_transactions = []
            if account.fintech_use_num:
                raw_transactions = await self.data_client.list_transactions(
                    access_token, account.fintech_use_num, from_date, to_date
                )

            # Each account commits on its own; a later failure keeps earlier ones
            total.merge(self.ingestion.ingest_account_batch(user_id, raw_transactions, account=account))

        return total

    def _require_user(self, user_id: int) -> None:
        if self.db.query(User.id).filter(User.id == user_id).first() is None:
            raise UserNotFound(user_id)

    @staticmethod
    def _sync_response(bank_name: str, result: IngestionResult) -> SyncResponse:
        return SyncResponse(
            bank_name=bank_name,
            transactions=result.summaries,
            imported=result.inserted,
            duplicates=result.duplicates
        )
