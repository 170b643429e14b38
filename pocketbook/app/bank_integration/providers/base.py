"""
Abstract base classes for bank data providers

Token handling and data access are split in two: the token client only
talks to the OAuth endpoints, the data client only makes bearer-authenticated
read calls. Both are stateless; tokens are owned by the token manager.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from pocketbook.config import Settings
from pocketbook.app.schemas import KftcAccount, KftcTokenResponse, KftcTransactionRaw, KftcUserInfo

from ..exceptions import ConfigMissing


class BaseProviderClient(ABC):
    """Shared configuration handling for provider clients."""

    def __init__(self, settings: Settings):
        """
        Initialize client with application settings.

        Args:
            settings: Settings carrying provider credentials and base URL
        """
        self.settings = settings
        self.base_url = settings.kftc_base_url
        self.timeout = settings.kftc_timeout_seconds

    def assert_configured(self) -> None:
        """
        Fail fast when credentials are missing.

        Raises:
            ConfigMissing: Listing every missing env var name
        """
        missing = self.settings.missing_kftc_settings()
        if missing:
            raise ConfigMissing(missing)


class BaseTokenClient(BaseProviderClient):
    """OAuth token endpoint wrapper."""

    @abstractmethod
    def build_authorization_url(self, state: str, scope: str) -> str:
        """
        Build the provider consent URL the user is redirected to.

        Args:
            state: CSRF protection token
            scope: Requested OAuth scope

        Returns:
            Full authorization URL
        """
        pass

    @abstractmethod
    async def exchange(self, auth_code: str, scope: str) -> KftcTokenResponse:
        """
        Exchange an authorization code for tokens.

        Raises:
            ExchangeError: On non-2xx status or unparseable body
        """
        pass

    @abstractmethod
    async def refresh(
        self,
        refresh_token: str,
        scope: str,
        user_seq_no: Optional[str] = None
    ) -> KftcTokenResponse:
        """
        Run the refresh grant.

        Raises:
            RefreshError: On non-2xx status or unparseable body
        """
        pass


class BaseDataClient(BaseProviderClient):
    """Read-only provider data calls."""

    @abstractmethod
    async def get_user_info(self, access_token: str, user_seq_no: Optional[str] = None) -> KftcUserInfo:
        pass

    @abstractmethod
    async def list_accounts(self, access_token: str, user_seq_no: Optional[str] = None) -> List[KftcAccount]:
        pass

    @abstractmethod
    async def list_transactions(
        self,
        access_token: str,
        fintech_use_num: str,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None
    ) -> List[KftcTransactionRaw]:
        """
        Fetch raw transaction history for one account.

        Args:
            access_token: Valid bearer token
            fintech_use_num: Provider account identifier
            from_date: Start date, YYYYMMDD (inclusive)
            to_date: End date, YYYYMMDD (inclusive)

        Returns:
            Raw provider records, newest first
        """
        pass
