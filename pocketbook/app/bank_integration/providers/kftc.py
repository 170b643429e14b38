"""
KFTC Open Banking Provider Implementation

KFTC (금융결제원) open banking uses a standard OAuth 2.0 authorization code
flow with refresh tokens. Token calls are form-encoded; data calls are
bearer-authenticated GETs returning JSON with an in-band `rsp_code`.

Documentation: https://developers.openbanking.or.kr/
"""

import logging
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional, Type
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from pocketbook.app.schemas import KftcAccount, KftcTokenResponse, KftcTransactionRaw, KftcUserInfo

from ..exceptions import ExchangeError, ProviderError, ProviderParseError, RefreshError, UpstreamError
from .base import BaseDataClient, BaseTokenClient

logger = logging.getLogger(__name__)

RSP_CODE_SUCCESS = "A0000"
AUTH_TYPE_FIRST_TIME = "0"
MAX_TRANSACTION_PAGES = 100

# Status used when no HTTP response was received (timeout, DNS, refused)
NO_RESPONSE_STATUS = 0


def _mask(token: Optional[str]) -> str:
    return f"{token[:8]}..." if token else "<none>"


class KftcTokenClient(BaseTokenClient):
    """
    Wrapper for the KFTC `/oauth/2.0/token` endpoint.

    Stateless: every call builds its own request from settings and the
    arguments given. Failed calls are never retried, since an authorization
    code is invalidated by the provider after its first use.
    """

    @property
    def token_url(self) -> str:
        return f"{self.base_url}/oauth/2.0/token"

    def build_authorization_url(self, state: str, scope: str) -> str:
        self.assert_configured()

        params = {
            "response_type": "code",
            "client_id": self.settings.kftc_client_id,
            "redirect_uri": self.settings.kftc_redirect_uri,
            "scope": scope,
            "state": state,
            "auth_type": AUTH_TYPE_FIRST_TIME,
        }
        return f"{self.base_url}/oauth/2.0/authorize?{urlencode(params)}"

    async def exchange(self, auth_code: str, scope: str) -> KftcTokenResponse:
        """
        Exchange authorization code for access/refresh tokens.

        Args:
            auth_code: Code from the consent redirect
            scope: Scope that was requested on the authorize call

        Returns:
            Parsed token response (access_token may still be absent; the
            caller decides how to treat that)

        Raises:
            ConfigMissing: If client credentials are not configured
            ExchangeError: On non-2xx status or malformed JSON
        """
        self.assert_configured()

        data = {
            "code": auth_code,
            "client_id": self.settings.kftc_client_id,
            "client_secret": self.settings.kftc_client_secret,
            "redirect_uri": self.settings.kftc_redirect_uri,
            "grant_type": "authorization_code",
            "scope": scope,
        }
        return await self._post_token(data, ExchangeError)

    async def refresh(
        self,
        refresh_token: str,
        scope: str,
        user_seq_no: Optional[str] = None
    ) -> KftcTokenResponse:
        """
        Refresh an access token.

        Raises:
            ConfigMissing: If client credentials are not configured
            RefreshError: On non-2xx status or malformed JSON
        """
        self.assert_configured()

        data = {
            "refresh_token": refresh_token,
            "client_id": self.settings.kftc_client_id,
            "client_secret": self.settings.kftc_client_secret,
            "grant_type": "refresh_token",
            "scope": scope,
        }
        if user_seq_no:
            data["user_seq_no"] = user_seq_no

        return await self._post_token(data, RefreshError)

    async def _post_token(
        self,
        data: Dict[str, Any],
        error_cls: Type[UpstreamError]
    ) -> KftcTokenResponse:
        grant_type = data["grant_type"]

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.token_url,
                    data=data,
                    headers={
                        "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8",
                        "Accept": "application/json"
                    }
                )
        except httpx.HTTPError as e:
            logger.error(f"KFTC token request ({grant_type}) got no response: {e!r}")
            raise error_cls(NO_RESPONSE_STATUS, str(e)) from e

        raw_body = response.text

        if not response.is_success:
            logger.error(f"KFTC token request ({grant_type}) failed - Status: {response.status_code}, Body: {raw_body}")
            raise error_cls(response.status_code, raw_body)

        try:
            payload = response.json()
            if not isinstance(payload, dict):
                raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
            token_response = KftcTokenResponse.model_validate(payload)
        except (ValueError, ValidationError) as e:
            logger.error(f"KFTC token response ({grant_type}) could not be parsed: {e}")
            raise error_cls(response.status_code, raw_body) from e

        logger.info(
            f"KFTC token request ({grant_type}) succeeded: access_token={_mask(token_response.access_token)}, "
            f"expires_in={token_response.expires_in}, user_seq_no={token_response.user_seq_no}"
        )
        return token_response


class KftcDataClient(BaseDataClient):
    """
    Read-only KFTC data calls (user info, account list, transaction history).

    Every call needs a valid bearer token from the token manager.
    """

    async def get_user_info(self, access_token: str, user_seq_no: Optional[str] = None) -> KftcUserInfo:
        """
        Fetch the provider's user profile.

        Returns:
            User info (bank_name is used as the display bank name)
        """
        params = {}
        if user_seq_no:
            params["user_seq_no"] = user_seq_no

        async with self._client() as client:
            data = await self._get_json(client, "/v2.0/user/me", access_token, params, "KFTC user info")

        return self._parse(KftcUserInfo, data, "KFTC user info")

    async def list_accounts(self, access_token: str, user_seq_no: Optional[str] = None) -> List[KftcAccount]:
        """
        Fetch the accounts the user linked during consent.

        Returns:
            Accounts from `res_list` (empty list if the provider sends none)
        """
        params = {
            "include_cancel_yn": "N",
            "sort_order": "D",
        }
        if user_seq_no:
            params["user_seq_no"] = user_seq_no

        async with self._client() as client:
            data = await self._get_json(client, "/v2.0/account/list", access_token, params, "KFTC account list")

        return [
            self._parse(KftcAccount, item, "KFTC account list")
            for item in (data.get("res_list") or [])
        ]

    async def list_transactions(
        self,
        access_token: str,
        fintech_use_num: str,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None
    ) -> List[KftcTransactionRaw]:
        """
        Fetch transaction history for an account, following pagination.

        KFTC pages with `next_page_yn` and hands back a
        `befor_inquiry_trace_info` cursor to send with the next request.

        Example:
            >>> transactions = await data_client.list_transactions(
            ...     access_token, "199159919057870978715901",
            ...     from_date="20240101", to_date="20240131"
            ... )
        """
        params = {
            "fintech_use_num": fintech_use_num,
            "inquiry_type": "A",
            "inquiry_base": "D",
            "sort_order": "D",
        }
        if from_date:
            params["from_date"] = from_date
        if to_date:
            params["to_date"] = to_date

        all_transactions: List[KftcTransactionRaw] = []
        trace_info = None
        page_num = 0

        async with self._client() as client:
            while True:
                page_num += 1

                current_params = dict(params)
                current_params["tran_dtime"] = datetime.now().strftime("%Y%m%d%H%M%S")
                bank_tran_id = self._bank_tran_id()
                if bank_tran_id:
                    current_params["bank_tran_id"] = bank_tran_id
                if trace_info:
                    current_params["befor_inquiry_trace_info"] = trace_info

                data = await self._get_json(
                    client,
                    "/v2.0/account/transaction_list/fin_num",
                    access_token,
                    current_params,
                    "KFTC transactions"
                )

                page = [
                    self._parse(KftcTransactionRaw, item, "KFTC transactions")
                    for item in (data.get("res_list") or [])
                ]
                all_transactions.extend(page)
                logger.info(f"Page {page_num}: fetched {len(page)} transactions (total so far: {len(all_transactions)})")

                trace_info = data.get("befor_inquiry_trace_info")
                if data.get("next_page_yn") != "Y" or not trace_info:
                    break

                if page_num >= MAX_TRANSACTION_PAGES:
                    logger.warning(f"Reached page limit of {MAX_TRANSACTION_PAGES}, stopping pagination")
                    break

        return all_transactions

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout)

    def _bank_tran_id(self) -> Optional[str]:
        # 이용기관코드(10) + "U" + 9-digit unique number
        use_code = self.settings.kftc_client_use_code
        if not use_code:
            return None
        return f"{use_code}U{secrets.randbelow(10 ** 9):09d}"

    async def _get_json(
        self,
        client: httpx.AsyncClient,
        path: str,
        access_token: str,
        params: Dict[str, Any],
        operation: str
    ) -> Dict[str, Any]:
        self.assert_configured()

        try:
            response = await client.get(
                f"{self.base_url}{path}",
                params=params,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json"
                }
            )
        except httpx.HTTPError as e:
            logger.error(f"{operation} got no response: {e!r}")
            raise ProviderError(NO_RESPONSE_STATUS, str(e), operation) from e

        raw_body = response.text

        if not response.is_success:
            logger.error(f"{operation} failed - Status: {response.status_code}, Body: {raw_body}")
            raise ProviderError(response.status_code, raw_body, operation)

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"{operation} returned malformed JSON: {e}")
            raise ProviderParseError(operation, raw_body, str(e)) from e

        if not isinstance(data, dict):
            raise ProviderParseError(operation, raw_body, f"expected a JSON object, got {type(data).__name__}")

        rsp_code = data.get("rsp_code")
        if rsp_code and rsp_code != RSP_CODE_SUCCESS:
            logger.error(f"{operation} rejected - rsp_code: {rsp_code}, message: {data.get('rsp_message')}")
            raise ProviderError(response.status_code, raw_body, operation)

        return data

    @staticmethod
    def _parse(model, item: Any, operation: str):
        try:
            return model.model_validate(item)
        except ValidationError as e:
            raise ProviderParseError(operation, str(item), str(e)) from e
