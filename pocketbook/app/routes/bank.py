"""
Bank Connection Routes

User-facing endpoints for:
- Starting the KFTC OAuth handshake and validating its callback
- Connecting a bank (code exchange + initial sync)
- Syncing a single account
- Reading a usable provider token (diagnostics)
- Listing connected accounts and disconnecting
"""

import logging
from typing import Any, List, Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from pocketbook.config import Settings, get_settings
from pocketbook.database import get_db
from pocketbook.app import models, schemas
from pocketbook.app.auth import get_current_active_user
from pocketbook.app.bank_integration.exceptions import (
    ConnectFailed, InvalidOrExpiredState, MissingParameter, ProviderParseError,
    RefreshError, RefreshResponseInvalid, RefreshTokenMissing, UnknownAccount,
    UpstreamError, UserNotFound
)
from pocketbook.app.bank_integration.service import BankIntegrationService
from pocketbook.app.bank_integration.state_store import BaseOAuthStateStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bank", tags=["bank"])

# Errors meaning "the stored provider token cannot be made usable"
TOKEN_STATE_ERRORS = (UserNotFound, RefreshTokenMissing, RefreshResponseInvalid, RefreshError)

# On /account a failed refresh call is an upstream failure, not a token state
ACCOUNT_TOKEN_STATE_ERRORS = (UserNotFound, RefreshTokenMissing, RefreshResponseInvalid)


def get_oauth_state_store(request: Request) -> BaseOAuthStateStore:
    return request.app.state.oauth_state_store


def get_bank_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    state_store: BaseOAuthStateStore = Depends(get_oauth_state_store)
) -> BankIntegrationService:
    return BankIntegrationService(db, settings, state_store)


def error_response(
    status_code: int,
    error: str,
    settings: Settings,
    detail: Optional[Any] = None
) -> JSONResponse:
    """JSON error body; `detail` is left out in production."""
    content = {"error": error}
    if detail is not None and not settings.is_production:
        content["detail"] = detail
    return JSONResponse(status_code=status_code, content=content)


@router.get("/auth-url", response_model=schemas.AuthUrlResponse)
def get_auth_url(service: BankIntegrationService = Depends(get_bank_service)):
    """
    Start the KFTC consent flow.

    The client redirects the user to `authUrl` and keeps `state` to compare
    on the way back.
    """
    return service.get_auth_url()


@router.get("/auth/callback", response_model=schemas.CallbackResponse)
def auth_callback(
    code: Optional[str] = Query(None, description="Authorization code"),
    state: Optional[str] = Query(None, description="CSRF state token"),
    scope: Optional[str] = Query(None),
    service: BankIntegrationService = Depends(get_bank_service)
):
    """
    OAuth callback endpoint.

    Validates and consumes the state, then returns the code for the client
    to pass to POST /bank/connect.
    """
    try:
        return service.handle_callback(code, state, scope)
    except (MissingParameter, InvalidOrExpiredState) as e:
        return JSONResponse(status_code=400, content={"error": str(e)})


@router.post("/connect", response_model=schemas.SyncResponse)
async def connect_bank(
    connect_request: schemas.ConnectRequest,
    current_user: models.User = Depends(get_current_active_user),
    service: BankIntegrationService = Depends(get_bank_service),
    settings: Settings = Depends(get_settings)
):
    """
    Exchange the authorization code and run the initial sync.

    Example:
        POST /api/bank/connect
        {
            "authCode": "abc123",
            "fromDate": "20240101",
            "toDate": "20240131"
        }

        Response:
        {
            "status": "SYNC_COMPLETED",
            "bankName": "KB국민은행",
            "transactions": [...],
            "imported": 12,
            "duplicates": 0
        }
    """
    try:
        return await service.connect(
            user_id=current_user.id,
            auth_code=connect_request.auth_code,
            scope=connect_request.scope,
            transactions=connect_request.transactions,
            bank_name=connect_request.bank_name,
            from_date=connect_request.from_date,
            to_date=connect_request.to_date
        )
    except MissingParameter as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except UnknownAccount as e:
        return error_response(400, "unknown_account", settings, str(e))
    except UserNotFound as e:
        return JSONResponse(status_code=404, content={"error": str(e)})
    except ConnectFailed as e:
        logger.error(f"Connect failed for user {current_user.id}: {e.detail}")
        return error_response(502, "Failed to exchange authCode", settings, e.raw_body or e.detail)
    except (UpstreamError, ProviderParseError) as e:
        logger.error(f"Initial sync failed for user {current_user.id}: {e}")
        return error_response(502, "bank_sync_failed", settings, str(e))


@router.post("/account", response_model=schemas.SyncResponse)
async def sync_account(
    sync_request: Optional[schemas.AccountSyncRequest] = Body(None),
    current_user: models.User = Depends(get_current_active_user),
    service: BankIntegrationService = Depends(get_bank_service),
    settings: Settings = Depends(get_settings)
):
    """Pull one account's history from KFTC and store it."""
    sync_request = sync_request or schemas.AccountSyncRequest()

    try:
        return await service.sync_account(
            current_user.id,
            sync_request.fintech_use_num,
            sync_request.from_date,
            sync_request.to_date
        )
    except MissingParameter:
        return JSONResponse(status_code=400, content={"error": "fintechUseNum_required"})
    except ACCOUNT_TOKEN_STATE_ERRORS as e:
        logger.warning(f"No usable provider token for user {current_user.id}: {e}")
        return error_response(400, "token_refresh_failed", settings, str(e))
    except (UpstreamError, ProviderParseError) as e:
        logger.error(f"Account sync failed for user {current_user.id}: {e}")
        return error_response(502, "account_sync_failed", settings, str(e))


@router.get("/access-token", response_model=schemas.AccessTokenResponse)
async def get_access_token(
    current_user: models.User = Depends(get_current_active_user),
    service: BankIntegrationService = Depends(get_bank_service),
    settings: Settings = Depends(get_settings)
):
    """Diagnostic: a usable provider access token, refreshed if needed."""
    try:
        access_token = await service.get_valid_access_token(current_user.id)
    except TOKEN_STATE_ERRORS as e:
        logger.warning(f"Token refresh failed for user {current_user.id}: {e}")
        return error_response(400, "token_refresh_failed", settings, str(e))

    return {"access_token": access_token}


@router.get("/accounts", response_model=List[schemas.BankAccount])
def list_bank_accounts(
    current_user: models.User = Depends(get_current_active_user),
    service: BankIntegrationService = Depends(get_bank_service)
):
    """List the caller's connected bank accounts."""
    return service.list_accounts(current_user.id)


@router.delete("/connection")
def disconnect_bank(
    current_user: models.User = Depends(get_current_active_user),
    service: BankIntegrationService = Depends(get_bank_service)
):
    """
    Disconnect the bank.

    Stored provider tokens are cleared; imported accounts and transactions
    are kept.
    """
    return service.disconnect(current_user.id)
