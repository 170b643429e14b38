import os
import tempfile
from typing import Any, Generator

# Settings are read at import time, so the environment is fixed before any
# pocketbook import
_fd, _DB_PATH = tempfile.mkstemp(prefix="pocketbook_test_", suffix=".sqlite3")
os.close(_fd)
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_PATH}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ENVIRONMENT"] = "development"
os.environ["KFTC_BASE_URL"] = "https://testapi.openbanking.or.kr"
os.environ["KFTC_CLIENT_ID"] = "test-client-id"
os.environ["KFTC_CLIENT_SECRET"] = "test-client-secret"
os.environ["KFTC_REDIRECT_URI"] = "http://localhost:8000/api/bank/auth/callback"
os.environ.pop("KFTC_CLIENT_USE_CODE", None)

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from pocketbook.config import Settings, get_settings
from pocketbook.database import Base, SessionLocal, engine, get_db
from pocketbook.main import app
from pocketbook.app import models
from pocketbook.app.auth import create_user_token
from pocketbook.app.schemas import KftcAccount, KftcTokenResponse, KftcTransactionRaw, KftcUserInfo
from pocketbook.app.bank_integration.encryption import TokenEncryption
from pocketbook.app.bank_integration.providers.base import BaseDataClient
from pocketbook.app.bank_integration.providers.kftc import KftcTokenClient
from pocketbook.app.bank_integration.service import BankIntegrationService
from pocketbook.app.bank_integration.state_store import BaseOAuthStateStore
from pocketbook.app.routes.bank import get_bank_service, get_oauth_state_store

FINTECH_USE_NUM = "199159919057870978715901"
USER_SEQ_NO = "1100000001"


class FakeTokenClient(KftcTokenClient):
    """Real authorize URL building, canned token responses."""

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.exchange_response = KftcTokenResponse(
            access_token="access-1",
            token_type="Bearer",
            refresh_token="refresh-1",
            expires_in=7776000,
            scope="login transfer",
            user_seq_no=USER_SEQ_NO,
        )
        self.refresh_response = KftcTokenResponse(
            access_token="access-2",
            token_type="Bearer",
            refresh_token="refresh-2",
            expires_in=7776000,
            scope="login transfer",
            user_seq_no=USER_SEQ_NO,
        )
        self.exchange_error = None
        self.refresh_error = None
        self.on_refresh = None
        self.exchange_calls = []
        self.refresh_calls = []

    async def exchange(self, auth_code, scope):
        self.assert_configured()
        self.exchange_calls.append((auth_code, scope))
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.exchange_response

    async def refresh(self, refresh_token, scope, user_seq_no=None):
        self.refresh_calls.append((refresh_token, scope, user_seq_no))
        if self.on_refresh is not None:
            self.on_refresh()
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.refresh_response


class FakeDataClient(BaseDataClient):
    """In-memory provider: one account with two transactions by default."""

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.user_info = KftcUserInfo(rsp_code="A0000", user_seq_no=USER_SEQ_NO, bank_name="KB국민은행")
        self.accounts = [
            KftcAccount(
                fintech_use_num=FINTECH_USE_NUM,
                bank_name="KB국민은행",
                account_num="1234567890",
                balance_amt="1000000",
            )
        ]
        self.transactions = {
            FINTECH_USE_NUM: [
                KftcTransactionRaw(
                    tran_date="20240115",
                    tran_time="093000",
                    printed_content="STARBUCKS",
                    tran_amt="4500",
                    after_balance_amt="995500",
                    inout_type="출금",
                    tran_id="T-0001",
                ),
                KftcTransactionRaw(
                    tran_date="20240116",
                    tran_time="120000",
                    printed_content="급여",
                    tran_amt="3000000",
                    after_balance_amt="3995500",
                    inout_type="입금",
                ),
            ]
        }
        self.error = None
        # fintech_use_num -> error raised by list_transactions for that account
        self.transaction_errors = {}
        self.access_tokens = []

    async def get_user_info(self, access_token, user_seq_no=None):
        self.access_tokens.append(access_token)
        if self.error is not None:
            raise self.error
        return self.user_info

    async def list_accounts(self, access_token, user_seq_no=None):
        self.access_tokens.append(access_token)
        if self.error is not None:
            raise self.error
        return list(self.accounts)

    async def list_transactions(self, access_token, fintech_use_num, from_date=None, to_date=None):
        self.access_tokens.append(access_token)
        if self.error is not None:
            raise self.error
        if fintech_use_num in self.transaction_errors:
            raise self.transaction_errors[fintech_use_num]
        return list(self.transactions.get(fintech_use_num, []))


@pytest.fixture(scope="session", autouse=True)
def create_tables() -> Generator[None, Any, Any]:
    Base.metadata.create_all(engine)
    yield
    engine.dispose()
    try:
        os.remove(_DB_PATH)
    except OSError:
        pass


@pytest.fixture(scope="function")
def db_session() -> Generator[Any, Any, Any]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        # 매 테스트마다 깨끗한 상태
        with engine.begin() as conn:
            conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
            for tbl in reversed(Base.metadata.sorted_tables):
                conn.execute(tbl.delete())
            conn.exec_driver_sql("PRAGMA foreign_keys=ON")


@pytest.fixture()
def settings() -> Settings:
    return get_settings()


@pytest.fixture()
def user(db_session) -> models.User:
    u = models.User(email="demo@example.com", full_name="Demo", is_active=True)
    db_session.add(u)
    db_session.commit()
    db_session.refresh(u)
    return u


@pytest.fixture()
def other_user(db_session) -> models.User:
    u = models.User(email="other@example.com", full_name="Other", is_active=True)
    db_session.add(u)
    db_session.commit()
    db_session.refresh(u)
    return u


@pytest.fixture()
def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_user_token(user.id)}"}


@pytest.fixture()
def encryption(settings) -> TokenEncryption:
    return TokenEncryption(settings.secret_key)


@pytest.fixture()
def token_client(settings) -> FakeTokenClient:
    return FakeTokenClient(settings)


@pytest.fixture()
def data_client(settings) -> FakeDataClient:
    return FakeDataClient(settings)


@pytest.fixture()
def client(db_session, token_client, data_client) -> Generator[TestClient, Any, Any]:
    def _get_db_override():
        try:
            yield db_session
        finally:
            pass

    def _get_bank_service_override(
        settings: Settings = Depends(get_settings),
        state_store: BaseOAuthStateStore = Depends(get_oauth_state_store),
    ):
        return BankIntegrationService(
            db_session,
            settings,
            state_store,
            token_client=token_client,
            data_client=data_client,
        )

    app.dependency_overrides[get_db] = _get_db_override
    app.dependency_overrides[get_bank_service] = _get_bank_service_override
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
