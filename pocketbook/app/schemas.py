from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from typing import Any, Dict, Optional, List
from datetime import datetime
from decimal import Decimal

from .models import TransactionType


YYYYMMDD_PATTERN = r"^\d{8}$"


class TokenData(BaseModel):
    user_id: Optional[int] = None


class CamelModel(BaseModel):
    """API payloads use camelCase on the wire and snake_case in Python."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True


# KFTC provider payloads
#
# Only the fields this service consumes are typed. Everything else the
# provider sends is kept in `extra` for diagnostics and never written to
# the local schema.

class KftcModel(BaseModel):
    extra: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def collect_extra(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields)
        typed = {k: v for k, v in data.items() if k in known}
        typed["extra"] = {k: v for k, v in data.items() if k not in known}
        return typed


class KftcTokenResponse(KftcModel):
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    user_seq_no: Optional[str] = None

    @field_validator("expires_in", mode="before")
    @classmethod
    def coerce_expires_in(cls, value):
        if value is None or value == "":
            return None
        return int(value)

    @field_validator("user_seq_no", mode="before")
    @classmethod
    def coerce_user_seq_no(cls, value):
        return str(value) if value is not None else None


class KftcUserInfo(KftcModel):
    rsp_code: Optional[str] = None
    user_seq_no: Optional[str] = None
    user_name: Optional[str] = None
    bank_name: Optional[str] = None
    fintech_use_num: Optional[str] = None

    @field_validator("user_seq_no", mode="before")
    @classmethod
    def coerce_user_seq_no(cls, value):
        return str(value) if value is not None else None


class KftcAccount(KftcModel):
    fintech_use_num: Optional[str] = None
    bank_name: Optional[str] = None
    account_num: Optional[str] = None
    account_num_masked: Optional[str] = None
    account_alias: Optional[str] = None
    balance_amt: Optional[Decimal] = None


class KftcTransactionRaw(KftcModel):
    tran_date: str
    tran_time: Optional[str] = None
    printed_content: Optional[str] = None
    tran_amt: Decimal
    after_balance_amt: Optional[Decimal] = None
    inout_type: Optional[str] = None
    tran_id: Optional[str] = None

    @field_validator("tran_date", "tran_time", mode="before")
    @classmethod
    def coerce_to_str(cls, value):
        return str(value) if value is not None else None

    @field_validator("after_balance_amt", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        return None if value == "" else value


# API request/response schemas

class IncomingTransaction(CamelModel):
    provider_transaction_id: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("providerTransactionId", "provider_transaction_id", "kftc_tran_id"),
    )
    transacted_at: datetime
    original_content: Optional[str] = None
    amount: Decimal
    balance_after: Optional[Decimal] = None
    type: TransactionType
    method: Optional[str] = None
    store_name: Optional[str] = None
    category: Optional[str] = None
    is_excluded: bool = False
    memo: Optional[str] = None
    account_id: Optional[int] = None


class ConnectRequest(CamelModel):
    # Optional here so a missing code is reported as 400, not 422
    auth_code: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("authCode", "kftcAuthCode", "auth_code"),
    )
    scope: Optional[str] = None
    bank_name: Optional[str] = None
    transactions: Optional[List[IncomingTransaction]] = None
    from_date: Optional[str] = Field(default=None, pattern=YYYYMMDD_PATTERN)
    to_date: Optional[str] = Field(default=None, pattern=YYYYMMDD_PATTERN)


class AccountSyncRequest(CamelModel):
    fintech_use_num: Optional[str] = None
    from_date: Optional[str] = Field(default=None, pattern=YYYYMMDD_PATTERN)
    to_date: Optional[str] = Field(default=None, pattern=YYYYMMDD_PATTERN)


class TransactionSummary(CamelModel):
    provider_transaction_id: str
    transacted_at: datetime
    store_name: Optional[str] = None
    category: Optional[str] = None
    amount: Decimal


class SyncResponse(CamelModel):
    status: str = "SYNC_COMPLETED"
    bank_name: str
    transactions: List[TransactionSummary]
    imported: int
    duplicates: int


class AuthUrlResponse(CamelModel):
    auth_url: str
    state: str
    scope: str


class CallbackResponse(CamelModel):
    kftc_auth_code: str
    scope: str
    state: str


class AccessTokenResponse(CamelModel):
    access_token: str


class BankAccount(CamelModel):
    id: int
    bank_name: str
    account_num: str
    fintech_use_num: Optional[str] = None
    balance: Optional[Decimal] = None
    created_at: Optional[datetime] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True

