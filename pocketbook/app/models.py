from sqlalchemy import Column, Integer, String, Boolean, DateTime, DECIMAL, Text, ForeignKey, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
from pocketbook.database import Base


class TransactionType(str, enum.Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True)

    # KFTC provider tokens (encrypted)
    kftc_access_token = Column(Text, nullable=True)
    kftc_refresh_token = Column(Text, nullable=True)
    kftc_user_seq_no = Column(String(20), nullable=True)
    kftc_token_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    bank_accounts = relationship("BankAccount", back_populates="user")
    transactions = relationship("Transaction", back_populates="user")


class BankAccount(Base):
    __tablename__ = "bank_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "account_num", name="uq_bank_accounts_user_account_num"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    bank_name = Column(String(100), nullable=False, default="unknown")
    account_num = Column(String(64), nullable=False)
    fintech_use_num = Column(String(64), nullable=True)
    balance = Column(DECIMAL(15, 2), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="bank_accounts")
    transactions = relationship("Transaction", back_populates="account")


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "provider_transaction_id", name="uq_transactions_user_provider_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("bank_accounts.id"), nullable=True)

    # Deduplication key (provider id or synthesized fallback)
    provider_transaction_id = Column(String(255), nullable=False)

    transacted_at = Column(DateTime, nullable=False)
    original_content = Column(Text, nullable=True)
    amount = Column(DECIMAL(15, 2), nullable=False)
    balance_after = Column(DECIMAL(15, 2), nullable=True)
    type = Column(SQLEnum(TransactionType), nullable=False)
    method = Column(String(50), nullable=True)
    store_name = Column(String(255), nullable=True)

    # User-editable
    category = Column(String(100), nullable=True)
    is_excluded = Column(Boolean, nullable=False, default=False)
    memo = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="transactions")
    account = relationship("BankAccount", back_populates="transactions")
