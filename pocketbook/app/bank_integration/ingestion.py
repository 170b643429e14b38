"""
Transaction ingestion

Turns provider records (pull mode) or client-submitted transactions (push
mode) into rows of the local schema and commits them without duplicates.
One account's batch is one database transaction.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from pocketbook.database import insert_ignoring_conflicts
from pocketbook.app.models import BankAccount, Transaction, TransactionType
from pocketbook.app.schemas import IncomingTransaction, KftcAccount, KftcTransactionRaw, TransactionSummary

from .deduplication import TransactionDeduplicator
from .exceptions import UnknownAccount

logger = logging.getLogger(__name__)

# KFTC inout_type value for money coming in
DEPOSIT_MARKER = "입금"
UNKNOWN_BANK_NAME = "unknown"
TRANSACTION_UNIQUE_KEY = ("user_id", "provider_transaction_id")
ACCOUNT_UNIQUE_KEY = ("user_id", "account_num")

_NON_DIGITS = re.compile(r"\D")


@dataclass
class IngestionResult:
    inserted: int = 0
    duplicates: int = 0
    skipped: int = 0
    summaries: List[TransactionSummary] = field(default_factory=list)

    def merge(self, other: "IngestionResult") -> "IngestionResult":
        self.inserted += other.inserted
        self.duplicates += other.duplicates
        self.skipped += other.skipped
        self.summaries.extend(other.summaries)
        return self


def compose_timestamp(tran_date: str, tran_time: Optional[str]) -> datetime:
    """
    Combine provider date (YYYYMMDD) and time (HHMMSS) into a datetime.

    Missing time parts are zero-filled: "0930" -> 09:30:00, None -> 00:00:00.

    Raises:
        ValueError: If the date is not a real calendar date
    """
    date_digits = _NON_DIGITS.sub("", tran_date or "")
    time_digits = _NON_DIGITS.sub("", tran_time or "").ljust(6, "0")[:6]
    return datetime.strptime(f"{date_digits}{time_digits}", "%Y%m%d%H%M%S")


def map_direction(inout_type: Optional[str]) -> TransactionType:
    if (inout_type or "").strip() == DEPOSIT_MARKER:
        return TransactionType.DEPOSIT
    return TransactionType.WITHDRAW


def account_natural_key(account: KftcAccount) -> Optional[str]:
    return account.account_num or account.fintech_use_num


class IngestionPipeline:
    """
    Normalize and commit transaction batches for one user.

    Commit contract:
    - rows whose dedup key is already stored are skipped, never updated
    - accounts are upserted by (user_id, account_num) before their
      transactions, in the same database transaction
    - a failed batch rolls back only itself
    """

    def __init__(self, db: Session):
        self.db = db

    def normalize_provider_transaction(
        self,
        user_id: int,
        account_id: Optional[int],
        raw: KftcTransactionRaw
    ) -> dict:
        """
        Map a raw KFTC record to a transactions row.

        printed_content becomes both original_content and store_name;
        category is left for the categorizer.
        """
        return {
            "user_id": user_id,
            "account_id": account_id,
            "provider_transaction_id": TransactionDeduplicator.dedup_key(
                raw.tran_id, raw.tran_date, raw.tran_time, raw.printed_content, raw.tran_amt
            ),
            "transacted_at": compose_timestamp(raw.tran_date, raw.tran_time),
            "original_content": raw.printed_content,
            "amount": raw.tran_amt,
            "balance_after": raw.after_balance_amt,
            "type": map_direction(raw.inout_type),
            "method": None,
            "store_name": raw.printed_content,
            "category": None,
            "is_excluded": False,
            "memo": None,
        }

    def normalize_client_transaction(self, user_id: int, tx: IncomingTransaction) -> dict:
        """Client-submitted transactions are stored as given."""
        return {
            "user_id": user_id,
            "account_id": tx.account_id,
            "provider_transaction_id": tx.provider_transaction_id,
            "transacted_at": tx.transacted_at,
            "original_content": tx.original_content,
            "amount": tx.amount,
            "balance_after": tx.balance_after,
            "type": tx.type,
            "method": tx.method,
            "store_name": tx.store_name,
            "category": tx.category,
            "is_excluded": tx.is_excluded,
            "memo": tx.memo,
        }

    def validate_account_ids(self, user_id: int, account_ids: Iterable[Optional[int]]) -> None:
        """
        Make sure every referenced account belongs to the user.

        Raises:
            UnknownAccount: For the first id the user does not own
        """
        wanted = {account_id for account_id in account_ids if account_id is not None}
        if not wanted:
            return

        owned = {
            row.id for row in self.db.query(BankAccount.id).filter(
                BankAccount.user_id == user_id,
                BankAccount.id.in_(wanted)
            ).all()
        }
        for account_id in sorted(wanted - owned):
            raise UnknownAccount(account_id)

    def find_account_by_fintech_num(self, user_id: int, fintech_use_num: str) -> Optional[BankAccount]:
        return self.db.query(BankAccount).filter(
            BankAccount.user_id == user_id,
            BankAccount.fintech_use_num == fintech_use_num
        ).first()

    def upsert_account(self, user_id: int, account: KftcAccount) -> Optional[BankAccount]:
        """
        Insert or update the local row for a provider account.

        Does not commit; callers commit it together with the account's
        transactions.

        Returns:
            The BankAccount, or None if the provider gave no usable key
        """
        key = account_natural_key(account)
        if not key:
            logger.warning("Skipping provider account without account_num or fintech_use_num")
            return None

        bank_name = account.bank_name or UNKNOWN_BANK_NAME

        insert_ignoring_conflicts(
            self.db,
            BankAccount,
            [{
                "user_id": user_id,
                "account_num": key,
                "bank_name": bank_name,
                "fintech_use_num": account.fintech_use_num,
                "balance": account.balance_amt,
            }],
            ACCOUNT_UNIQUE_KEY
        )

        bank_account = self.db.query(BankAccount).filter(
            BankAccount.user_id == user_id,
            BankAccount.account_num == key
        ).populate_existing().one()

        bank_account.bank_name = bank_name
        if account.fintech_use_num:
            bank_account.fintech_use_num = account.fintech_use_num
        if account.balance_amt is not None:
            bank_account.balance = account.balance_amt
        self.db.flush()

        return bank_account

    def ingest_account_batch(
        self,
        user_id: int,
        raw_transactions: List[KftcTransactionRaw],
        account: Optional[KftcAccount] = None,
        account_id: Optional[int] = None
    ) -> IngestionResult:
        """
        Commit one account's provider history as a single unit.

        Args:
            user_id: Owner
            raw_transactions: Records from the provider
            account: Provider account to upsert first (pull mode)
            account_id: Existing local account id, when no upsert is needed

        Returns:
            Counts plus a summary of every record in the batch
        """
        try:
            if account is not None:
                bank_account = self.upsert_account(user_id, account)
                account_id = bank_account.id if bank_account else None

            rows = []
            skipped = 0
            for raw in raw_transactions:
                try:
                    rows.append(self.normalize_provider_transaction(user_id, account_id, raw))
                except ValueError as e:
                    skipped += 1
                    logger.warning(f"Skipping provider transaction dated {raw.tran_date!r}: {e}")

            result = self._insert_rows(user_id, rows)
            result.skipped = skipped
            self.db.commit()

        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Ingested account batch for user {user_id} (account_id={account_id}): "
            f"inserted={result.inserted}, duplicates={result.duplicates}, skipped={result.skipped}"
        )
        return result

    def ingest_client_batch(self, user_id: int, transactions: List[IncomingTransaction]) -> IngestionResult:
        """Commit a client-submitted batch as a single unit."""
        self.validate_account_ids(user_id, (tx.account_id for tx in transactions))

        rows = [self.normalize_client_transaction(user_id, tx) for tx in transactions]

        try:
            result = self._insert_rows(user_id, rows)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Ingested client batch for user {user_id}: "
            f"inserted={result.inserted}, duplicates={result.duplicates}"
        )
        return result

    def _insert_rows(self, user_id: int, rows: List[dict]) -> IngestionResult:
        new_rows, duplicates = TransactionDeduplicator.split_new(self.db, user_id, rows)

        insert_ignoring_conflicts(self.db, Transaction, new_rows, TRANSACTION_UNIQUE_KEY)

        return IngestionResult(
            inserted=len(new_rows),
            duplicates=duplicates,
            summaries=[
                TransactionSummary(
                    provider_transaction_id=row["provider_transaction_id"],
                    transacted_at=row["transacted_at"],
                    store_name=row["store_name"],
                    category=row["category"],
                    amount=row["amount"]
                )
                for row in rows
            ]
        )
