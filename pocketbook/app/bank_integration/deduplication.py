"""
Transaction Deduplication Module

A transaction is identified per user by its dedup key:
1. The provider's transaction id, when the provider sends one
2. Otherwise a deterministic key built from date, time, content and amount

The fallback key is lossy: two genuinely different transactions with the same
date, time, content and amount collide, and the second is dropped.
"""

import hashlib
from decimal import Decimal
from typing import Iterable, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from pocketbook.app.models import Transaction

# Keeps IN (...) lists well under SQLite's bound-parameter limit
KEY_LOOKUP_CHUNK_SIZE = 500


class TransactionDeduplicator:
    """
    Decide which incoming transactions are already stored for a user.

    Lookups only narrow the batch before insert; the unique constraint on
    (user_id, provider_transaction_id) plus insert-ignore is what actually
    guarantees no duplicate rows under concurrent ingestion.
    """

    @staticmethod
    def fallback_key(
        tran_date: str,
        tran_time: Optional[str],
        content: Optional[str],
        amount: Decimal
    ) -> str:
        """
        Build the synthetic dedup key for a record without a provider id.

        The readable date/time prefix is kept; content and amount are hashed
        so long descriptions still fit the key column.

        Example:
            >>> TransactionDeduplicator.fallback_key("20240115", "093000", "STARBUCKS", Decimal("4500"))
            '20240115-093000-...'
        """
        # Normalize inputs so the same record always hashes the same way
        amount_str = f"{Decimal(amount).normalize():f}"
        content_normalized = (content or "").strip()
        time_str = tran_time or ""

        hash_input = f"{tran_date}|{time_str}|{content_normalized}|{amount_str}"

        # MD5 for speed (not security)
        digest = hashlib.md5(hash_input.encode()).hexdigest()
        return f"{tran_date}-{time_str}-{digest}"

    @staticmethod
    def dedup_key(
        provider_id: Optional[str],
        tran_date: str,
        tran_time: Optional[str],
        content: Optional[str],
        amount: Decimal
    ) -> str:
        """Provider id when present, otherwise the fallback key."""
        if provider_id:
            return provider_id
        return TransactionDeduplicator.fallback_key(tran_date, tran_time, content, amount)

    @staticmethod
    def find_existing_keys(db: Session, user_id: int, keys: Iterable[str]) -> Set[str]:
        """
        Return the subset of `keys` already stored for this user.

        Args:
            db: Database session
            user_id: Owner of the transactions
            keys: Candidate dedup keys

        Returns:
            Keys that already have a row
        """
        key_list = list(dict.fromkeys(keys))
        existing: Set[str] = set()

        for start in range(0, len(key_list), KEY_LOOKUP_CHUNK_SIZE):
            chunk = key_list[start:start + KEY_LOOKUP_CHUNK_SIZE]
            rows = db.query(Transaction.provider_transaction_id).filter(
                Transaction.user_id == user_id,
                Transaction.provider_transaction_id.in_(chunk)
            ).all()
            existing.update(row.provider_transaction_id for row in rows)

        return existing

    @staticmethod
    def split_new(
        db: Session,
        user_id: int,
        rows: List[dict]
    ) -> Tuple[List[dict], int]:
        """
        Separate rows that need inserting from ones already known.

        Repeats inside the batch are collapsed (first occurrence wins) and
        rows whose key is already stored are dropped.

        Returns:
            (rows to insert, number of duplicates skipped)
        """
        seen: Set[str] = set()
        unique_rows = []
        for row in rows:
            key = row["provider_transaction_id"]
            if key in seen:
                continue
            seen.add(key)
            unique_rows.append(row)

        existing = TransactionDeduplicator.find_existing_keys(db, user_id, seen)
        new_rows = [row for row in unique_rows if row["provider_transaction_id"] not in existing]

        return new_rows, len(rows) - len(new_rows)
