"""Tests for normalization and idempotent commit of transaction batches."""

from datetime import datetime
from decimal import Decimal

import pytest

from pocketbook.app.models import BankAccount, Transaction, TransactionType
from pocketbook.app.schemas import IncomingTransaction, KftcAccount, KftcTransactionRaw
from pocketbook.app.bank_integration.deduplication import TransactionDeduplicator
from pocketbook.app.bank_integration.exceptions import UnknownAccount
from pocketbook.app.bank_integration.ingestion import IngestionPipeline, compose_timestamp, map_direction

FINTECH_USE_NUM = "199159919057870978715901"


def _raw(**overrides) -> KftcTransactionRaw:
    data = {
        "tran_date": "20240115",
        "tran_time": "093000",
        "printed_content": "STARBUCKS",
        "tran_amt": "4500",
        "after_balance_amt": "995500",
        "inout_type": "출금",
        "tran_id": "T-0001",
    }
    data.update(overrides)
    return KftcTransactionRaw.model_validate(data)


def _account(**overrides) -> KftcAccount:
    data = {
        "fintech_use_num": FINTECH_USE_NUM,
        "bank_name": "KB국민은행",
        "account_num": "1234567890",
        "balance_amt": "1000000",
    }
    data.update(overrides)
    return KftcAccount.model_validate(data)


@pytest.fixture
def pipeline(db_session) -> IngestionPipeline:
    return IngestionPipeline(db_session)


class TestNormalization:
    @pytest.mark.parametrize(
        "tran_time, expected",
        [
            ("093000", datetime(2024, 1, 15, 9, 30, 0)),
            ("0930", datetime(2024, 1, 15, 9, 30, 0)),
            ("", datetime(2024, 1, 15, 0, 0, 0)),
            (None, datetime(2024, 1, 15, 0, 0, 0)),
        ],
    )
    def test_timestamp_pads_missing_time(self, tran_time, expected):
        assert compose_timestamp("20240115", tran_time) == expected

    def test_invalid_date_raises(self):
        with pytest.raises(ValueError):
            compose_timestamp("20241345", "093000")

    def test_direction(self):
        assert map_direction("입금") == TransactionType.DEPOSIT
        assert map_direction("출금") == TransactionType.WITHDRAW
        assert map_direction(None) == TransactionType.WITHDRAW

    def test_provider_record_mapping(self, pipeline, user):
        row = pipeline.normalize_provider_transaction(user.id, 7, _raw(inout_type="입금"))

        assert row["provider_transaction_id"] == "T-0001"
        assert row["transacted_at"] == datetime(2024, 1, 15, 9, 30)
        assert row["type"] == TransactionType.DEPOSIT
        assert row["store_name"] == "STARBUCKS"
        assert row["original_content"] == "STARBUCKS"
        assert row["category"] is None
        assert row["method"] is None
        assert row["memo"] is None
        assert row["is_excluded"] is False
        assert row["account_id"] == 7

    def test_record_without_tran_id_uses_fallback_key(self, pipeline, user):
        row = pipeline.normalize_provider_transaction(user.id, None, _raw(tran_id=None))

        assert row["provider_transaction_id"] == TransactionDeduplicator.fallback_key(
            "20240115", "093000", "STARBUCKS", Decimal("4500")
        )


class TestAccountUpsert:
    def test_upsert_creates_then_updates(self, pipeline, db_session, user):
        first = pipeline.upsert_account(user.id, _account())
        db_session.commit()

        second = pipeline.upsert_account(user.id, _account(bank_name="국민은행", balance_amt="2000"))
        db_session.commit()

        assert first.id == second.id
        accounts = db_session.query(BankAccount).filter(BankAccount.user_id == user.id).all()
        assert len(accounts) == 1
        assert accounts[0].bank_name == "국민은행"
        assert accounts[0].balance == Decimal("2000")
        assert accounts[0].fintech_use_num == FINTECH_USE_NUM

    def test_fintech_use_num_is_key_when_account_num_missing(self, pipeline, db_session, user):
        account = pipeline.upsert_account(user.id, _account(account_num=None, bank_name=None))
        db_session.commit()

        assert account.account_num == FINTECH_USE_NUM
        assert account.bank_name == "unknown"

    def test_account_without_any_key_is_skipped(self, pipeline, db_session, user):
        assert pipeline.upsert_account(user.id, _account(account_num=None, fintech_use_num=None)) is None
        assert db_session.query(BankAccount).count() == 0


class TestAccountBatch:
    def test_batch_is_idempotent(self, pipeline, db_session, user):
        records = [_raw(), _raw(tran_id=None, tran_date="20240116", printed_content="급여", inout_type="입금")]

        first = pipeline.ingest_account_batch(user.id, records, account=_account())
        second = pipeline.ingest_account_batch(user.id, records, account=_account())

        assert (first.inserted, first.duplicates) == (2, 0)
        assert (second.inserted, second.duplicates) == (0, 2)
        assert len(second.summaries) == 2
        assert db_session.query(Transaction).filter(Transaction.user_id == user.id).count() == 2
        assert db_session.query(BankAccount).count() == 1

    def test_transactions_link_to_upserted_account(self, pipeline, db_session, user):
        pipeline.ingest_account_batch(user.id, [_raw()], account=_account())

        account = db_session.query(BankAccount).one()
        tx = db_session.query(Transaction).one()
        assert tx.account_id == account.id
        assert tx.amount == Decimal("4500")
        assert tx.balance_after == Decimal("995500")

    def test_repeats_inside_batch_are_stored_once(self, pipeline, db_session, user):
        result = pipeline.ingest_account_batch(user.id, [_raw(), _raw()], account=_account())

        assert result.inserted == 1
        assert result.duplicates == 1
        assert len(result.summaries) == 2
        assert db_session.query(Transaction).count() == 1

    def test_existing_row_is_not_overwritten(self, pipeline, db_session, user):
        pipeline.ingest_account_batch(user.id, [_raw()], account=_account())
        tx = db_session.query(Transaction).one()
        tx.category = "카페"
        tx.memo = "coffee"
        db_session.commit()

        pipeline.ingest_account_batch(user.id, [_raw(printed_content="CHANGED")], account=_account())

        db_session.expire_all()
        tx = db_session.query(Transaction).one()
        assert tx.category == "카페"
        assert tx.memo == "coffee"
        assert tx.store_name == "STARBUCKS"

    def test_invalid_record_is_skipped(self, pipeline, db_session, user):
        result = pipeline.ingest_account_batch(
            user.id, [_raw(), _raw(tran_id="T-0002", tran_date="20241345")], account=_account()
        )

        assert result.inserted == 1
        assert result.skipped == 1

    def test_failure_rolls_back_account_and_transactions(self, pipeline, db_session, user, monkeypatch):
        def fail(*args, **kwargs):
            raise RuntimeError("connection lost")

        monkeypatch.setattr(pipeline, "_insert_rows", fail)

        with pytest.raises(RuntimeError):
            pipeline.ingest_account_batch(user.id, [_raw()], account=_account())

        assert db_session.query(BankAccount).count() == 0
        assert db_session.query(Transaction).count() == 0


class TestClientBatch:
    def _incoming(self, **overrides) -> IncomingTransaction:
        data = {
            "providerTransactionId": "C-0001",
            "transactedAt": "2024-01-15T09:30:00",
            "amount": "4500",
            "type": "WITHDRAW",
            "storeName": "STARBUCKS",
            "category": "카페",
            "memo": "coffee",
        }
        data.update(overrides)
        return IncomingTransaction.model_validate(data)

    def test_client_rows_are_stored_as_given(self, pipeline, db_session, user):
        result = pipeline.ingest_client_batch(user.id, [self._incoming()])

        assert result.inserted == 1
        tx = db_session.query(Transaction).one()
        assert tx.provider_transaction_id == "C-0001"
        assert tx.category == "카페"
        assert tx.memo == "coffee"
        assert tx.type == TransactionType.WITHDRAW

    def test_client_batch_is_idempotent(self, pipeline, db_session, user):
        pipeline.ingest_client_batch(user.id, [self._incoming()])
        result = pipeline.ingest_client_batch(user.id, [self._incoming()])

        assert result.inserted == 0
        assert result.duplicates == 1
        assert db_session.query(Transaction).count() == 1

    def test_legacy_key_name_is_accepted(self, pipeline, user):
        tx = IncomingTransaction.model_validate({
            "kftc_tran_id": "C-0002",
            "transacted_at": "2024-01-15T09:30:00",
            "amount": "1000",
            "type": "DEPOSIT",
        })

        assert tx.provider_transaction_id == "C-0002"

    def test_foreign_account_reference_is_rejected(self, pipeline, db_session, user, other_user):
        foreign = BankAccount(user_id=other_user.id, bank_name="신한은행", account_num="999")
        db_session.add(foreign)
        db_session.commit()

        with pytest.raises(UnknownAccount):
            pipeline.ingest_client_batch(user.id, [self._incoming(accountId=foreign.id)])

        assert db_session.query(Transaction).count() == 0
