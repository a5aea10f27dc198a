"""
Tests for the MongoDB adapter, run against mongomock

The service tests here repeat the key ledger properties on the document
store whose conditional updates guard them in production.
"""

from datetime import datetime, timezone

import mongomock
import pytest

from ledger.models import PaymentProof, TransactionStatus
from ledger.service import AlreadyUnlockedError, DuplicateTransactionError
from ledger.storage import DuplicateKeyError, MongoStorage

VIEWER_WALLET = "0xVIEWER000000000000000000000000000000002"
NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


@pytest.fixture
def storage():
    return MongoStorage(mongomock.MongoClient(), "ledger-test")


def tx_doc(tx_id: str, tx_hash=None) -> dict:
    return {
        "_id": tx_id,
        "user": "u1",
        "video": "v1",
        "type": "unlock",
        "amount": 100000,
        "amountDisplay": "0.1 USDC",
        "paymentMethod": "crypto",
        "transactionHash": tx_hash,
        "status": "pending",
        "metadata": {},
        "createdAt": NOW,
        "updatedAt": NOW,
    }


def user_doc(user_id: str, wallet: str, credits: int = 1) -> dict:
    return {
        "_id": user_id,
        "walletAddress": wallet,
        "username": f"user_{user_id}",
        "viewCredits": credits,
        "videosWatched": [],
        "videosUnlocked": [],
        "videosTipped": [],
        "totalTipsSpent": 0,
        "totalTipsEarned": 0,
    }


class TestMongoStorage:
    def test_transaction_hash_is_unique(self, storage):
        storage.insert_transaction(tx_doc("t1", "0xabc"))
        with pytest.raises(DuplicateKeyError):
            storage.insert_transaction(tx_doc("t2", "0xabc"))

    def test_transactions_without_hash_coexist(self, storage):
        storage.insert_transaction(tx_doc("t1"))
        storage.insert_transaction(tx_doc("t2"))
        assert len(storage.find_transactions({"user": "u1"})) == 2
        assert "transactionHash" not in storage.transactions.find_one({"_id": "t1"})

    def test_find_transactions_without_limit(self, storage):
        for n in range(3):
            storage.insert_transaction(tx_doc(f"t{n}"))
        assert len(storage.find_transactions({"video": "v1"}, limit=0)) == 3
        assert len(storage.find_transactions({"video": "v1"}, limit=2)) == 2

    def test_status_moves_only_from_pending(self, storage):
        storage.insert_transaction(tx_doc("t1", "0xabc"))
        assert storage.set_transaction_status("t1", "pending", "completed", NOW) is True
        assert storage.set_transaction_status("t1", "pending", "failed", NOW) is False
        assert storage.find_transaction_by_hash("0xabc")["status"] == "completed"

    def test_consume_view_credit_is_conditional(self, storage):
        storage.get_or_insert_user(user_doc("u1", "0xa", credits=1), NOW)

        assert storage.consume_view_credit("u1", "v1")["viewCredits"] == 0
        assert storage.consume_view_credit("u1", "v1") is None
        assert storage.consume_view_credit("u1", "v2") is None
        assert storage.find_user("u1")["videosWatched"] == ["v1"]

    def test_add_unlocked_video_once(self, storage):
        storage.get_or_insert_user(user_doc("u1", "0xa"), NOW)

        assert storage.add_unlocked_video("u1", "v1") is not None
        assert storage.add_unlocked_video("u1", "v1") is None
        assert storage.find_user("u1")["videosUnlocked"] == ["v1"]

    def test_get_or_insert_user_keeps_first(self, storage):
        first, created = storage.get_or_insert_user(user_doc("u1", "0xa"), NOW)
        second, created_again = storage.get_or_insert_user(user_doc("u2", "0xa"), NOW)

        assert created is True
        assert created_again is False
        assert second["_id"] == first["_id"] == "u1"

    def test_increment_user_add_to_set(self, storage):
        storage.get_or_insert_user(user_doc("u1", "0xa"), NOW)
        storage.increment_user("u1", {"totalTipsSpent": 5}, add_to_set={"videosTipped": "v1"})
        doc = storage.increment_user("u1", {"totalTipsSpent": 5}, add_to_set={"videosTipped": "v1"})

        assert doc["totalTipsSpent"] == 10
        assert doc["videosTipped"] == ["v1"]


class TestLedgerOnMongo:
    def test_unlock_double_spend(self, service, viewer, paid_video):
        proof = PaymentProof(transaction_hash="0xabc", amount=100000)
        service.unlock_video(viewer.id, paid_video.id, proof)

        with pytest.raises(DuplicateTransactionError):
            service.unlock_video(viewer.id, paid_video.id, proof)
        with pytest.raises(AlreadyUnlockedError):
            service.unlock_video(viewer.id, paid_video.id, PaymentProof(transaction_hash="0xdef", amount=100000))

        video, _ = service.get_video(paid_video.id)
        assert video.total_unlocks == 1
        [tx] = service.get_transactions(viewer.id)
        assert tx.status == TransactionStatus.COMPLETED

    def test_watch_idempotent(self, service, viewer, paid_video):
        service.deduct_view_credit(VIEWER_WALLET, paid_video.id)
        result = service.deduct_view_credit(VIEWER_WALLET, paid_video.id)

        assert result.already_watched is True
        assert service.get_user(viewer.id).view_credits == 9

    def test_reconcile(self, service, viewer, paid_video):
        service.unlock_video(viewer.id, paid_video.id, PaymentProof(transaction_hash="0x1", amount=100000))
        service.storage.set_video_fields(paid_video.id, {"totalUnlocks": 0})

        assert service.reconcile_video(paid_video.id).total_unlocks_after == 1

    def test_reconcile_restores_missing_unlock(self, service, storage, viewer, paid_video):
        service.unlock_video(viewer.id, paid_video.id, PaymentProof(transaction_hash="0x2", amount=100000))
        storage.users.update_one({"_id": viewer.id}, {"$set": {"videosUnlocked": []}})

        result = service.reconcile_video(paid_video.id)

        assert result.unlocks_restored == 1
        assert service.get_user(viewer.id).videos_unlocked == [paid_video.id]
