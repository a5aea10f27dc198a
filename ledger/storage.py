"""
Document-store adapters for the ledger.

Both stores keep documents as camelCase dicts shaped like the ``users``,
``videos`` and ``transactions`` collections. Every method that combines a
precondition with a mutation is atomic: MongoDB gets the precondition in
the ``find_one_and_update`` filter, the in-memory store holds one lock for
the whole check-and-write.
"""

import copy
import logging
import threading
from datetime import datetime
from typing import Any, Optional, Protocol

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo import errors as mongo_errors

logger = logging.getLogger(__name__)


class DuplicateKeyError(Exception):
    """A unique index (wallet address, transaction hash) rejected an insert."""


class LedgerStorage(Protocol):
    def find_user(self, user_id: str) -> Optional[dict]: ...
    def find_user_by_wallet(self, wallet_address: str) -> Optional[dict]: ...
    def get_or_insert_user(self, doc: dict, now: datetime) -> tuple[dict, bool]: ...
    def consume_view_credit(self, user_id: str, video_id: str) -> Optional[dict]: ...
    def add_unlocked_video(self, user_id: str, video_id: str) -> Optional[dict]: ...
    def increment_user(self, user_id: str, inc: dict, add_to_set: Optional[dict] = None) -> Optional[dict]: ...
    def find_video(self, video_id: str) -> Optional[dict]: ...
    def find_videos(self, filters: dict, limit: int, skip: int) -> list[dict]: ...
    def insert_video(self, doc: dict) -> dict: ...
    def increment_video(self, video_id: str, inc: dict) -> Optional[dict]: ...
    def set_video_fields(self, video_id: str, fields: dict) -> Optional[dict]: ...
    def find_transaction_by_hash(self, transaction_hash: str) -> Optional[dict]: ...
    def insert_transaction(self, doc: dict) -> dict: ...
    def set_transaction_status(self, transaction_id: str, from_status: str, to_status: str, now: datetime) -> bool: ...
    def find_transactions(self, filters: dict, limit: int = 50, skip: int = 0) -> list[dict]: ...
    def distinct_transaction_users(self, filters: dict) -> list[str]: ...


def _matches(doc: dict, filters: dict) -> bool:
    return all(doc.get(key) == value for key, value in filters.items())


def _featured_then_newest(doc: dict) -> tuple:
    # Documents without createdAt sort after dated ones, as null does in MongoDB.
    created_at = doc.get("createdAt")
    return doc.get("featured", False), created_at is not None, created_at


def _page(docs: list, limit: int, skip: int) -> list:
    # limit=0 means no limit, as with a MongoDB cursor.
    return docs[skip:skip + limit] if limit else docs[skip:]


class InMemoryStorage:
    def __init__(self):
        self.users: dict[str, dict] = {}
        self.videos: dict[str, dict] = {}
        self.transactions: dict[str, dict] = {}
        self.wallet_index: dict[str, str] = {}
        self.hash_index: dict[str, str] = {}
        self._lock = threading.RLock()

    # Users

    def find_user(self, user_id: str) -> Optional[dict]:
        with self._lock:
            return copy.deepcopy(self.users.get(user_id))

    def find_user_by_wallet(self, wallet_address: str) -> Optional[dict]:
        with self._lock:
            user_id = self.wallet_index.get(wallet_address)
            return copy.deepcopy(self.users.get(user_id)) if user_id else None

    def get_or_insert_user(self, doc: dict, now: datetime) -> tuple[dict, bool]:
        with self._lock:
            user_id = self.wallet_index.get(doc["walletAddress"])
            if user_id:
                self.users[user_id]["lastLoginAt"] = now
                return copy.deepcopy(self.users[user_id]), False
            self.users[doc["_id"]] = copy.deepcopy(doc)
            self.wallet_index[doc["walletAddress"]] = doc["_id"]
            return copy.deepcopy(doc), True

    def consume_view_credit(self, user_id: str, video_id: str) -> Optional[dict]:
        with self._lock:
            user = self.users.get(user_id)
            if not user or video_id in user["videosWatched"] or user["viewCredits"] <= 0:
                return None
            user["viewCredits"] -= 1
            user["videosWatched"].append(video_id)
            return copy.deepcopy(user)

    def add_unlocked_video(self, user_id: str, video_id: str) -> Optional[dict]:
        with self._lock:
            user = self.users.get(user_id)
            if not user or video_id in user["videosUnlocked"]:
                return None
            user["videosUnlocked"].append(video_id)
            return copy.deepcopy(user)

    def increment_user(self, user_id: str, inc: dict, add_to_set: Optional[dict] = None) -> Optional[dict]:
        with self._lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for field, amount in inc.items():
                user[field] = user.get(field, 0) + amount
            for field, value in (add_to_set or {}).items():
                values = user.setdefault(field, [])
                if value not in values:
                    values.append(value)
            return copy.deepcopy(user)

    # Videos

    def find_video(self, video_id: str) -> Optional[dict]:
        with self._lock:
            return copy.deepcopy(self.videos.get(video_id))

    def find_videos(self, filters: dict, limit: int, skip: int) -> list[dict]:
        with self._lock:
            matched = [v for v in self.videos.values() if _matches(v, filters)]
            matched.sort(key=_featured_then_newest, reverse=True)
            return copy.deepcopy(_page(matched, limit, skip))

    def insert_video(self, doc: dict) -> dict:
        with self._lock:
            if doc["_id"] in self.videos:
                raise DuplicateKeyError(f"Video {doc['_id']} already exists")
            self.videos[doc["_id"]] = copy.deepcopy(doc)
            return copy.deepcopy(doc)

    def increment_video(self, video_id: str, inc: dict) -> Optional[dict]:
        with self._lock:
            video = self.videos.get(video_id)
            if not video:
                return None
            for field, amount in inc.items():
                video[field] = video.get(field, 0) + amount
            return copy.deepcopy(video)

    def set_video_fields(self, video_id: str, fields: dict) -> Optional[dict]:
        with self._lock:
            video = self.videos.get(video_id)
            if not video:
                return None
            video.update(copy.deepcopy(fields))
            return copy.deepcopy(video)

    # Transactions

    def find_transaction_by_hash(self, transaction_hash: str) -> Optional[dict]:
        with self._lock:
            tx_id = self.hash_index.get(transaction_hash)
            return copy.deepcopy(self.transactions.get(tx_id)) if tx_id else None

    def insert_transaction(self, doc: dict) -> dict:
        with self._lock:
            tx_hash = doc.get("transactionHash")
            if tx_hash is not None and tx_hash in self.hash_index:
                raise DuplicateKeyError(f"Transaction hash {tx_hash} already recorded")
            self.transactions[doc["_id"]] = copy.deepcopy(doc)
            if tx_hash is not None:
                self.hash_index[tx_hash] = doc["_id"]
            return copy.deepcopy(doc)

    def set_transaction_status(self, transaction_id: str, from_status: str, to_status: str, now: datetime) -> bool:
        with self._lock:
            tx = self.transactions.get(transaction_id)
            if not tx or tx["status"] != from_status:
                return False
            tx["status"] = to_status
            tx["updatedAt"] = now
            return True

    def find_transactions(self, filters: dict, limit: int = 50, skip: int = 0) -> list[dict]:
        with self._lock:
            matched = [t for t in self.transactions.values() if _matches(t, filters)]
            matched.sort(key=lambda t: t["createdAt"], reverse=True)
            return copy.deepcopy(_page(matched, limit, skip))

    def distinct_transaction_users(self, filters: dict) -> list[str]:
        with self._lock:
            users = {t["user"] for t in self.transactions.values() if _matches(t, filters)}
            return sorted(users)


class MongoStorage:
    def __init__(self, client: MongoClient, db_name: str):
        self.client = client
        self.db = client[db_name]
        self.users = self.db["users"]
        self.videos = self.db["videos"]
        self.transactions = self.db["transactions"]
        self.ensure_indexes()

    @classmethod
    def from_uri(cls, uri: str, db_name: str) -> "MongoStorage":
        client = MongoClient(uri, serverSelectionTimeoutMS=5000, tz_aware=True)
        logger.info("Connected MongoStorage to database %s", db_name)
        return cls(client, db_name)

    def ensure_indexes(self) -> None:
        self.users.create_index([("walletAddress", ASCENDING)], unique=True)
        self.transactions.create_index([("transactionHash", ASCENDING)], unique=True, sparse=True)
        self.transactions.create_index([("user", ASCENDING), ("createdAt", DESCENDING)])
        self.transactions.create_index([("video", ASCENDING), ("type", ASCENDING)])

    # Users

    def find_user(self, user_id: str) -> Optional[dict]:
        return self.users.find_one({"_id": user_id})

    def find_user_by_wallet(self, wallet_address: str) -> Optional[dict]:
        return self.users.find_one({"walletAddress": wallet_address})

    def _touch_login(self, wallet_address: str, now: datetime) -> Optional[dict]:
        return self.users.find_one_and_update(
            {"walletAddress": wallet_address},
            {"$set": {"lastLoginAt": now}},
            return_document=ReturnDocument.AFTER,
        )

    def get_or_insert_user(self, doc: dict, now: datetime) -> tuple[dict, bool]:
        existing = self._touch_login(doc["walletAddress"], now)
        if existing:
            return existing, False
        try:
            self.users.insert_one(copy.deepcopy(doc))
        except mongo_errors.DuplicateKeyError:
            # Lost a concurrent first-contact race; the other insert wins.
            return self._touch_login(doc["walletAddress"], now), False
        return doc, True

    def consume_view_credit(self, user_id: str, video_id: str) -> Optional[dict]:
        return self.users.find_one_and_update(
            {"_id": user_id, "videosWatched": {"$ne": video_id}, "viewCredits": {"$gt": 0}},
            {"$inc": {"viewCredits": -1}, "$push": {"videosWatched": video_id}},
            return_document=ReturnDocument.AFTER,
        )

    def add_unlocked_video(self, user_id: str, video_id: str) -> Optional[dict]:
        return self.users.find_one_and_update(
            {"_id": user_id, "videosUnlocked": {"$ne": video_id}},
            {"$push": {"videosUnlocked": video_id}},
            return_document=ReturnDocument.AFTER,
        )

    def increment_user(self, user_id: str, inc: dict, add_to_set: Optional[dict] = None) -> Optional[dict]:
        update: dict[str, Any] = {"$inc": inc}
        if add_to_set:
            update["$addToSet"] = add_to_set
        return self.users.find_one_and_update(
            {"_id": user_id}, update, return_document=ReturnDocument.AFTER
        )

    # Videos

    def find_video(self, video_id: str) -> Optional[dict]:
        return self.videos.find_one({"_id": video_id})

    def find_videos(self, filters: dict, limit: int, skip: int) -> list[dict]:
        cursor = (
            self.videos.find(filters)
            .sort([("featured", DESCENDING), ("createdAt", DESCENDING)])
            .skip(skip)
            .limit(limit)
        )
        return list(cursor)

    def insert_video(self, doc: dict) -> dict:
        try:
            self.videos.insert_one(copy.deepcopy(doc))
        except mongo_errors.DuplicateKeyError as e:
            raise DuplicateKeyError(str(e)) from e
        return doc

    def increment_video(self, video_id: str, inc: dict) -> Optional[dict]:
        return self.videos.find_one_and_update(
            {"_id": video_id}, {"$inc": inc}, return_document=ReturnDocument.AFTER
        )

    def set_video_fields(self, video_id: str, fields: dict) -> Optional[dict]:
        return self.videos.find_one_and_update(
            {"_id": video_id}, {"$set": fields}, return_document=ReturnDocument.AFTER
        )

    # Transactions

    def find_transaction_by_hash(self, transaction_hash: str) -> Optional[dict]:
        return self.transactions.find_one({"transactionHash": transaction_hash})

    def insert_transaction(self, doc: dict) -> dict:
        stored = copy.deepcopy(doc)
        # The sparse unique index only skips documents without the field.
        if stored.get("transactionHash") is None:
            stored.pop("transactionHash", None)
        try:
            self.transactions.insert_one(stored)
        except mongo_errors.DuplicateKeyError as e:
            raise DuplicateKeyError(f"Transaction hash {doc.get('transactionHash')} already recorded") from e
        return doc

    def set_transaction_status(self, transaction_id: str, from_status: str, to_status: str, now: datetime) -> bool:
        result = self.transactions.update_one(
            {"_id": transaction_id, "status": from_status},
            {"$set": {"status": to_status, "updatedAt": now}},
        )
        return result.modified_count == 1

    def find_transactions(self, filters: dict, limit: int = 50, skip: int = 0) -> list[dict]:
        cursor = self.transactions.find(filters).sort("createdAt", DESCENDING).skip(skip).limit(limit)
        return list(cursor)

    def distinct_transaction_users(self, filters: dict) -> list[str]:
        return sorted(self.transactions.distinct("user", filters))
