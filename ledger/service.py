import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from .config import LedgerSettings, get_settings
from .models import (
    DeductCreditResult,
    PaymentMethod,
    PaymentProof,
    ReconcileResult,
    TipResult,
    Transaction,
    TransactionStatus,
    TransactionType,
    UnlockResult,
    UnlockStatus,
    User,
    UserData,
    Video,
)
from .pricing import apply_discount, discount_for_method, format_usdc, no_discount
from .storage import DuplicateKeyError, InMemoryStorage, LedgerStorage, MongoStorage

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class LedgerServiceError(Exception):
    status_code = 400


class NotFoundError(LedgerServiceError):
    status_code = 404


class AlreadyUnlockedError(LedgerServiceError):
    pass


class DuplicateTransactionError(LedgerServiceError):
    pass


class InvalidAmountError(LedgerServiceError):
    pass


class InsufficientCreditsError(LedgerServiceError):
    def __init__(self, message: str = "Insufficient view credits", remaining_credits: int = 0):
        super().__init__(message)
        self.remaining_credits = remaining_credits


class LedgerValidationError(LedgerServiceError):
    pass


def normalize_wallet(wallet_address: Optional[str]) -> str:
    if not wallet_address or not isinstance(wallet_address, str) or not wallet_address.strip():
        raise LedgerValidationError("Wallet address is required")
    return wallet_address.strip().lower()


class LedgerService:
    """Applies credit, unlock, tip and view charges to users and videos.

    Each operation writes its Transaction before touching counters. Where a
    precondition can race (already watched, already unlocked, reused hash)
    the final decision is made by an atomic storage call, not by the read
    that precedes it.
    """

    def __init__(self, storage: Optional[LedgerStorage] = None, settings: Optional[LedgerSettings] = None):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()

    @classmethod
    def from_settings(cls, settings: Optional[LedgerSettings] = None) -> "LedgerService":
        settings = settings or get_settings()
        if settings.MONGODB_URI:
            storage = MongoStorage.from_uri(settings.MONGODB_URI, settings.MONGODB_DB)
        else:
            logger.warning("MONGODB_URI not set; using in-memory storage")
            storage = InMemoryStorage()
        return cls(storage=storage, settings=settings)

    # Users

    def get_or_create_user(self, wallet_address: str, user_data: Optional[UserData] = None) -> tuple[User, bool]:
        wallet = normalize_wallet(wallet_address)
        user_data = user_data or UserData()
        now = datetime.now(timezone.utc)
        username = user_data.username or f"user_{wallet[-8:]}"

        candidate = User(
            id=str(uuid4()),
            wallet_address=wallet,
            username=username,
            display_name=user_data.display_name or username,
            avatar=user_data.avatar or "",
            bio=user_data.bio or "",
            view_credits=self.settings.NEW_USER_CREDITS,
            last_login_at=now,
            created_at=now,
        )
        doc, created = self.storage.get_or_insert_user(candidate.model_dump(by_alias=True), now)
        if created:
            logger.info("Created user %s for wallet %s with %d credits", doc["_id"], wallet, candidate.view_credits)
        return User.model_validate(doc), created

    def get_user(self, user_id: str) -> User:
        doc = self.storage.find_user(user_id)
        if not doc:
            raise NotFoundError("User not found")
        return User.model_validate(doc)

    def get_user_by_wallet(self, wallet_address: str) -> User:
        doc = self.storage.find_user_by_wallet(normalize_wallet(wallet_address))
        if not doc:
            raise NotFoundError("User not found")
        return User.model_validate(doc)

    def add_credits(self, wallet_address: str, credits_to_add: int) -> User:
        if isinstance(credits_to_add, bool) or not isinstance(credits_to_add, int) or credits_to_add <= 0:
            raise LedgerValidationError("Valid credits amount is required")
        user = self.get_user_by_wallet(wallet_address)
        doc = self.storage.increment_user(user.id, {"viewCredits": credits_to_add})
        if not doc:
            raise NotFoundError("User not found")
        updated = User.model_validate(doc)
        logger.info("Added %d credits to %s, balance now %d", credits_to_add, updated.wallet_address, updated.view_credits)
        return updated

    # Videos

    def get_video(self, video_id: str, user_id: Optional[str] = None) -> tuple[Video, bool]:
        video = self._require_video(video_id)
        is_unlocked = False
        if user_id:
            doc = self.storage.find_user(user_id)
            is_unlocked = bool(doc) and video.id in doc.get("videosUnlocked", [])
        return video, is_unlocked

    def list_videos(
        self,
        category: Optional[str] = None,
        featured: Optional[bool] = None,
        limit: int = 20,
        skip: int = 0,
    ) -> list[Video]:
        if limit < 1 or skip < 0:
            raise LedgerValidationError("limit must be positive and skip non-negative")
        filters: dict = {"isActive": True}
        if category:
            filters["category"] = category
        if featured is not None:
            filters["featured"] = featured
        docs = self.storage.find_videos(filters, min(limit, MAX_PAGE_SIZE), skip)
        return [Video.model_validate(d) for d in docs]

    def check_unlock_status(self, user_id: str, video_id: str) -> UnlockStatus:
        user = self.get_user(user_id)
        video = self._require_video(video_id)
        if video.is_free:
            return UnlockStatus(is_unlocked=True, reason="free_video", requires_payment=False)
        unlocked = user.has_unlocked(video.id)
        return UnlockStatus(
            is_unlocked=unlocked,
            reason="purchased" if unlocked else "locked",
            requires_payment=not unlocked,
            price=video.price or self.settings.UNLOCK_PRICE,
            price_display=video.price_display or self._display(self.settings.UNLOCK_PRICE),
        )

    def set_video_free(self, video_id: str, is_free: bool = True) -> Video:
        doc = self.storage.set_video_fields(video_id, {"isFree": is_free})
        if not doc:
            raise NotFoundError("Video not found")
        return Video.model_validate(doc)

    # Ledger operations

    def deduct_view_credit(self, wallet_address: str, video_id: str) -> DeductCreditResult:
        user = self.get_user_by_wallet(wallet_address)
        if user.has_watched(video_id):
            return DeductCreditResult(remaining_credits=user.view_credits, already_watched=True)
        if user.view_credits <= 0:
            raise InsufficientCreditsError(remaining_credits=0)
        video = self._require_video(video_id)

        if video.is_free:
            discount = no_discount(0)
            display = "FREE"
        else:
            per_view = self.settings.VIEW_CHARGE_AMOUNT
            discount = apply_discount(per_view, self.settings.BASE_PAY_AMOUNT)
            display = self._display(discount.final_amount)

        tx = self._record(
            user_id=user.id,
            video_id=video.id,
            tx_type=TransactionType.VIEW,
            amount=discount.final_amount,
            amount_display=display,
            method=PaymentMethod.CREDIT,
            metadata={
                "basePayAmount": discount.discount_amount,
                "basePayApplied": discount.discount_applied,
                "deductedCredits": 1,
            },
        )

        doc = self.storage.consume_view_credit(user.id, video.id)
        if doc is None:
            self._finish(tx, TransactionStatus.FAILED)
            current = User.model_validate(self.storage.find_user(user.id))
            if current.has_watched(video.id):
                return DeductCreditResult(remaining_credits=current.view_credits, already_watched=True)
            raise InsufficientCreditsError(remaining_credits=current.view_credits)

        tx = self._finish(tx, TransactionStatus.COMPLETED)
        self.storage.increment_video(video.id, {"totalViews": 1, "totalTipsEarned": tx.amount})
        if tx.amount:
            self._credit_creator(video, tx.amount)
        return DeductCreditResult(remaining_credits=doc["viewCredits"], transaction_id=tx.id)

    def unlock_video(self, user_id: str, video_id: str, proof: PaymentProof) -> UnlockResult:
        video = self._require_video(video_id)
        user = self.get_user(user_id)
        if not proof.transaction_hash:
            raise LedgerValidationError("transactionHash is required")
        existing = self.storage.find_transaction_by_hash(proof.transaction_hash)
        if user.has_unlocked(video.id):
            # A replay of the proof that unlocked it is reported as the double spend.
            if existing:
                raise DuplicateTransactionError("Transaction already processed")
            raise AlreadyUnlockedError("Video already unlocked")
        if existing and not self._is_retry(existing, user.id, video.id):
            raise DuplicateTransactionError("Transaction already processed")
        price = self.settings.UNLOCK_PRICE
        if proof.amount != price:
            raise InvalidAmountError(f"Invalid amount. Videos require exactly {self._display(price)} ({price} units)")

        if existing:
            tx = self._resume(existing)
        else:
            discount = discount_for_method(proof.amount, proof.payment_method, self.settings.BASE_PAY_AMOUNT)
            tx = self._record(
                user_id=user.id,
                video_id=video.id,
                tx_type=TransactionType.UNLOCK,
                amount=discount.final_amount,
                amount_display=proof.amount_display or self._display(discount.final_amount),
                method=proof.payment_method,
                transaction_hash=proof.transaction_hash,
                metadata=discount.as_metadata(proof.amount),
            )

        try:
            user_doc = self.storage.add_unlocked_video(user.id, video.id)
        except Exception:
            self._abandon(tx)
            raise
        if user_doc is None:
            self._finish(tx, TransactionStatus.FAILED)
            logger.warning("Concurrent unlock of video %s by user %s; marked %s failed", video.id, user.id, tx.id)
            raise AlreadyUnlockedError("Video already unlocked")

        # From here the video is unlocked; a pending transaction left by a
        # failure below is settled by reconcile_video.
        tx = self._finish(tx, TransactionStatus.COMPLETED)
        video_doc = self.storage.increment_video(
            video.id, {"totalUnlocks": 1, "totalTipsEarned": tx.amount}
        )
        self._credit_creator(video, tx.amount)
        logger.info("User %s unlocked video %s for %d (tx %s)", user.id, video.id, tx.amount, tx.transaction_hash)
        return UnlockResult(
            transaction=tx,
            video=Video.model_validate(video_doc) if video_doc else video,
            user=User.model_validate(user_doc),
        )

    def tip(self, from_user_id: str, video_id: str, proof: PaymentProof) -> TipResult:
        video = self._require_video(video_id)
        from_user = self.get_user(from_user_id)
        creator_doc = self.storage.find_user(video.creator)
        if not creator_doc:
            raise NotFoundError("User not found")

        tip_amount = self.settings.TIP_AMOUNT
        amount = proof.amount if proof.amount is not None else tip_amount
        if amount != tip_amount:
            raise InvalidAmountError(f"Invalid amount. Tips are fixed at {self._display(tip_amount)} ({tip_amount} units)")
        if proof.transaction_hash and self.storage.find_transaction_by_hash(proof.transaction_hash):
            raise DuplicateTransactionError("Transaction already processed")

        discount = discount_for_method(amount, proof.payment_method, self.settings.BASE_PAY_AMOUNT)
        tx = self._record(
            user_id=from_user.id,
            video_id=video.id,
            tx_type=TransactionType.TIP,
            amount=discount.final_amount,
            amount_display=self._display(tip_amount),
            method=proof.payment_method,
            transaction_hash=proof.transaction_hash,
            metadata={**proof.metadata, **discount.as_metadata(amount)},
            status=TransactionStatus.COMPLETED,
        )

        from_doc = self.storage.increment_user(
            from_user.id, {"totalTipsSpent": tx.amount}, add_to_set={"videosTipped": video.id}
        )
        to_doc = self.storage.increment_user(video.creator, {"totalTipsEarned": tx.amount})
        video_doc = self.storage.increment_video(video.id, {"totalTipsEarned": tx.amount})
        logger.info("User %s tipped %d on video %s", from_user.id, tx.amount, video.id)
        return TipResult(
            transaction=tx,
            from_user=User.model_validate(from_doc),
            to_user=User.model_validate(to_doc),
            video=Video.model_validate(video_doc),
            tip_amount=tx.amount,
            tip_amount_display=tx.amount_display,
        )

    # History and repair

    def get_transactions(self, user_id: str, limit: int = 50, skip: int = 0) -> list[Transaction]:
        if limit < 1 or skip < 0:
            raise LedgerValidationError("limit must be positive and skip non-negative")
        docs = self.storage.find_transactions({"user": user_id}, min(limit, MAX_PAGE_SIZE), skip)
        return [Transaction.model_validate(d) for d in docs]

    def reconcile_video(self, video_id: str) -> ReconcileResult:
        """Repair a video's unlock state from its unlock transactions.

        Interrupted unlocks are settled first: a pending or failed unlock
        whose user holds the video (and has no other completed unlock for
        it) is completed and its earnings credited, and a pending unlock
        whose user does not hold the video is marked failed so the payer can
        retry with the same proof. Every user with a completed unlock then
        gets the video back in ``videosUnlocked`` if it is missing, and
        ``totalUnlocks`` is rewritten to the number of such users.
        """
        video = self._require_video(video_id)
        unlocks = {"video": video.id, "type": TransactionType.UNLOCK.value}
        completed = set(self.storage.distinct_transaction_users(
            {**unlocks, "status": TransactionStatus.COMPLETED.value}
        ))

        settled = 0
        for status in (TransactionStatus.PENDING, TransactionStatus.FAILED):
            for doc in self.storage.find_transactions({**unlocks, "status": status.value}, limit=0):
                tx = Transaction.model_validate(doc)
                owner = self.storage.find_user(tx.user)
                holds = bool(owner) and video.id in owner.get("videosUnlocked", [])
                if holds and tx.user not in completed:
                    if self._settle(tx, status, TransactionStatus.COMPLETED):
                        completed.add(tx.user)
                        self.storage.increment_video(video.id, {"totalTipsEarned": tx.amount})
                        self._credit_creator(video, tx.amount)
                        settled += 1
                elif status == TransactionStatus.PENDING and not holds:
                    if self._settle(tx, status, TransactionStatus.FAILED):
                        settled += 1

        restored = 0
        for unlocker in sorted(completed):
            if self.storage.add_unlocked_video(unlocker, video.id) is not None:
                logger.warning("Restored unlock of video %s for user %s", video.id, unlocker)
                restored += 1

        if len(completed) != video.total_unlocks:
            self.storage.set_video_fields(video.id, {"totalUnlocks": len(completed)})
            logger.warning(
                "Repaired totalUnlocks for video %s: %d -> %d", video.id, video.total_unlocks, len(completed)
            )
        return ReconcileResult(
            video_id=video.id,
            total_unlocks_before=video.total_unlocks,
            total_unlocks_after=len(completed),
            unlocks_restored=restored,
            pending_settled=settled,
        )

    # Internals

    def _is_retry(self, existing: dict, user_id: str, video_id: str) -> bool:
        """A failed unlock may be retried by its own payer with the same proof."""
        return (
            existing.get("type") == TransactionType.UNLOCK.value
            and existing.get("status") == TransactionStatus.FAILED.value
            and existing.get("user") == user_id
            and existing.get("video") == video_id
        )

    def _resume(self, existing: dict) -> Transaction:
        tx = Transaction.model_validate(existing)
        now = datetime.now(timezone.utc)
        if not self.storage.set_transaction_status(
            tx.id, TransactionStatus.FAILED.value, TransactionStatus.PENDING.value, now
        ):
            raise DuplicateTransactionError("Transaction already processed")
        logger.info("Retrying failed unlock %s (tx %s)", tx.id, tx.transaction_hash)
        return tx.model_copy(update={"status": TransactionStatus.PENDING.value, "updated_at": now})

    def _abandon(self, tx: Transaction) -> None:
        try:
            self._finish(tx, TransactionStatus.FAILED)
        except Exception:
            logger.exception("Could not mark transaction %s failed; reconcile will settle it", tx.id)

    def _settle(self, tx: Transaction, from_status: TransactionStatus, to_status: TransactionStatus) -> bool:
        now = datetime.now(timezone.utc)
        changed = self.storage.set_transaction_status(tx.id, from_status.value, to_status.value, now)
        if changed:
            logger.warning("Settled unlock %s for user %s: %s -> %s", tx.id, tx.user, from_status.value, to_status.value)
        return changed

    def _require_video(self, video_id: str) -> Video:
        doc = self.storage.find_video(video_id)
        if not doc:
            raise NotFoundError("Video not found")
        return Video.model_validate(doc)

    def _credit_creator(self, video: Video, amount: int) -> None:
        if not self.storage.increment_user(video.creator, {"totalTipsEarned": amount}):
            logger.warning("Creator %s of video %s not found; earnings not credited", video.creator, video.id)

    def _display(self, amount: int) -> str:
        return format_usdc(amount, self.settings.USDC_DECIMALS)

    def _record(
        self,
        user_id: str,
        video_id: str,
        tx_type: TransactionType,
        amount: int,
        amount_display: str,
        method: PaymentMethod,
        metadata: dict,
        transaction_hash: Optional[str] = None,
        status: TransactionStatus = TransactionStatus.PENDING,
    ) -> Transaction:
        now = datetime.now(timezone.utc)
        tx = Transaction(
            id=str(uuid4()),
            user=user_id,
            video=video_id,
            type=tx_type,
            amount=amount,
            amount_display=amount_display,
            payment_method=method,
            transaction_hash=transaction_hash,
            status=status,
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        try:
            self.storage.insert_transaction(tx.model_dump(by_alias=True))
        except DuplicateKeyError:
            logger.warning("Rejected reused transaction hash %s", transaction_hash)
            raise DuplicateTransactionError("Transaction already processed")
        return tx

    def _finish(self, tx: Transaction, status: TransactionStatus) -> Transaction:
        now = datetime.now(timezone.utc)
        self.storage.set_transaction_status(tx.id, TransactionStatus.PENDING.value, status.value, now)
        return tx.model_copy(update={"status": status.value, "updated_at": now})
