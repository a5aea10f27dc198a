from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionType(str, Enum):
    UNLOCK = "unlock"
    TIP = "tip"
    VIEW = "view"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    CRYPTO = "crypto"
    BASEPAY = "basepay"
    CREDIT = "credit"
    FARCASTER = "farcaster"


class CamelModel(BaseModel):
    """Documents and bodies use camelCase on the wire and in the store."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        use_enum_values=True,
    )


class User(CamelModel):
    id: str = Field(..., alias="_id")
    wallet_address: str
    username: str
    display_name: str = ""
    avatar: str = ""
    bio: str = ""
    view_credits: int = Field(default=0, ge=0)
    videos_watched: list[str] = Field(default_factory=list)
    videos_unlocked: list[str] = Field(default_factory=list)
    videos_tipped: list[str] = Field(default_factory=list)
    total_tips_spent: int = Field(default=0, ge=0)
    total_tips_earned: int = Field(default=0, ge=0)
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    def has_unlocked(self, video_id: str) -> bool:
        return video_id in self.videos_unlocked

    def has_watched(self, video_id: str) -> bool:
        return video_id in self.videos_watched


class Video(CamelModel):
    id: str = Field(..., alias="_id")
    title: str
    description: str = ""
    category: str = ""
    price: int = Field(default=0, ge=0)
    price_display: str = ""
    is_free: bool = False
    featured: bool = False
    is_active: bool = True
    creator: str
    total_views: int = Field(default=0, ge=0)
    total_unlocks: int = Field(default=0, ge=0)
    total_tips_earned: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)


class Transaction(CamelModel):
    id: str = Field(..., alias="_id")
    user: str
    video: str
    type: TransactionType
    amount: int = Field(..., ge=0)
    amount_display: str
    payment_method: PaymentMethod
    transaction_hash: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PaymentProof(CamelModel):
    transaction_hash: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.CRYPTO
    amount: Optional[int] = Field(default=None, strict=True)
    amount_display: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# Request bodies

class UserData(CamelModel):
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar: Optional[str] = None
    bio: Optional[str] = None


class CreateUserRequest(CamelModel):
    wallet_address: str = Field(..., min_length=1)
    user_data: Optional[UserData] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "walletAddress": "0x71C7656EC7ab88b098defB751B7401B5f6d8976F",
            "userData": {"username": "satoshi"}
        }
    })


class AddCreditsRequest(CamelModel):
    wallet_address: str = Field(..., min_length=1)
    credits_to_add: int = Field(..., gt=0, strict=True)


class DeductCreditRequest(CamelModel):
    wallet_address: str = Field(..., min_length=1)
    video_id: str = Field(..., min_length=1)


class UnlockVideoRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    video_id: str = Field(..., min_length=1)
    transaction_hash: str = Field(..., min_length=1)
    payment_method: PaymentMethod
    amount: int = Field(..., strict=True)
    amount_display: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "userId": "5f0c6a62-7d8e-4b9e-9a51-3c2f1c0e8a11",
            "videoId": "0d4f6b7a-2a8c-4e6f-b1d2-9c3e5a7f8b90",
            "transactionHash": "0xabc",
            "paymentMethod": "crypto",
            "amount": 100000,
            "amountDisplay": "0.1 USDC"
        }
    })

    def to_proof(self) -> PaymentProof:
        return PaymentProof(
            transaction_hash=self.transaction_hash,
            payment_method=self.payment_method,
            amount=self.amount,
            amount_display=self.amount_display,
        )


class TipRequest(CamelModel):
    from_user_id: str = Field(..., min_length=1)
    video_id: str = Field(..., min_length=1)
    transaction_data: PaymentProof


# Responses

class DeductCreditResult(CamelModel):
    remaining_credits: int
    transaction_id: Optional[str] = None
    already_watched: bool = False


class UnlockStatus(CamelModel):
    is_unlocked: bool
    reason: str
    requires_payment: bool
    price: Optional[int] = None
    price_display: Optional[str] = None


class ReconcileResult(CamelModel):
    video_id: str
    total_unlocks_before: int
    total_unlocks_after: int
    unlocks_restored: int = 0
    pending_settled: int = 0

    @property
    def repaired(self) -> bool:
        return (
            self.total_unlocks_before != self.total_unlocks_after
            or self.unlocks_restored > 0
            or self.pending_settled > 0
        )


class UnlockResult(CamelModel):
    transaction: Transaction
    video: Video
    user: User


class TipResult(CamelModel):
    transaction: Transaction
    from_user: User
    to_user: User
    video: Video
    tip_amount: int
    tip_amount_display: str
