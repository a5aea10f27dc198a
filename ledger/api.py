import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .models import (
    AddCreditsRequest,
    CreateUserRequest,
    DeductCreditRequest,
    TipRequest,
    UnlockVideoRequest,
)
from .service import InsufficientCreditsError, LedgerService, LedgerServiceError

logger = logging.getLogger(__name__)

router = APIRouter()


@lru_cache
def get_ledger_service() -> LedgerService:
    return LedgerService.from_settings(get_settings())


def _dump(model) -> dict:
    return model.model_dump(by_alias=True, mode="json")


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "video-ledger"}


# Users

@router.get("/users/{wallet}", tags=["Users"])
def get_user(wallet: str, service: LedgerService = Depends(get_ledger_service)):
    user = service.get_user_by_wallet(wallet)
    return {"success": True, "data": _dump(user)}


@router.post("/users/create", tags=["Users"])
def create_user(request: CreateUserRequest, service: LedgerService = Depends(get_ledger_service)):
    user, is_new = service.get_or_create_user(request.wallet_address, request.user_data)
    return JSONResponse(
        status_code=status.HTTP_201_CREATED if is_new else status.HTTP_200_OK,
        content={"success": True, "data": _dump(user), "isNewUser": is_new},
    )


@router.post("/users/add-credits", tags=["Users"])
def add_credits(request: AddCreditsRequest, service: LedgerService = Depends(get_ledger_service)):
    user = service.add_credits(request.wallet_address, request.credits_to_add)
    return {
        "success": True,
        "data": {
            "viewCredits": user.view_credits,
            "creditsAdded": request.credits_to_add,
            "user": {
                "_id": user.id,
                "username": user.username,
                "walletAddress": user.wallet_address,
                "viewCredits": user.view_credits,
            },
        },
    }


@router.get("/users/{wallet}/transactions", tags=["Users"])
def get_user_transactions(
    wallet: str,
    limit: int = 50,
    skip: int = 0,
    service: LedgerService = Depends(get_ledger_service),
):
    user = service.get_user_by_wallet(wallet)
    transactions = service.get_transactions(user.id, limit, skip)
    return {"success": True, "data": [_dump(t) for t in transactions]}


# Videos

@router.get("/videos", tags=["Videos"])
def list_videos(
    category: Optional[str] = None,
    featured: Optional[bool] = None,
    limit: int = 20,
    skip: int = 0,
    service: LedgerService = Depends(get_ledger_service),
):
    videos = service.list_videos(category, featured, limit, skip)
    return {"success": True, "data": [_dump(v) for v in videos]}


@router.post("/videos/deduct-credit", tags=["Videos"])
def deduct_credit(request: DeductCreditRequest, service: LedgerService = Depends(get_ledger_service)):
    result = service.deduct_view_credit(request.wallet_address, request.video_id)
    return {
        "success": True,
        "message": "Video already watched" if result.already_watched else "Credit deducted successfully",
        "remainingCredits": result.remaining_credits,
        "transaction": result.transaction_id,
    }


@router.get("/videos/{video_id}", tags=["Videos"])
def get_video(video_id: str, userId: Optional[str] = None, service: LedgerService = Depends(get_ledger_service)):
    video, is_unlocked = service.get_video(video_id, userId)
    return {"success": True, "data": {**_dump(video), "isUnlocked": is_unlocked}}


@router.get("/videos/{video_id}/unlock-status", tags=["Videos"])
def get_unlock_status(video_id: str, userId: str, service: LedgerService = Depends(get_ledger_service)):
    return {"success": True, "data": _dump(service.check_unlock_status(userId, video_id))}


# Payments

@router.post("/video-unlock", tags=["Payments"])
def unlock_video(request: UnlockVideoRequest, service: LedgerService = Depends(get_ledger_service)):
    result = service.unlock_video(request.user_id, request.video_id, request.to_proof())
    tx = result.transaction
    return {
        "success": True,
        "data": {
            "message": "Video unlocked successfully",
            "transaction": {
                "id": tx.id,
                "type": tx.type,
                "amount": tx.amount,
                "amountDisplay": tx.amount_display,
                "paymentMethod": tx.payment_method,
                "transactionHash": tx.transaction_hash,
                "status": tx.status,
            },
            "video": {
                "id": result.video.id,
                "title": result.video.title,
                "totalUnlocks": result.video.total_unlocks,
            },
            "user": {
                "id": result.user.id,
                "unlockedVideosCount": len(result.user.videos_unlocked),
            },
        },
    }


@router.post("/transactions", tags=["Payments"])
def create_tip(request: TipRequest, service: LedgerService = Depends(get_ledger_service)):
    result = service.tip(request.from_user_id, request.video_id, request.transaction_data)
    return {"success": True, "data": _dump(result)}


# Error envelopes

async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
    content = {"success": False, "error": str(exc)}
    if isinstance(exc, InsufficientCreditsError):
        content["remainingCredits"] = exc.remaining_credits
    return JSONResponse(status_code=exc.status_code, content=content)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        field = ".".join(str(p) for p in errors[0].get("loc", ()) if p != "body")
        message = f"Invalid request: {field} {errors[0].get('msg', '')}".strip()
    else:
        message = "Invalid request"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"success": False, "error": message})


async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": "Internal server error"},
    )


def create_app(root_path: str = "") -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL)

    app = FastAPI(
        title="Video Credit Ledger API",
        description="View credits, video unlocks and creator tips with double-spend protection",
        version="1.0.0",
        root_path=root_path,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LedgerServiceError, ledger_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, internal_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
