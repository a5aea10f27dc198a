from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from ledger.config import LedgerSettings
from ledger.models import Video
from ledger.service import LedgerService
from ledger.storage import InMemoryStorage

CREATOR_WALLET = "0xCREATOR00000000000000000000000000000001"
VIEWER_WALLET = "0xVIEWER000000000000000000000000000000002"


@pytest.fixture
def settings():
    return LedgerSettings(_env_file=None, MONGODB_URI=None, BASE_PAY_AMOUNT=0, NEW_USER_CREDITS=10)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def service(storage, settings):
    return LedgerService(storage=storage, settings=settings)


@pytest.fixture
def creator(service):
    user, _ = service.get_or_create_user(CREATOR_WALLET)
    return user


@pytest.fixture
def viewer(service):
    user, _ = service.get_or_create_user(VIEWER_WALLET)
    return user


@pytest.fixture
def make_video(service, creator):
    """Insert a video owned by ``creator`` into the service's storage."""
    base_time = datetime(2024, 1, 1, tzinfo=timezone.utc)
    counter = {"n": 0}

    def _make(**overrides) -> Video:
        counter["n"] += 1
        fields = {
            "id": str(uuid4()),
            "title": f"Video {counter['n']}",
            "category": "DeFi",
            "price": 100000,
            "price_display": "0.1 USDC",
            "creator": creator.id,
            "created_at": base_time + timedelta(minutes=counter["n"]),
        }
        fields.update(overrides)
        video = Video(**fields)
        service.storage.insert_video(video.model_dump(by_alias=True))
        return video

    return _make


@pytest.fixture
def paid_video(make_video):
    return make_video(title="Intro to DeFi")


@pytest.fixture
def free_video(make_video):
    return make_video(title="What is a wallet", is_free=True, price=0, price_display="FREE")
