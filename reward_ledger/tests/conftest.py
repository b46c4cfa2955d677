from datetime import datetime, timezone
from decimal import Decimal

import pytest

from reward_ledger.config import LedgerSettings
from reward_ledger.service import RewardLedgerService
from reward_ledger.storage import InMemoryStorage


T0 = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings():
    return LedgerSettings(_env_file=None)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def service(storage, settings):
    return RewardLedgerService(storage, settings)


@pytest.fixture
def user(storage):
    return storage.add_user("USER0001", bonuses=Decimal("300.00"))


@pytest.fixture
def offer(storage):
    return storage.add_offer(title="Daily Ten", daily_profit=Decimal("10.00"))


@pytest.fixture
def approved_join(service, user, offer):
    """An offer join approved at T0."""
    join = service.offers.join(user.id, offer.id, now=T0)
    return service.offers.approve(join.id, now=T0)
