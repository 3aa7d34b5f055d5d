"""
Pytest fixtures for the rewards tests.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from rewards.models import Survey
from rewards.service import IdentityStore, LedgerService, SurveyCatalog
from rewards.storage import InMemoryStorage

# Lowest cost bcrypt accepts, keeps the suite fast
TEST_BCRYPT_ROUNDS = 4


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def catalog(storage):
    catalog = SurveyCatalog(storage)
    catalog.seed_defaults()
    return catalog


@pytest.fixture
def identity(storage):
    return IdentityStore(storage, bcrypt_rounds=TEST_BCRYPT_ROUNDS)


@pytest.fixture
def ledger(storage, catalog):
    return LedgerService(storage, catalog=catalog)


@pytest.fixture
def user(identity):
    return identity.register("Ada", "ada@example.com", "s3cret-pass")


@pytest.fixture
def game_survey(catalog):
    """The seeded survey paying 1.10."""
    return next(s for s in catalog.list_active() if s.reward == Decimal("1.10"))


@pytest.fixture
def make_survey(storage):
    def _make(reward: str, active: bool = True) -> Survey:
        survey = Survey(
            id=uuid4(), title=f"Survey paying {reward}", length=5,
            reward=Decimal(reward), country="Any", category="Test", active=active,
        )
        storage.insert_survey(survey)
        return survey
    return _make
