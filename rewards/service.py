import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union
from uuid import UUID, uuid4

from .auth import hash_password, verify_password
from .models import (
    ActivityItem,
    EntryKind,
    LedgerEntry,
    PayoutResult,
    PublicUser,
    Survey,
    User,
    UserBalance,
)
from .storage import DuplicateKeyError

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

DEFAULT_SURVEYS = [
    ("Consumer electronics study", 10, Decimal("0.75"), "US", "Shopping"),
    ("Food delivery habits", 7, Decimal("0.60"), "Any", "Food"),
    ("Mobile game test (fun!)", 12, Decimal("1.10"), "Any", "Gaming"),
    ("Streaming services review", 9, Decimal("0.85"), "CA/US", "Entertainment"),
]

PAYOUT_LABEL = "Payout"
ATTEMPT_LABEL = "Survey attempt"
PAYOUT_NOTE = "Manual payout request"


class RewardsError(Exception):
    pass


class InvalidInputError(RewardsError):
    pass


class EmailConflictError(RewardsError):
    pass


class InvalidCredentialsError(RewardsError):
    pass


class UserNotFoundError(RewardsError):
    pass


class SurveyNotFoundError(RewardsError):
    pass


class InsufficientBalanceError(RewardsError):
    pass


def to_money(value: Decimal) -> Decimal:
    """Quantize to cents, halves rounded away from zero."""
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


class IdentityStore:
    def __init__(self, storage, bcrypt_rounds: int = 10):
        self.storage = storage
        self.bcrypt_rounds = bcrypt_rounds

    def register(self, name: Optional[str], email: Optional[str], password: Optional[str]) -> User:
        if not name or not email or not password:
            raise InvalidInputError("Missing fields")
        if self.storage.get_user_by_email(email) is not None:
            raise EmailConflictError("Email already registered")

        user = User(
            id=uuid4(),
            name=name,
            email=email,
            password_hash=hash_password(password, self.bcrypt_rounds),
            balance=ZERO,
            created_at=datetime.now(timezone.utc),
        )
        try:
            self.storage.insert_user(user)
        except DuplicateKeyError:
            raise EmailConflictError("Email already registered")

        logger.info("Registered user %s", user.id)
        return user

    def verify_credentials(self, email: Optional[str], password: Optional[str]) -> User:
        if not email or not password:
            raise InvalidInputError("Missing credentials")
        user = self.storage.get_user_by_email(email)
        # Same error for unknown email and wrong password
        if user is None or not verify_password(password, user.password_hash):
            raise InvalidCredentialsError("Invalid email or password")
        return user

    def get_by_id(self, user_id: UUID) -> User:
        user = self.storage.get_user(user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        return user

    @staticmethod
    def public_view(user: User) -> PublicUser:
        return PublicUser(id=user.id, name=user.name, email=user.email, balance=user.balance)


class SurveyCatalog:
    def __init__(self, storage):
        self.storage = storage

    def seed_defaults(self) -> int:
        if self.storage.count_surveys() > 0:
            return 0
        for title, length, reward, country, category in DEFAULT_SURVEYS:
            self.storage.insert_survey(Survey(
                id=uuid4(), title=title, length=length, reward=reward,
                country=country, category=category, active=True,
            ))
        logger.info("Seeded %d surveys", len(DEFAULT_SURVEYS))
        return len(DEFAULT_SURVEYS)

    def list_active(self) -> list[Survey]:
        return self.storage.list_surveys(active_only=True)

    def get_active(self, survey_id: Union[UUID, str]) -> Survey:
        try:
            key = survey_id if isinstance(survey_id, UUID) else UUID(str(survey_id))
        except ValueError:
            raise SurveyNotFoundError("Survey not found")

        survey = self.storage.get_survey(key)
        if survey is None or not survey.active:
            raise SurveyNotFoundError("Survey not found")
        return survey


class LedgerService:
    """
    Records attempt credits and payouts as ledger entries.

    The user's balance column is a cache of the sum of their entries. Every
    mutation validates first, then hands the entry and the new balance to
    storage in one ``commit_entry`` call while holding the service lock, so
    read-modify-write sequences never interleave.
    """

    def __init__(
        self,
        storage,
        catalog: Optional[SurveyCatalog] = None,
        credit_ratio: Decimal = Decimal("0.5"),
        min_payout: Decimal = Decimal("1.00"),
        activity_limit: int = 25,
    ):
        self.storage = storage
        self.catalog = catalog or SurveyCatalog(storage)
        self.credit_ratio = Decimal(credit_ratio)
        self.min_payout = Decimal(min_payout)
        self.activity_limit = activity_limit
        self._lock = threading.RLock()

    def credit_for(self, survey: Survey) -> Decimal:
        return to_money(survey.reward * self.credit_ratio)

    def record_attempt(self, user_id: UUID, survey_id: Union[UUID, str]) -> Decimal:
        survey = self.catalog.get_active(survey_id)
        amount = self.credit_for(survey)

        with self._lock:
            user = self._get_user(user_id)
            # Attempts carry no idempotency key; repeats credit again
            entry = LedgerEntry(
                id=uuid4(),
                user_id=user.id,
                kind=EntryKind.ATTEMPTED,
                amount=amount,
                survey_id=survey.id,
                at=datetime.now(timezone.utc),
            )
            self.storage.commit_entry(entry, to_money(user.balance + amount))

        logger.info("Credited %s to user %s for survey %s", amount, user.id, survey.id)
        return amount

    def request_payout(self, user_id: UUID) -> PayoutResult:
        with self._lock:
            user = self._get_user(user_id)
            balance = to_money(user.balance)
            if balance < self.min_payout:
                raise InsufficientBalanceError(
                    f"Minimum payout is ${self.min_payout:.2f} in demo"
                )

            entry = LedgerEntry(
                id=uuid4(),
                user_id=user.id,
                kind=EntryKind.PAYOUT,
                amount=-balance,
                survey_id=None,
                at=datetime.now(timezone.utc),
            )
            self.storage.commit_entry(entry, ZERO)

        logger.info("Payout of %s requested by user %s", balance, user.id)
        return PayoutResult(
            amount=balance,
            message=f"Payout requested for ${balance:.2f} (demo)",
        )

    def list_activity(self, user_id: UUID, limit: Optional[int] = None) -> list[ActivityItem]:
        if limit is None:
            limit = self.activity_limit
        if limit <= 0:
            return []

        entries = self.storage.list_entries(user_id)
        return [self._to_activity(e) for e in reversed(entries[-limit:])]

    def get_balance(self, user_id: UUID) -> UserBalance:
        user = self._get_user(user_id)
        entries = self.storage.list_entries(user_id)

        return UserBalance(
            user_id=user_id,
            current_balance=to_money(user.balance),
            ledger_balance=to_money(sum((e.amount for e in entries), ZERO)),
            total_entries=len(entries),
            last_transaction_at=entries[-1].at if entries else None,
        )

    def _get_user(self, user_id: UUID) -> User:
        user = self.storage.get_user(user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        return user

    @staticmethod
    def _to_activity(entry: LedgerEntry) -> ActivityItem:
        return ActivityItem(
            id=entry.id,
            type=PAYOUT_LABEL if entry.is_payout else ATTEMPT_LABEL,
            amount=entry.amount,
            at=entry.at,
            note=PAYOUT_NOTE if entry.is_payout else None,
        )
