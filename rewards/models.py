from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, PlainSerializer


# Decimal in Python, plain number on the wire
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class EntryKind(str, Enum):
    ATTEMPTED = "attempted"
    PAYOUT = "payout"


class User(BaseModel):
    id: UUID
    name: str
    email: str
    password_hash: str
    balance: Money = Decimal("0.00")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PublicUser(BaseModel):
    id: UUID
    name: str
    email: str
    balance: Money


class AuthenticatedIdentity(BaseModel):
    id: UUID
    email: str
    name: str


class Survey(BaseModel):
    id: UUID
    title: str
    length: int = Field(..., description="Estimated duration in minutes")
    reward: Money = Field(..., ge=0)
    country: Optional[str] = None
    category: Optional[str] = None
    active: bool = True

    model_config = ConfigDict(from_attributes=True, frozen=True)


class LedgerEntry(BaseModel):
    id: UUID
    user_id: UUID
    kind: EntryKind
    amount: Money
    survey_id: Optional[UUID] = None
    at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @property
    def is_payout(self) -> bool:
        return self.kind == EntryKind.PAYOUT


class ActivityItem(BaseModel):
    id: UUID
    type: str
    amount: Money
    at: datetime
    note: Optional[str] = None


class UserBalance(BaseModel):
    user_id: UUID
    current_balance: Money
    ledger_balance: Money
    total_entries: int
    last_transaction_at: Optional[datetime] = None

    @property
    def is_consistent(self) -> bool:
        return self.current_balance == self.ledger_balance


class PayoutResult(BaseModel):
    amount: Money
    message: str


class RegisterRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Ada",
            "email": "ada@example.com",
            "password": "correct horse battery staple",
        }
    })


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class AttemptRequest(BaseModel):
    survey_id: Optional[str] = Field(default=None, alias="surveyId")

    model_config = ConfigDict(populate_by_name=True)


class AuthResponse(BaseModel):
    token: str
    user: PublicUser


class AttemptResponse(BaseModel):
    ok: bool = True
    credited: Money


class PayoutResponse(BaseModel):
    ok: bool = True
    message: str
