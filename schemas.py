import re
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ExpenseIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    category: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., ge=0, decimal_places=2)
    comments: str = ""


class ExpenseUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    comments: Optional[str] = None

    def changes(self) -> dict[str, object]:
        return self.model_dump(exclude_unset=True, exclude_none=True)


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    category: str
    amount: Decimal
    comments: str
    created_at: datetime
    updated_at: datetime

    @field_serializer("amount")
    def _amount_as_number(self, amount: Decimal) -> float:
        return float(amount)


class CategorySummaryEntry(BaseModel):
    category: str
    total: Decimal

    @field_serializer("total")
    def _total_as_number(self, total: Decimal) -> float:
        return float(total)


class CategoryShare(CategorySummaryEntry):
    percent: float


class ExpenseStats(BaseModel):
    total: Decimal
    count: int
    average: Decimal
    top_category: str

    @field_serializer("total", "average")
    def _as_number(self, value: Decimal) -> float:
        return float(value)


class SignInIn(BaseModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        email = value.strip().lower()
        if not EMAIL_RE.match(email):
            raise ValueError("Invalid email address")
        return email


class SignUpIn(SignInIn):
    full_name: str = Field(default="", max_length=200)
