"""
schemas.py
Request/response models validated at the boundary (UI forms, CLI, tests).
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal, TypeVar

import pydantic
from dateutil import parser as date_parser
from pydantic import BaseModel, Field, field_validator, model_validator

from errors import ValidationError
from models import CENTS

M = TypeVar("M", bound=BaseModel)


def validate(model: type[M], data: M | dict) -> M:
    """Return `data` as a validated `model`, raising errors.ValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError.from_pydantic(exc) from exc


def _to_date(value):
    """Accept a date, a datetime or a date/datetime string; drop any time part."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date_parser.parse(value).date()
        except (ValueError, OverflowError) as exc:
            raise ValueError(f"invalid date: {value!r}") from exc
    return value


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(CENTS)


class ClientIn(BaseModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone: str | None = None
    status: Literal["active", "stopped"] = "active"
    whatsapp_opt_in: bool = False

    @field_validator("name", "email", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("email")
    @classmethod
    def _email_shape(cls, v: str) -> str:
        if "@" not in v:
            raise ValueError("must be a valid email address")
        return v

    @field_validator("phone", mode="before")
    @classmethod
    def _blank_phone(cls, v):
        if isinstance(v, str):
            v = v.strip()
        return v or None


class SubscriptionIn(BaseModel):
    client_id: int = Field(gt=0)
    type: Literal["internet", "satellite"]
    start_date: date
    end_date: date | None = None
    billing_cycle: Literal[1, 3]
    monthly_amount: Decimal = Field(gt=0, decimal_places=2)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _dates(cls, v):
        return _to_date(v)

    @field_validator("monthly_amount")
    @classmethod
    def _money(cls, v: Decimal) -> Decimal:
        return _quantize(v)

    @model_validator(mode="after")
    def _end_after_start(self):
        if self.end_date is not None and self.end_date <= self.start_date:
            raise ValueError("End date must be after start date.")
        return self


class PaymentRequest(BaseModel):
    subscription_id: int = Field(gt=0)
    amount: Decimal = Field(gt=0, decimal_places=2)
    payment_date: date = Field(default_factory=date.today)
    payment_method: str = "cash"
    notes: str = ""
    # None means "follow the client's consent flag"
    send_whatsapp: bool | None = None

    @field_validator("payment_date", mode="before")
    @classmethod
    def _normalize_date(cls, v):
        return _to_date(v) or date.today()

    @field_validator("payment_method", mode="before")
    @classmethod
    def _default_method(cls, v):
        if isinstance(v, str):
            v = v.strip()
        return v or "cash"

    @field_validator("notes", mode="before")
    @classmethod
    def _strip_notes(cls, v):
        return (v or "").strip()

    @field_validator("amount")
    @classmethod
    def _money(cls, v: Decimal) -> Decimal:
        return _quantize(v)


class PaymentResult(BaseModel):
    payment_id: int
    next_payment_date: date
    whatsapp_sent: bool = False
    whatsapp_error: str | None = None
    email_sent: bool = False


class ReminderIn(BaseModel):
    client_id: int = Field(gt=0)
    message: str = Field(min_length=1)
    send_via_whatsapp: bool = False
    scheduled_date: datetime | None = None

    @field_validator("message", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v


class TemplateIn(BaseModel):
    content: str = Field(min_length=1)
    name: str | None = None

    @field_validator("content", "name", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v

    @model_validator(mode="after")
    def _default_name(self):
        if not self.name:
            self.name = self.content[:30] + "..."
        return self
