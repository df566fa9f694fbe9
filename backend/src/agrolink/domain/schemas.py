"""Pydantic v2 schemas for API request validation."""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from agrolink.domain.enums import (
    ContractStatus,
    GrowthStage,
    MessageType,
    PaymentStage,
    ProductCategory,
    ProductStatus,
    ProgressUpdateType,
    Unit,
    UserRole,
)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Schema for creating a new user."""

    email: str
    password: str = Field(min_length=6)
    name: str = Field(min_length=1)
    role: UserRole = UserRole.CUSTOMER
    phone: str | None = None
    farm_name: str | None = None
    farm_location: str | None = None
    farm_size: str | None = None

    @field_validator("role")
    @classmethod
    def no_self_service_admin(cls, v: UserRole) -> UserRole:
        if v == UserRole.ADMIN:
            raise ValueError("admin accounts cannot be created through signup")
        return v

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("a valid email is required")
        return v


class UserLogin(BaseModel):
    """Schema for user login."""

    email: str
    password: str


class UserResponse(BaseModel):
    """Schema for user API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    role: str
    phone: str | None = None
    farm_name: str | None = None
    farm_location: str | None = None
    farm_size: str | None = None
    bio: str | None = None
    is_active: bool


class ProfileUpdate(BaseModel):
    """Mutable profile fields. Email is deliberately absent."""

    name: str | None = None
    phone: str | None = None
    farm_name: str | None = None
    farm_location: str | None = None
    farm_size: str | None = None
    bio: str | None = None


class PasswordChange(BaseModel):
    old_password: str
    new_password: str = Field(min_length=6)


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


class ProductCreate(BaseModel):
    """Schema for a new crop listing."""

    name: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1)
    price: float = Field(ge=0)
    category: ProductCategory
    available_quantity: float = Field(ge=0)
    unit: Unit = Unit.KG
    minimum_order_quantity: float = Field(default=1, ge=0)
    growing_period: int | None = Field(default=None, ge=0)
    growth_stage: GrowthStage = GrowthStage.NOT_PLANTED
    estimated_harvest_date: datetime | None = None
    organic: bool = False
    certification: str | None = None
    image_urls: list[str] = []


class ProductUpdate(BaseModel):
    """Partial update of a crop listing."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    price: float | None = Field(default=None, ge=0)
    category: ProductCategory | None = None
    available_quantity: float | None = Field(default=None, ge=0)
    unit: Unit | None = None
    minimum_order_quantity: float | None = Field(default=None, ge=0)
    growing_period: int | None = Field(default=None, ge=0)
    growth_stage: GrowthStage | None = None
    estimated_harvest_date: datetime | None = None
    organic: bool | None = None
    certification: str | None = None
    image_urls: list[str] | None = None
    status: ProductStatus | None = None


class ReviewCreate(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str | None = None


# ---------------------------------------------------------------------------
# Contracts: typed counter-offers
# ---------------------------------------------------------------------------


class PaymentTermsSchema(BaseModel):
    """Stage percentages. Must sum to 100."""

    advance: float = Field(ge=0, le=100)
    midterm: float = Field(ge=0, le=100)
    final: float = Field(ge=0, le=100)

    @model_validator(mode="after")
    def check_total(self) -> "PaymentTermsSchema":
        if abs(self.advance + self.midterm + self.final - 100) > 0.01:
            raise ValueError("payment terms must sum to 100")
        return self


class QuantityChange(BaseModel):
    kind: Literal["quantity"]
    value: float = Field(ge=1)


class PricePerUnitChange(BaseModel):
    kind: Literal["price_per_unit"]
    value: float = Field(ge=1)


class DeliveryDateChange(BaseModel):
    kind: Literal["delivery_date"]
    value: datetime


class PaymentTermsChange(BaseModel):
    kind: Literal["payment_terms"]
    value: PaymentTermsSchema


class QualityRequirementsChange(BaseModel):
    kind: Literal["quality_requirements"]
    value: str = Field(min_length=1)


class SpecialRequirementsChange(BaseModel):
    kind: Literal["special_requirements"]
    value: str


OfferChange = Annotated[
    Union[
        QuantityChange,
        PricePerUnitChange,
        DeliveryDateChange,
        PaymentTermsChange,
        QualityRequirementsChange,
        SpecialRequirementsChange,
    ],
    Field(discriminator="kind"),
]


def _reject_duplicate_kinds(changes: list) -> list:
    kinds = [change.kind for change in changes]
    if len(kinds) != len(set(kinds)):
        raise ValueError("each offer term may appear only once")
    return changes


class CounterOfferRequest(BaseModel):
    """A counter-offer: one or more typed term changes plus an optional note."""

    changes: list[OfferChange] = Field(min_length=1)
    message: Optional[str] = None

    @field_validator("changes")
    @classmethod
    def unique_kinds(cls, v: list) -> list:
        return _reject_duplicate_kinds(v)


class ContractRequestCreate(BaseModel):
    """Buyer's initial contract request for a crop listing."""

    crop_id: str
    farmer_id: str | None = None
    quantity: float = Field(ge=1)
    unit: Unit
    price_per_unit: float = Field(ge=1)
    expected_harvest_date: datetime | None = None
    delivery_date: datetime | None = None
    quality_requirements: str = Field(min_length=1)
    special_requirements: str | None = None
    payment_terms: PaymentTermsSchema | None = None


class StatusUpdateRequest(BaseModel):
    status: ContractStatus
    note: str | None = None


class ProgressUpdateCreate(BaseModel):
    update_type: ProgressUpdateType
    description: str = Field(min_length=1)
    image_urls: list[str] = []


class AcceptOfferRequest(BaseModel):
    message: str | None = None


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class MessageCreate(BaseModel):
    """Chat message from a contract party.

    ``counterOffer`` messages must carry typed ``changes``; system messages
    are only ever produced by the server.
    """

    content: str = Field(min_length=1)
    message_type: MessageType = MessageType.TEXT
    changes: list[OfferChange] | None = None

    @field_validator("message_type")
    @classmethod
    def no_client_system_messages(cls, v: MessageType) -> MessageType:
        if v == MessageType.SYSTEM_MESSAGE:
            raise ValueError("system messages cannot be sent by users")
        return v

    @model_validator(mode="after")
    def offer_changes_match_type(self) -> "MessageCreate":
        if self.message_type == MessageType.COUNTER_OFFER:
            if not self.changes:
                raise ValueError("counter-offer messages require offer changes")
            _reject_duplicate_kinds(self.changes)
        elif self.changes:
            raise ValueError("offer changes are only allowed on counter-offer messages")
        return self


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentCreateRequest(BaseModel):
    contract_id: str
    stage: PaymentStage


class DisburseRequest(BaseModel):
    notes: str | None = None
