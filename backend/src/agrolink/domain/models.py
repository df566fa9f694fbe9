"""SQLAlchemy ORM models for the AgroLink marketplace.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps (no TIMESTAMPTZ)

Timestamps are filled in Python rather than by the database so that freshly
written rows can be serialized without a refresh round-trip.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from agrolink.infra.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Auth / User
# ---------------------------------------------------------------------------


class User(Base):
    """Platform user: farmer, customer (buyer) or admin."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    role = Column(String(20), nullable=False, default="customer")  # UserRole
    is_active = Column(Boolean, default=True)

    # Farmer profile
    farm_name = Column(String(255), nullable=True)
    farm_location = Column(String(255), nullable=True)
    farm_size = Column(String(100), nullable=True)
    bio = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    last_login_at = Column(DateTime, nullable=True)

    # Relationships
    products = relationship("Product", back_populates="farmer")


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


class Product(Base):
    """Crop listing owned by a farmer. Soft-deleted through ``status``."""

    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_uuid)
    farmer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    price = Column(Float, nullable=False)
    category = Column(String(30), nullable=False, index=True)  # ProductCategory
    available_quantity = Column(Float, nullable=False)
    unit = Column(String(20), nullable=False, default="kg")  # Unit
    minimum_order_quantity = Column(Float, default=1)
    growing_period = Column(Integer, nullable=True)  # days
    growth_stage = Column(String(20), nullable=False, default="not_planted")  # GrowthStage
    estimated_harvest_date = Column(DateTime, nullable=True)
    organic = Column(Boolean, default=False)
    certification = Column(String(255), nullable=True)
    image_urls = Column(JSON, default=list)

    # Ratings (derived, recomputed on every review write)
    average_rating = Column(Float, default=0)
    num_of_reviews = Column(Integer, default=0)

    status = Column(String(20), nullable=False, default="active", index=True)  # ProductStatus
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    farmer = relationship("User", back_populates="products", lazy="selectin")
    ratings = relationship(
        "ProductRating",
        back_populates="product",
        lazy="selectin",
        order_by="ProductRating.created_at",
        cascade="all, delete-orphan",
    )


class ProductRating(Base):
    """A single user's review of a product. One per (product, user)."""

    __tablename__ = "product_ratings"
    __table_args__ = (UniqueConstraint("product_id", "user_id", name="uq_product_rating_user"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    rating = Column(Integer, nullable=False)  # 1-5
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    product = relationship("Product", back_populates="ratings")
    user = relationship("User", lazy="selectin")


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class Contract(Base):
    """Negotiated agreement between a farmer and a buyer for one crop.

    ``version`` is the optimistic-concurrency counter: every UPDATE is issued
    as ``... WHERE version = :old`` and a lost race raises ``StaleDataError``.
    """

    __tablename__ = "contracts"

    id = Column(String(36), primary_key=True, default=_uuid)
    farmer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    buyer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    crop_id = Column(String(36), ForeignKey("products.id"), nullable=False)

    # Terms
    quantity = Column(Float, nullable=False)
    unit = Column(String(20), nullable=False)  # Unit
    price_per_unit = Column(Float, nullable=False)
    total_amount = Column(Float, nullable=False)

    # Dates
    request_date = Column(DateTime, default=utcnow)
    expected_harvest_date = Column(DateTime, nullable=True)
    delivery_date = Column(DateTime, nullable=True)

    # Requirements
    quality_requirements = Column(Text, nullable=False)
    special_requirements = Column(Text, nullable=True)

    # Payment terms (percentages per stage)
    advance_payment_pct = Column(Float, nullable=False, default=20)
    midterm_payment_pct = Column(Float, nullable=False, default=50)
    final_payment_pct = Column(Float, nullable=False, default=30)

    # Status
    status = Column(String(30), nullable=False, default="requested", index=True)  # ContractStatus
    contract_document = Column(JSON, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    farmer = relationship("User", foreign_keys=[farmer_id], lazy="selectin")
    buyer = relationship("User", foreign_keys=[buyer_id], lazy="selectin")
    crop = relationship("Product", lazy="selectin")
    negotiations = relationship(
        "ContractNegotiation",
        back_populates="contract",
        lazy="selectin",
        order_by="ContractNegotiation.proposed_at",
    )
    counter_offers = relationship(
        "CounterOffer",
        back_populates="contract",
        lazy="selectin",
        order_by="CounterOffer.sequence",
    )
    progress_updates = relationship(
        "ProgressUpdate",
        back_populates="contract",
        lazy="selectin",
        order_by="ProgressUpdate.created_at",
    )
    payment_refs = relationship(
        "ContractPaymentRef",
        back_populates="contract",
        lazy="selectin",
        order_by="ContractPaymentRef.created_at",
    )
    events = relationship(
        "ContractEvent",
        back_populates="contract",
        order_by="ContractEvent.created_at",
    )

    def payment_percentage(self, stage: str) -> float:
        """Return the agreed percentage for a payment stage."""
        return {
            "advance": self.advance_payment_pct,
            "midterm": self.midterm_payment_pct,
            "final": self.final_payment_pct,
        }[stage]


class ContractNegotiation(Base):
    """Append-only negotiation history entry."""

    __tablename__ = "contract_negotiations"

    id = Column(String(36), primary_key=True, default=_uuid)
    contract_id = Column(String(36), ForeignKey("contracts.id"), nullable=False, index=True)
    proposed_by = Column(String(36), ForeignKey("users.id"), nullable=False)
    proposed_changes = Column(JSON, nullable=False)  # list of typed offer changes
    message = Column(Text, nullable=True)
    proposed_at = Column(DateTime, default=utcnow)

    # Relationships
    contract = relationship("Contract", back_populates="negotiations")


class CounterOffer(Base):
    """A typed counter-offer with its computed total."""

    __tablename__ = "counter_offers"
    __table_args__ = (UniqueConstraint("contract_id", "sequence", name="uq_counter_offer_sequence"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    contract_id = Column(String(36), ForeignKey("contracts.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    proposed_by = Column(String(36), ForeignKey("users.id"), nullable=False)
    offer_type = Column(String(30), nullable=False)  # OfferKind or "combined"
    changes = Column(JSON, nullable=False)
    quantity = Column(Float, nullable=False)
    price_per_unit = Column(Float, nullable=False)
    total_amount = Column(Float, nullable=False)
    message = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="pending")  # CounterOfferStatus
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    contract = relationship("Contract", back_populates="counter_offers")


class ProgressUpdate(Base):
    """Farmer-authored progress log entry."""

    __tablename__ = "progress_updates"

    id = Column(String(36), primary_key=True, default=_uuid)
    contract_id = Column(String(36), ForeignKey("contracts.id"), nullable=False, index=True)
    update_type = Column(String(20), nullable=False)  # ProgressUpdateType
    description = Column(Text, nullable=False)
    image_urls = Column(JSON, default=list)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    contract = relationship("Contract", back_populates="progress_updates")


class ContractEvent(Base):
    """Immutable audit trail entry for contract state transitions."""

    __tablename__ = "contract_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    contract_id = Column(String(36), ForeignKey("contracts.id"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)  # ContractEventType
    actor = Column(String(20), nullable=False)  # ContractActor
    actor_id = Column(String(36), nullable=True)
    from_status = Column(String(30), nullable=True)  # ContractStatus
    to_status = Column(String(30), nullable=True)  # ContractStatus
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    contract = relationship("Contract", back_populates="events")


class ContractPaymentRef(Base):
    """Reference from a contract stage to one of its payment attempts."""

    __tablename__ = "contract_payment_refs"

    id = Column(String(36), primary_key=True, default=_uuid)
    contract_id = Column(String(36), ForeignKey("contracts.id"), nullable=False, index=True)
    stage = Column(String(20), nullable=False)  # PaymentStage
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default="pending")  # PaymentStatus
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    contract = relationship("Contract", back_populates="payment_refs")


# ---------------------------------------------------------------------------
# Chat / Notifications
# ---------------------------------------------------------------------------


class Message(Base):
    """Chat message within a contract conversation. Only ``read`` is mutable."""

    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    contract_id = Column(String(36), ForeignKey("contracts.id"), nullable=False, index=True)
    sender_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    recipient_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    message_type = Column(String(20), nullable=False, default="text")  # MessageType
    content = Column(Text, nullable=False)
    offer_details = Column(JSON, nullable=True)
    counter_offer_id = Column(String(36), ForeignKey("counter_offers.id"), nullable=True)
    read = Column(Boolean, default=False)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    # Relationships
    sender = relationship("User", foreign_keys=[sender_id], lazy="selectin")


class Notification(Base):
    """Fire-and-forget notice addressed to one user."""

    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=_uuid)
    recipient_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(40), nullable=False)  # NotificationType
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow, index=True)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class Payment(Base):
    """One staged payment attempt for a contract."""

    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    contract_id = Column(String(36), ForeignKey("contracts.id"), nullable=False, index=True)
    farmer_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    buyer_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    stage = Column(String(20), nullable=False)  # PaymentStage
    amount = Column(Float, nullable=False)
    percentage = Column(Float, nullable=False)
    description = Column(String(500), nullable=True)

    # Status
    status = Column(String(20), nullable=False, default="pending", index=True)  # PaymentStatus
    completed_at = Column(DateTime, nullable=True)

    # Gateway
    gateway = Column(String(20), nullable=False, default="instamojo")  # PaymentGateway
    payment_request_id = Column(String(100), nullable=True, index=True)
    gateway_payment_id = Column(String(100), nullable=True)
    payment_link = Column(String(500), nullable=True)
    transaction_data = Column(JSON, nullable=True)
    verification_data = Column(JSON, nullable=True)

    # Disbursement
    disbursed = Column(Boolean, default=False)
    disbursed_at = Column(DateTime, nullable=True)
    disbursed_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    admin_notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ProcessedGatewayEvent(Base):
    """Marker recording that a gateway completion has been applied.

    The unique ``idempotency_key`` (the gateway payment request id) makes a
    replayed webhook or a late polling result a no-op.
    """

    __tablename__ = "processed_gateway_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    idempotency_key = Column(String(100), nullable=False, unique=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False)
    source = Column(String(20), nullable=False)  # webhook | verify
    outcome = Column(String(20), nullable=False)  # PaymentStatus applied
    processed_at = Column(DateTime, default=utcnow)
