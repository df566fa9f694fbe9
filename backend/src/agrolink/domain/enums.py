"""Domain enumerations for the AgroLink marketplace.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class UserRole(str, Enum):
    """Account type of a platform user."""

    FARMER = "farmer"
    CUSTOMER = "customer"
    ADMIN = "admin"


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


class Unit(str, Enum):
    """Unit of measure for crop quantities."""

    KG = "kg"
    G = "g"
    TON = "ton"
    QUINTAL = "quintal"
    ACRE = "acre"
    HECTARE = "hectare"


class ProductCategory(str, Enum):
    """Crop listing category."""

    VEGETABLES = "Vegetables"
    FRUITS = "Fruits"
    GRAINS = "Grains"
    PULSES = "Pulses"
    OILSEEDS = "Oilseeds"
    SPICES = "Spices"
    HERBS = "Herbs"
    OTHER = "Other"


class GrowthStage(str, Enum):
    """Current growth stage of a listed crop."""

    SEED = "seed"
    SEEDLING = "seedling"
    VEGETATIVE = "vegetative"
    FLOWERING = "flowering"
    FRUITING = "fruiting"
    MATURE = "mature"
    HARVESTED = "harvested"
    NOT_PLANTED = "not_planted"


class ProductStatus(str, Enum):
    """Listing visibility. Listings are soft-deleted, never removed."""

    ACTIVE = "active"
    UNAVAILABLE = "unavailable"
    DELETED = "deleted"


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class ContractStatus(str, Enum):
    """Lifecycle status of a farmer/buyer contract."""

    REQUESTED = "requested"
    NEGOTIATING = "negotiating"
    ACCEPTED = "accepted"
    PAYMENT_PENDING = "payment_pending"
    ACTIVE = "active"
    READY_FOR_HARVEST = "readyForHarvest"
    HARVESTED = "harvested"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class ContractActor(str, Enum):
    """Actor performing a contract action."""

    FARMER = "farmer"
    BUYER = "buyer"
    SYSTEM = "system"


class ContractEventType(str, Enum):
    """Type of event in the contract audit trail."""

    REQUESTED = "requested"
    COUNTER_OFFER = "counter_offer"
    ACCEPTED = "accepted"
    OFFER_ACCEPTED = "offer_accepted"
    STATUS_CHANGED = "status_changed"
    PAYMENT_COMPLETED = "payment_completed"
    PROGRESS_UPDATE = "progress_update"


class OfferKind(str, Enum):
    """Contract term a counter-offer change applies to."""

    QUANTITY = "quantity"
    PRICE_PER_UNIT = "price_per_unit"
    DELIVERY_DATE = "delivery_date"
    PAYMENT_TERMS = "payment_terms"
    QUALITY_REQUIREMENTS = "quality_requirements"
    SPECIAL_REQUIREMENTS = "special_requirements"


# Offer type recorded when a counter-offer changes more than one term
COMBINED_OFFER_TYPE = "combined"


class CounterOfferStatus(str, Enum):
    """Status of a counter-offer."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    SUPERSEDED = "superseded"


class ProgressUpdateType(str, Enum):
    """Kind of farmer-authored progress update."""

    PLANTING = "planting"
    GROWING = "growing"
    HARVESTING = "harvesting"
    PROCESSING = "processing"
    SHIPPING = "shipping"
    OTHER = "other"


# ---------------------------------------------------------------------------
# Chat / notifications
# ---------------------------------------------------------------------------


class MessageType(str, Enum):
    """Type of chat message within a contract conversation."""

    TEXT = "text"
    COUNTER_OFFER = "counterOffer"
    SYSTEM_MESSAGE = "systemMessage"


class NotificationType(str, Enum):
    """Tag carried by a user notification."""

    CONTRACT_STATUS_UPDATE = "contract_status_update"
    CONTRACT_CREATED = "contract_created"
    CONTRACT_REQUEST = "contract_request"
    CONTRACT_COUNTER_OFFER = "contract_counter_offer"
    MESSAGE = "message"
    PAYMENT = "payment"
    SYSTEM = "system"


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentStage(str, Enum):
    """One of the three staged contract payments."""

    ADVANCE = "advance"
    MIDTERM = "midterm"
    FINAL = "final"


class PaymentStatus(str, Enum):
    """Status of a staged payment."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    DISBURSED = "disbursed"


class PaymentGateway(str, Enum):
    """Gateway that settled a payment."""

    INSTAMOJO = "instamojo"
    MANUAL = "manual"
    OTHER = "other"
