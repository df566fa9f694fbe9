"""ORM -> JSON-ready dict serialization for API and realtime payloads."""

from datetime import datetime
from typing import Optional

from agrolink.domain.enums import PaymentStage
from agrolink.domain.models import (
    Contract,
    ContractEvent,
    CounterOffer,
    Message,
    Notification,
    Payment,
    Product,
    ProductRating,
    User,
)


def _dt(val) -> Optional[str]:
    """Safely convert datetime to ISO string."""
    if val is None:
        return None
    if isinstance(val, datetime):
        return val.isoformat()
    return str(val)


def serialize_user_summary(user: Optional[User]) -> Optional[dict]:
    if user is None:
        return None
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "phone": user.phone,
        "farm_name": user.farm_name,
        "farm_location": user.farm_location,
    }


def serialize_rating(rating: ProductRating) -> dict:
    return {
        "id": rating.id,
        "user_id": rating.user_id,
        "user_name": rating.user.name if rating.user is not None else None,
        "rating": rating.rating,
        "comment": rating.comment,
        "created_at": _dt(rating.created_at),
    }


def serialize_product(product: Product, include_ratings: bool = False) -> dict:
    data = {
        "id": product.id,
        "farmer": serialize_user_summary(product.farmer),
        "name": product.name,
        "description": product.description,
        "price": product.price,
        "category": product.category,
        "available_quantity": product.available_quantity,
        "unit": product.unit,
        "minimum_order_quantity": product.minimum_order_quantity,
        "growing_period": product.growing_period,
        "growth_stage": product.growth_stage,
        "estimated_harvest_date": _dt(product.estimated_harvest_date),
        "organic": product.organic,
        "certification": product.certification,
        "image_urls": product.image_urls or [],
        "average_rating": product.average_rating or 0,
        "num_of_reviews": product.num_of_reviews or 0,
        "status": product.status,
        "created_at": _dt(product.created_at),
        "updated_at": _dt(product.updated_at),
    }
    if include_ratings:
        data["ratings"] = [serialize_rating(r) for r in product.ratings]
    return data


def serialize_counter_offer(offer: CounterOffer) -> dict:
    return {
        "id": offer.id,
        "sequence": offer.sequence,
        "proposed_by": offer.proposed_by,
        "offer_type": offer.offer_type,
        "changes": offer.changes,
        "quantity": offer.quantity,
        "price_per_unit": offer.price_per_unit,
        "total_amount": offer.total_amount,
        "message": offer.message,
        "status": offer.status,
        "created_at": _dt(offer.created_at),
    }


def serialize_contract(contract: Contract) -> dict:
    """Full contract view including histories and per-stage payment refs."""
    payments: dict[str, list[dict]] = {stage.value: [] for stage in PaymentStage}
    for ref in contract.payment_refs:
        payments.setdefault(ref.stage, []).append(
            {"payment_id": ref.payment_id, "status": ref.status}
        )

    return {
        "id": contract.id,
        "farmer": serialize_user_summary(contract.farmer),
        "buyer": serialize_user_summary(contract.buyer),
        "crop": {
            "id": contract.crop.id,
            "name": contract.crop.name,
            "category": contract.crop.category,
            "image_urls": contract.crop.image_urls or [],
        } if contract.crop is not None else {"id": contract.crop_id},
        "quantity": contract.quantity,
        "unit": contract.unit,
        "price_per_unit": contract.price_per_unit,
        "total_amount": contract.total_amount,
        "request_date": _dt(contract.request_date),
        "expected_harvest_date": _dt(contract.expected_harvest_date),
        "delivery_date": _dt(contract.delivery_date),
        "quality_requirements": contract.quality_requirements,
        "special_requirements": contract.special_requirements,
        "payment_terms": {
            "advance": contract.advance_payment_pct,
            "midterm": contract.midterm_payment_pct,
            "final": contract.final_payment_pct,
        },
        "status": contract.status,
        "version": contract.version,
        "negotiation_history": [
            {
                "id": n.id,
                "proposed_by": n.proposed_by,
                "proposed_changes": n.proposed_changes,
                "message": n.message,
                "proposed_at": _dt(n.proposed_at),
            }
            for n in contract.negotiations
        ],
        "counter_offers": [serialize_counter_offer(o) for o in contract.counter_offers],
        "progress_updates": [
            {
                "id": u.id,
                "update_type": u.update_type,
                "description": u.description,
                "image_urls": u.image_urls or [],
                "created_by": u.created_by,
                "created_at": _dt(u.created_at),
            }
            for u in contract.progress_updates
        ],
        "payments": payments,
        "contract_document": contract.contract_document,
        "created_at": _dt(contract.created_at),
        "updated_at": _dt(contract.updated_at),
    }


def serialize_contract_event(event: ContractEvent) -> dict:
    return {
        "id": event.id,
        "event_type": event.event_type,
        "actor": event.actor,
        "actor_id": event.actor_id,
        "from_status": event.from_status,
        "to_status": event.to_status,
        "data": event.data,
        "created_at": _dt(event.created_at),
    }


def serialize_message(message: Message) -> dict:
    return {
        "id": message.id,
        "contract_id": message.contract_id,
        "sender_id": message.sender_id,
        "sender_name": message.sender.name if message.sender is not None else None,
        "recipient_id": message.recipient_id,
        "message_type": message.message_type,
        "content": message.content,
        "offer_details": message.offer_details,
        "counter_offer_id": message.counter_offer_id,
        "read": message.read,
        "created_at": _dt(message.created_at),
    }


def serialize_notification(notification: Notification) -> dict:
    return {
        "id": notification.id,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "data": notification.data,
        "read": notification.read,
        "created_at": _dt(notification.created_at),
    }


def serialize_payment(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "contract_id": payment.contract_id,
        "farmer_id": payment.farmer_id,
        "buyer_id": payment.buyer_id,
        "stage": payment.stage,
        "amount": payment.amount,
        "percentage": payment.percentage,
        "description": payment.description,
        "status": payment.status,
        "gateway": payment.gateway,
        "payment_request_id": payment.payment_request_id,
        "gateway_payment_id": payment.gateway_payment_id,
        "payment_link": payment.payment_link,
        "disbursed": payment.disbursed,
        "disbursed_at": _dt(payment.disbursed_at),
        "admin_notes": payment.admin_notes,
        "completed_at": _dt(payment.completed_at),
        "created_at": _dt(payment.created_at),
        "updated_at": _dt(payment.updated_at),
    }
