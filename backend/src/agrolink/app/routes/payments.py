"""Payment endpoints: create, gateway webhook, verify, disburse."""

import json
import logging
from typing import Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, Body, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from agrolink.app.dependencies import get_gateway, get_mailer, get_realtime
from agrolink.app.errors import ValidationError
from agrolink.app.routes.auth import get_current_user_dep, require_role
from agrolink.domain.models import User
from agrolink.domain.schemas import DisburseRequest, PaymentCreateRequest
from agrolink.infra.database import get_db
from agrolink.infra.instamojo import InstamojoClient
from agrolink.services.email_service import Mailer
from agrolink.services.payment_service import PaymentService
from agrolink.services.realtime import ConnectionManager
from agrolink.services.serializers import serialize_payment

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])

SIGNATURE_HEADER = "X-Instamojo-Signature"


def get_payment_service(
    db: AsyncSession = Depends(get_db),
    gateway: InstamojoClient = Depends(get_gateway),
    mailer: Mailer = Depends(get_mailer),
    realtime: ConnectionManager = Depends(get_realtime),
) -> PaymentService:
    return PaymentService(db, gateway, mailer, realtime)


def _parse_webhook_body(content_type: str, body: bytes) -> dict:
    """Instamojo posts form-encoded data; JSON is accepted as well."""
    if "application/json" in content_type:
        try:
            payload = json.loads(body or b"{}")
        except json.JSONDecodeError:
            raise ValidationError("Malformed webhook body") from None
        if not isinstance(payload, dict):
            raise ValidationError("Malformed webhook body")
        return {str(k): v for k, v in payload.items()}
    return dict(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True))


@router.post("/create", status_code=status.HTTP_201_CREATED)
async def create_payment(
    data: PaymentCreateRequest,
    user: User = Depends(get_current_user_dep),
    service: PaymentService = Depends(get_payment_service),
):
    """Buyer starts a stage payment; returns the hosted checkout link."""
    payment = await service.create_payment(user, data.contract_id, data.stage)
    return {
        "success": True,
        "payment": serialize_payment(payment),
        "payment_url": payment.payment_link,
    }


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    service: PaymentService = Depends(get_payment_service),
):
    """Gateway callback. Authenticated by signature only."""
    body = await request.body()
    payload = _parse_webhook_body(request.headers.get("content-type", ""), body)
    logger.info(
        "Payment webhook: request=%s status=%s",
        payload.get("payment_request_id"),
        payload.get("status"),
    )
    result = await service.handle_webhook(payload, request.headers.get(SIGNATURE_HEADER))
    return {"success": True, **result}


@router.get("/{payment_id}/verify")
async def verify_payment(
    payment_id: str,
    user: User = Depends(get_current_user_dep),
    service: PaymentService = Depends(get_payment_service),
):
    payment, outcome = await service.verify_payment(payment_id, user)
    return {"success": True, "payment": serialize_payment(payment), **outcome}


@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    user: User = Depends(get_current_user_dep),
    service: PaymentService = Depends(get_payment_service),
):
    payment = await service.get_payment(payment_id, user)
    return {"success": True, "payment": serialize_payment(payment)}


@router.put("/{payment_id}/disburse")
async def disburse_payment(
    payment_id: str,
    data: Optional[DisburseRequest] = Body(None),
    admin: User = Depends(require_role("admin")),
    service: PaymentService = Depends(get_payment_service),
):
    """Admin marks a completed payment as forwarded to the farmer."""
    payment = await service.mark_disbursed(payment_id, admin, data.notes if data else None)
    return {"success": True, "payment": serialize_payment(payment)}
