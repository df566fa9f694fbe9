"""Staged contract payments through the Instamojo gateway.

Flow per stage (advance, midterm, final):
1. Buyer creates a payment: a pending Payment row is committed, then the
   gateway payment request is created. A gateway failure deletes the row;
   otherwise the request id and contract reference are committed before
   an advance payment moves the contract to payment_pending.
2. The gateway confirms via a signed webhook, or the client polls
   ``verify``. Both paths share ``_complete``, which is idempotent on the
   gateway payment request id and commits the payment, its contract
   reference, the contract transition and the processed marker together.
3. An admin marks completed payments as disbursed to the farmer.
"""

import logging
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from agrolink.app.errors import (
    AuthorizationError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from agrolink.domain.enums import (
    ContractActor,
    ContractEventType,
    ContractStatus,
    NotificationType,
    PaymentStage,
    PaymentStatus,
    UserRole,
)
from agrolink.domain.models import (
    Contract,
    ContractPaymentRef,
    Payment,
    ProcessedGatewayEvent,
    User,
    utcnow,
)
from agrolink.infra.instamojo import InstamojoClient, PaymentGatewayError, validate_webhook_signature
from agrolink.services.contract_service import ContractService, state_machine
from agrolink.services.contract_state_machine import as_status
from agrolink.services.email_service import Mailer
from agrolink.services.realtime import ConnectionManager, user_room
from agrolink.services.serializers import serialize_payment
from agrolink.services.side_effects import run_best_effort

logger = logging.getLogger(__name__)

# Gateway statuses
GATEWAY_CREDIT = "credit"
GATEWAY_COMPLETED = "completed"
GATEWAY_FAILED_STATES = {"failed", "expired"}

SETTLED_STATUSES = {PaymentStatus.COMPLETED.value, PaymentStatus.DISBURSED.value}


class PaymentService:
    """Payment operations for one request."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: InstamojoClient,
        mailer: Optional[Mailer] = None,
        realtime: Optional[ConnectionManager] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.mailer = mailer
        self.realtime = realtime
        self.contracts = ContractService(db, mailer, realtime)

    # ------------------------------------------------------------------
    # Lookup / access
    # ------------------------------------------------------------------

    async def _get_payment(self, payment_id: str) -> Payment:
        payment = await self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        return payment

    @staticmethod
    def _check_access(payment: Payment, user: User) -> None:
        if user.role == UserRole.ADMIN.value:
            return
        if user.id not in (payment.buyer_id, payment.farmer_id):
            raise AuthorizationError("Not authorized to access this payment")

    async def get_payment(self, payment_id: str, user: User) -> Payment:
        payment = await self._get_payment(payment_id)
        self._check_access(payment, user)
        return payment

    async def list_contract_payments(self, contract_id: str, user: User) -> list[Payment]:
        contract, _ = await self.contracts.get_for_party(contract_id, user)
        result = await self.db.execute(
            select(Payment)
            .where(Payment.contract_id == contract.id)
            .order_by(Payment.created_at)
        )
        return list(result.scalars().all())

    async def _ref_for(self, payment: Payment) -> Optional[ContractPaymentRef]:
        result = await self.db.execute(
            select(ContractPaymentRef).where(ContractPaymentRef.payment_id == payment.id)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_payment(self, user: User, contract_id: str, stage: PaymentStage) -> Payment:
        """Create a pending stage payment and its hosted gateway request."""
        contract, actor = await self.contracts.get_for_party(contract_id, user)
        if actor != ContractActor.BUYER:
            raise AuthorizationError("Only the buyer can make payments for this contract")

        current = as_status(contract.status)
        if not state_machine.is_payable(current, stage):
            raise ValidationError(
                f"{stage.value.title()} payment is not available while the contract is {current.value}"
            )

        settled = await self.db.execute(
            select(Payment.id).where(
                Payment.contract_id == contract.id,
                Payment.stage == stage.value,
                Payment.status.in_(SETTLED_STATUSES),
            )
        )
        if settled.first() is not None:
            raise ValidationError(f"{stage.value.title()} payment has already been completed")

        percentage = contract.payment_percentage(stage.value)
        payment = Payment(
            contract_id=contract.id,
            farmer_id=contract.farmer_id,
            buyer_id=contract.buyer_id,
            stage=stage.value,
            amount=round(contract.total_amount * percentage / 100, 2),
            percentage=percentage,
            description=f"{stage.value.title()} payment for contract {contract.id}",
            status=PaymentStatus.PENDING.value,
        )
        self.db.add(payment)
        await self.db.commit()

        try:
            payment_request = await self.gateway.create_payment_request(
                payment_id=payment.id,
                purpose=f"{stage.value.title()} payment",
                amount=payment.amount,
                buyer_name=user.name,
                email=user.email,
                phone=user.phone,
            )
        except PaymentGatewayError as exc:
            logger.error("Gateway request for payment %s failed, removing it: %s", payment.id, exc)
            await self.db.delete(payment)
            await self.db.commit()
            raise ExternalServiceError(
                "Failed to create payment request", unavailable=exc.unavailable, error=str(exc)
            ) from exc

        payment.payment_request_id = payment_request.get("id")
        payment.payment_link = payment_request.get("longurl")
        payment.transaction_data = {"payment_request": payment_request}
        self.db.add(
            ContractPaymentRef(
                contract_id=contract.id,
                stage=stage.value,
                payment_id=payment.id,
                status=PaymentStatus.PENDING.value,
            )
        )
        # The checkout link is live from here on; keep the request id out of
        # any commit that can lose a race on the contract row.
        await self.db.commit()

        contract_id = contract.id
        moved = False
        if stage == PaymentStage.ADVANCE and current == ContractStatus.ACCEPTED:
            moved = await self._mark_payment_pending(contract_id, payment, user.id)
        logger.info(
            "Payment %s created: contract=%s stage=%s amount=%.2f request=%s",
            payment.id,
            contract_id,
            stage.value,
            payment.amount,
            payment.payment_request_id,
        )

        if moved:
            await self.contracts.broadcast_contract(await self.contracts.load(contract_id))
        return payment

    async def _mark_payment_pending(self, contract_id: str, payment: Payment, buyer_id: str) -> bool:
        """Move an accepted contract to payment_pending once its advance request exists.

        The contract is reloaded since the other party may have written it
        during the gateway call. If the write still loses a race the contract
        keeps its status; an advance completion is accepted from ``accepted``
        as well, so the payment stays usable either way.
        """
        payment_id = payment.id
        contract = await self.contracts.load(contract_id)
        if as_status(contract.status) != ContractStatus.ACCEPTED:
            logger.info(
                "Contract %s moved to %s during payment %s, leaving its status",
                contract_id,
                contract.status,
                payment_id,
            )
            return False

        self.contracts.transition(
            contract,
            ContractStatus.PAYMENT_PENDING,
            ContractActor.BUYER,
            buyer_id,
            ContractEventType.STATUS_CHANGED,
            {"payment_id": payment_id, "stage": PaymentStage.ADVANCE.value},
        )
        try:
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            await self.db.refresh(payment)
            logger.warning(
                "Contract %s changed concurrently while payment %s was created, leaving its status",
                contract_id,
                payment_id,
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Completion (webhook + polling)
    # ------------------------------------------------------------------

    async def _complete(
        self,
        payment: Payment,
        source: str,
        gateway_payment_id: Optional[str],
        raw: dict,
    ) -> dict:
        """Apply a gateway-reported completion exactly once."""
        key = payment.payment_request_id
        marker = await self.db.execute(
            select(ProcessedGatewayEvent.id).where(ProcessedGatewayEvent.idempotency_key == key)
        )
        if marker.first() is not None or payment.status in SETTLED_STATUSES:
            logger.info("Payment %s: %s completion for %s already applied", payment.id, source, key)
            return {"duplicate": True, "contract_status": None}

        payment.status = PaymentStatus.COMPLETED.value
        payment.completed_at = utcnow()
        if gateway_payment_id:
            payment.gateway_payment_id = gateway_payment_id
        if source == "webhook":
            payment.transaction_data = {**(payment.transaction_data or {}), "webhook": raw}
        else:
            payment.verification_data = raw

        ref = await self._ref_for(payment)
        if ref is not None:
            ref.status = PaymentStatus.COMPLETED.value

        contract = await self.contracts.load(payment.contract_id)
        new_status = await self.contracts.apply_stage_completion(
            contract, PaymentStage(payment.stage), payment.id
        )

        self.db.add(
            ProcessedGatewayEvent(
                idempotency_key=key,
                payment_id=payment.id,
                source=source,
                outcome=PaymentStatus.COMPLETED.value,
            )
        )
        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent delivery committed the marker first.
            await self.db.rollback()
            await self.db.refresh(payment)
            logger.info("Payment %s: concurrent %s completion for %s ignored", payment.id, source, key)
            return {"duplicate": True, "contract_status": None}
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Payment %s completed via %s (stage=%s, contract=%s -> %s)",
            payment.id,
            source,
            payment.stage,
            payment.contract_id,
            new_status.value if new_status else "unchanged",
        )
        await self._after_completion(payment)
        return {"duplicate": False, "contract_status": new_status.value if new_status else None}

    async def _after_completion(self, payment: Payment) -> None:
        contract = await self.contracts.load(payment.contract_id)
        farmer = contract.farmer
        if self.mailer is not None:
            await run_best_effort(
                "email:payment_admin",
                self.mailer.send_payment_received(self.mailer.config.admin_email, payment, contract),
            )
            await run_best_effort(
                "email:payment_farmer",
                self.mailer.send_payment_received(farmer.email, payment, contract),
            )
        for recipient_id, title in (
            (payment.farmer_id, f"{payment.stage.title()} payment received"),
            (payment.buyer_id, f"{payment.stage.title()} payment confirmed"),
        ):
            await run_best_effort(
                "notification:payment",
                self.contracts.notifications.notify(
                    recipient_id,
                    NotificationType.PAYMENT,
                    title,
                    f"{payment.amount:.2f} for contract {contract.id}",
                    {"contract_id": contract.id, "payment_id": payment.id, "stage": payment.stage},
                ),
            )
        await self.contracts.broadcast_contract(contract)

    async def _mark_failed(self, payment: Payment, source: str, raw: dict) -> None:
        if payment.status != PaymentStatus.PENDING.value:
            logger.info("Payment %s: ignoring %s failure, status is %s", payment.id, source, payment.status)
            return
        payment.status = PaymentStatus.FAILED.value
        if source == "webhook":
            payment.transaction_data = {**(payment.transaction_data or {}), "webhook": raw}
        else:
            payment.verification_data = raw
        ref = await self._ref_for(payment)
        if ref is not None:
            ref.status = PaymentStatus.FAILED.value
        await self.db.commit()
        logger.info("Payment %s marked failed via %s", payment.id, source)

    async def handle_webhook(self, payload: Mapping[str, Any], signature: Optional[str]) -> dict:
        """Process a signed gateway webhook.

        The signature is checked before anything is read from the store.
        """
        signature = signature or payload.get("mac")
        if not validate_webhook_signature(payload, signature, self.gateway.config.salt):
            logger.warning("Rejected webhook with invalid signature for %s", payload.get("payment_request_id"))
            raise ValidationError("Invalid webhook signature")

        request_id = payload.get("payment_request_id")
        if not request_id:
            raise ValidationError("payment_request_id is required")

        result = await self.db.execute(select(Payment).where(Payment.payment_request_id == request_id))
        payment = result.scalar_one_or_none()
        if payment is None:
            raise NotFoundError("Payment not found")

        raw = {k: v for k, v in payload.items() if k != "mac"}
        gateway_status = str(payload.get("status", "")).lower()
        if gateway_status == GATEWAY_CREDIT:
            outcome = await self._complete(payment, "webhook", payload.get("payment_id"), raw)
        else:
            await self._mark_failed(payment, "webhook", raw)
            outcome = {"duplicate": False, "contract_status": None}

        return {"payment_id": payment.id, "status": payment.status, **outcome}

    async def verify_payment(self, payment_id: str, user: User) -> tuple[Payment, dict]:
        """Poll the gateway for a pending payment and apply the result."""
        payment = await self.get_payment(payment_id, user)
        if payment.status != PaymentStatus.PENDING.value or not payment.payment_request_id:
            return payment, {"duplicate": False, "contract_status": None}

        try:
            payment_request = await self.gateway.get_payment_request(payment.payment_request_id)
        except PaymentGatewayError as exc:
            raise ExternalServiceError(
                "Failed to verify payment", unavailable=exc.unavailable, error=str(exc)
            ) from exc

        request_status = str(payment_request.get("status", "")).lower()
        gateway_payments = payment_request.get("payments") or []
        credited = [
            p for p in gateway_payments
            if isinstance(p, dict) and str(p.get("status", "")).lower() == GATEWAY_CREDIT
        ]

        if request_status == GATEWAY_COMPLETED or credited:
            gateway_payment_id = credited[0].get("payment_id") if credited else None
            outcome = await self._complete(payment, "verify", gateway_payment_id, payment_request)
        elif request_status in GATEWAY_FAILED_STATES:
            await self._mark_failed(payment, "verify", payment_request)
            outcome = {"duplicate": False, "contract_status": None}
        else:
            payment.verification_data = payment_request
            await self.db.commit()
            outcome = {"duplicate": False, "contract_status": None}
        return payment, outcome

    # ------------------------------------------------------------------
    # Disbursement
    # ------------------------------------------------------------------

    async def mark_disbursed(self, payment_id: str, admin: User, notes: Optional[str] = None) -> Payment:
        """Admin marks a completed payment as forwarded to the farmer."""
        if admin.role != UserRole.ADMIN.value:
            raise AuthorizationError("Only admins can disburse payments")
        payment = await self._get_payment(payment_id)
        if payment.status != PaymentStatus.COMPLETED.value:
            raise ValidationError("Only completed payments can be disbursed")

        payment.status = PaymentStatus.DISBURSED.value
        payment.disbursed = True
        payment.disbursed_at = utcnow()
        payment.disbursed_by = admin.id
        payment.admin_notes = notes
        ref = await self._ref_for(payment)
        if ref is not None:
            ref.status = PaymentStatus.DISBURSED.value
        await self.db.commit()
        logger.info("Payment %s disbursed by admin %s", payment.id, admin.id)

        farmer = await self.db.get(User, payment.farmer_id)
        if self.mailer is not None:
            await run_best_effort(
                "email:disbursed_admin",
                self.mailer.send_payment_disbursed(self.mailer.config.admin_email, payment),
            )
            if farmer is not None:
                await run_best_effort(
                    "email:disbursed_farmer",
                    self.mailer.send_payment_disbursed(farmer.email, payment),
                )
        await run_best_effort(
            "notification:disbursed",
            self.contracts.notifications.notify(
                payment.farmer_id,
                NotificationType.PAYMENT,
                f"{payment.stage.title()} payment disbursed",
                f"{payment.amount:.2f} has been disbursed for contract {payment.contract_id}",
                {"contract_id": payment.contract_id, "payment_id": payment.id},
            ),
        )
        if self.realtime is not None:
            await run_best_effort(
                "realtime:payment_disbursed",
                self.realtime.emit(user_room(payment.farmer_id), "payment_updated", serialize_payment(payment)),
            )
        return payment
