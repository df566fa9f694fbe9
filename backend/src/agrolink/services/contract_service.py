"""Contract negotiation service.

Every mutation goes through the ContractStateMachine, writes a
ContractEvent audit record in the same transaction, commits, and only then
runs the best-effort side effects (notification row, email, realtime push)
for the counterparty.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import TypeAdapter
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from agrolink.app.errors import AuthorizationError, NotFoundError, ValidationError
from agrolink.domain.enums import (
    COMBINED_OFFER_TYPE,
    ContractActor,
    ContractEventType,
    ContractStatus,
    CounterOfferStatus,
    MessageType,
    NotificationType,
    OfferKind,
    PaymentStage,
    ProductStatus,
    UserRole,
)
from agrolink.domain.models import (
    Contract,
    ContractEvent,
    ContractNegotiation,
    CounterOffer,
    Message,
    Product,
    ProgressUpdate,
    User,
    utcnow,
)
from agrolink.domain.schemas import ContractRequestCreate, ProgressUpdateCreate
from agrolink.services.contract_state_machine import (
    TERMINAL_STATES,
    ContractStateMachine,
    as_status,
)
from agrolink.services.email_service import Mailer
from agrolink.services.message_store import add_message, count_unread
from agrolink.services.notification_service import NotificationService
from agrolink.services.realtime import ConnectionManager, contract_room, user_room
from agrolink.services.serializers import (
    serialize_contract,
    serialize_counter_offer,
    serialize_message,
)
from agrolink.services.side_effects import run_best_effort

logger = logging.getLogger(__name__)

state_machine = ContractStateMachine()

_datetime_adapter = TypeAdapter(datetime)

DEFAULT_PAYMENT_TERMS = {"advance": 20.0, "midterm": 50.0, "final": 30.0}


def compute_total(quantity: float, price_per_unit: float) -> float:
    return round(quantity * price_per_unit, 2)


def _describe_changes(changes: list[dict]) -> str:
    parts = []
    for change in changes:
        value = change["value"]
        if change["kind"] == OfferKind.PAYMENT_TERMS.value:
            value = "/".join(f"{value[k]:g}" for k in ("advance", "midterm", "final"))
        parts.append(f"{change['kind'].replace('_', ' ')}: {value}")
    return ", ".join(parts)


def _document_terms(document: dict) -> dict:
    return {k: v for k, v in document.items() if k != "generated_at"}


class ContractService:
    """Contract lifecycle operations for one request/socket event."""

    def __init__(
        self,
        db: AsyncSession,
        mailer: Optional[Mailer] = None,
        realtime: Optional[ConnectionManager] = None,
    ):
        self.db = db
        self.mailer = mailer
        self.realtime = realtime
        self.notifications = NotificationService(db, realtime)

    # ------------------------------------------------------------------
    # Loading / access
    # ------------------------------------------------------------------

    async def load(self, contract_id: str) -> Contract:
        """Load a contract with its histories, refreshing any cached copy."""
        result = await self.db.execute(
            select(Contract)
            .where(Contract.id == contract_id)
            .execution_options(populate_existing=True)
        )
        contract = result.scalar_one_or_none()
        if contract is None:
            raise NotFoundError("Contract not found")
        return contract

    @staticmethod
    def actor_for(contract: Contract, user: User) -> ContractActor:
        """Map the caller to a contract party or raise 403."""
        if user.id == contract.farmer_id:
            return ContractActor.FARMER
        if user.id == contract.buyer_id:
            return ContractActor.BUYER
        raise AuthorizationError("Not authorized to access this contract")

    async def get_for_party(self, contract_id: str, user: User) -> tuple[Contract, ContractActor]:
        contract = await self.load(contract_id)
        return contract, self.actor_for(contract, user)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(
        self,
        contract: Contract,
        target_status: ContractStatus,
        actor: ContractActor,
        actor_id: Optional[str],
        event_type: ContractEventType,
        extra_data: Optional[dict] = None,
        validate: bool = True,
    ) -> ContractEvent:
        """Validate and stage a state transition with its audit event."""
        current = as_status(contract.status)
        if validate:
            state_machine.validate_transition(current, target_status, actor)

        contract.status = target_status.value
        # Always touch the row so the version check runs even for
        # same-status transitions (negotiating -> negotiating).
        contract.updated_at = utcnow()

        event = ContractEvent(
            contract_id=contract.id,
            event_type=event_type.value,
            actor=actor.value,
            actor_id=actor_id,
            from_status=current.value,
            to_status=target_status.value,
            data=extra_data,
        )
        self.db.add(event)

        logger.info(
            "Contract %s: %s -> %s (actor=%s, user=%s)",
            contract.id,
            current.value,
            target_status.value,
            actor.value,
            actor_id,
        )
        return event

    async def apply_stage_completion(
        self,
        contract: Contract,
        stage: PaymentStage,
        payment_id: str,
    ) -> Optional[ContractStatus]:
        """Stage the contract advance for a completed payment. Caller commits.

        Returns the new status, or None when the contract has already moved
        past (or away from) the point this stage advances it from.
        """
        current = as_status(contract.status)
        target = state_machine.completion_target(current, stage)
        if target is None:
            logger.warning(
                "Contract %s: %s payment %s completed while %s, status left unchanged",
                contract.id,
                stage.value,
                payment_id,
                current.value,
            )
            return None
        self.transition(
            contract,
            target,
            ContractActor.SYSTEM,
            None,
            ContractEventType.PAYMENT_COMPLETED,
            {"stage": stage.value, "payment_id": payment_id},
        )
        return target

    # ------------------------------------------------------------------
    # Side effects (run after commit, never raise)
    # ------------------------------------------------------------------

    async def _notify_party(
        self,
        contract: Contract,
        recipient: User,
        notification_type: NotificationType,
        title: str,
        message: str,
        extra: Optional[dict] = None,
    ) -> None:
        data = {"contract_id": contract.id, "status": contract.status}
        data.update(extra or {})
        await run_best_effort(
            f"notification:{notification_type.value}",
            self.notifications.notify(recipient.id, notification_type, title, message, data),
        )
        if self.mailer is not None:
            await run_best_effort(
                f"email:{notification_type.value}",
                self.mailer.send_contract_notice(recipient.email, recipient.name, title, contract, message),
            )

    async def _broadcast(self, room: str, event: str, data: dict) -> None:
        if self.realtime is None:
            return
        await run_best_effort(f"realtime:{event}", self.realtime.emit(room, event, data))

    async def broadcast_contract(self, contract: Contract) -> None:
        # Sent to personal rooms only; every party socket is in one.
        payload = serialize_contract(contract)
        for party_id in (contract.farmer_id, contract.buyer_id):
            await self._broadcast(user_room(party_id), "contract_updated", payload)

    async def _broadcast_message(self, contract: Contract, message: Message) -> None:
        await self._broadcast(contract_room(contract.id), "new_message", serialize_message(message))
        if self.realtime is not None:
            unread = await run_best_effort(
                "unread_count", count_unread(self.db, message.recipient_id, contract.id)
            )
            if unread.ok:
                await self._broadcast(
                    user_room(message.recipient_id),
                    "unread_update",
                    {"contract_id": contract.id, "unread_count": unread.data},
                )

    async def announce_message(self, contract: Contract, sender: User, message: Message) -> None:
        """Notify the recipient of a new chat message and push it to the room."""
        await run_best_effort(
            "notification:message",
            self.notifications.notify(
                message.recipient_id,
                NotificationType.MESSAGE,
                f"New message from {sender.name}",
                message.content[:200],
                {"contract_id": contract.id, "message_id": message.id},
            ),
        )
        await self._broadcast_message(contract, message)

    def _counterparty(self, contract: Contract, user: User) -> User:
        return contract.buyer if user.id == contract.farmer_id else contract.farmer

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_for_user(
        self,
        user: User,
        status: Optional[ContractStatus] = None,
        role: Optional[str] = None,
    ) -> list[Contract]:
        """Contracts where the user is a party, most recently updated first."""
        if role == "farmer":
            query = select(Contract).where(Contract.farmer_id == user.id)
        elif role == "buyer":
            query = select(Contract).where(Contract.buyer_id == user.id)
        else:
            query = select(Contract).where(
                or_(Contract.farmer_id == user.id, Contract.buyer_id == user.id)
            )
        if status is not None:
            query = query.where(Contract.status == status.value)
        result = await self.db.execute(query.order_by(Contract.updated_at.desc()))
        return list(result.scalars().all())

    async def stats(self, user: User) -> dict:
        """Contract counts per status for the caller."""
        result = await self.db.execute(
            select(Contract.status, func.count(Contract.id))
            .where(or_(Contract.farmer_id == user.id, Contract.buyer_id == user.id))
            .group_by(Contract.status)
        )
        by_status = {s.value: 0 for s in ContractStatus}
        for status, count in result.all():
            by_status[status] = count
        total = sum(by_status.values())
        open_count = sum(
            count for status, count in by_status.items()
            if ContractStatus(status) not in TERMINAL_STATES
        )
        return {"total": total, "open": open_count, "by_status": by_status}

    async def timeline(self, contract_id: str, user: User) -> list[ContractEvent]:
        contract, _ = await self.get_for_party(contract_id, user)
        result = await self.db.execute(
            select(ContractEvent)
            .where(ContractEvent.contract_id == contract.id)
            .order_by(ContractEvent.created_at)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_request(self, user: User, data: ContractRequestCreate) -> Contract:
        """Buyer requests a contract for a crop listing."""
        if user.role != UserRole.CUSTOMER.value:
            raise AuthorizationError("Only buyers can request contracts")

        product = await self.db.get(Product, data.crop_id)
        if product is None or product.status == ProductStatus.DELETED.value:
            raise NotFoundError("Crop not found")

        farmer_id = data.farmer_id or product.farmer_id
        if farmer_id != product.farmer_id:
            raise ValidationError("Farmer does not own this crop")
        farmer = await self.db.get(User, farmer_id)
        if farmer is None:
            raise NotFoundError("Farmer not found")
        if farmer.id == user.id:
            raise ValidationError("Farmer and buyer must be different users")

        terms = data.payment_terms.model_dump() if data.payment_terms else DEFAULT_PAYMENT_TERMS
        contract = Contract(
            farmer_id=farmer.id,
            buyer_id=user.id,
            crop_id=product.id,
            quantity=data.quantity,
            unit=data.unit.value,
            price_per_unit=data.price_per_unit,
            total_amount=compute_total(data.quantity, data.price_per_unit),
            expected_harvest_date=data.expected_harvest_date or product.estimated_harvest_date,
            delivery_date=data.delivery_date,
            quality_requirements=data.quality_requirements,
            special_requirements=data.special_requirements,
            advance_payment_pct=terms["advance"],
            midterm_payment_pct=terms["midterm"],
            final_payment_pct=terms["final"],
            status=ContractStatus.REQUESTED.value,
        )
        self.db.add(contract)
        await self.db.flush()

        self.db.add(
            ContractEvent(
                contract_id=contract.id,
                event_type=ContractEventType.REQUESTED.value,
                actor=ContractActor.BUYER.value,
                actor_id=user.id,
                from_status=None,
                to_status=ContractStatus.REQUESTED.value,
                data={"crop_id": product.id},
            )
        )
        await self.db.commit()
        logger.info("Contract %s requested by %s for crop %s", contract.id, user.id, product.id)

        contract = await self.load(contract.id)
        await self._notify_party(
            contract,
            contract.farmer,
            NotificationType.CONTRACT_REQUEST,
            "New contract request",
            f"{user.name} requested {contract.quantity:g} {contract.unit} of {product.name}",
        )
        await self.broadcast_contract(contract)
        return contract

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    async def submit_counter_offer(
        self,
        contract_id: str,
        user: User,
        changes: list,
        message: Optional[str] = None,
        content: Optional[str] = None,
    ) -> tuple[Contract, CounterOffer, Message]:
        """Record a typed counter-offer and move the contract to ``negotiating``.

        ``changes`` are validated offer-change models. The offer is also
        posted to the contract chat as a ``counterOffer`` message.
        """
        contract, actor = await self.get_for_party(contract_id, user)
        state_machine.validate_counter_offer(as_status(contract.status))

        change_dicts = [change.model_dump(mode="json") for change in changes]
        quantity = contract.quantity
        price = contract.price_per_unit
        for change in change_dicts:
            if change["kind"] == OfferKind.QUANTITY.value:
                quantity = float(change["value"])
            elif change["kind"] == OfferKind.PRICE_PER_UNIT.value:
                price = float(change["value"])
        offer_type = change_dicts[0]["kind"] if len(change_dicts) == 1 else COMBINED_OFFER_TYPE

        for previous in contract.counter_offers:
            if previous.status == CounterOfferStatus.PENDING.value:
                previous.status = CounterOfferStatus.SUPERSEDED.value

        sequence = max((o.sequence for o in contract.counter_offers), default=0) + 1
        offer = CounterOffer(
            contract_id=contract.id,
            sequence=sequence,
            proposed_by=user.id,
            offer_type=offer_type,
            changes=change_dicts,
            quantity=quantity,
            price_per_unit=price,
            total_amount=compute_total(quantity, price),
            message=message,
            status=CounterOfferStatus.PENDING.value,
        )
        self.db.add(offer)
        self.db.add(
            ContractNegotiation(
                contract_id=contract.id,
                proposed_by=user.id,
                proposed_changes=change_dicts,
                message=message,
            )
        )
        await self.db.flush()

        self.transition(
            contract,
            ContractStatus.NEGOTIATING,
            actor,
            user.id,
            ContractEventType.COUNTER_OFFER,
            {"counter_offer_id": offer.id, "sequence": sequence, "changes": change_dicts},
            validate=False,
        )

        summary = _describe_changes(change_dicts)
        chat_message = add_message(
            self.db,
            contract,
            user,
            content or message or f"Counter-offer: {summary}",
            MessageType.COUNTER_OFFER,
            offer_details=serialize_counter_offer(offer),
            counter_offer_id=offer.id,
        )
        await self.db.commit()

        contract = await self.load(contract.id)
        recipient = self._counterparty(contract, user)
        await self._notify_party(
            contract,
            recipient,
            NotificationType.CONTRACT_COUNTER_OFFER,
            "New counter-offer",
            f"{user.name} proposed {summary}",
            {"counter_offer_id": offer.id},
        )
        await self._broadcast_message(contract, chat_message)
        await self.broadcast_contract(contract)
        return contract, offer, chat_message

    def _apply_offer(self, contract: Contract, offer: CounterOffer) -> None:
        for change in offer.changes:
            kind, value = change["kind"], change["value"]
            if kind == OfferKind.QUANTITY.value:
                contract.quantity = float(value)
            elif kind == OfferKind.PRICE_PER_UNIT.value:
                contract.price_per_unit = float(value)
            elif kind == OfferKind.DELIVERY_DATE.value:
                contract.delivery_date = _datetime_adapter.validate_python(value)
            elif kind == OfferKind.PAYMENT_TERMS.value:
                contract.advance_payment_pct = float(value["advance"])
                contract.midterm_payment_pct = float(value["midterm"])
                contract.final_payment_pct = float(value["final"])
            elif kind == OfferKind.QUALITY_REQUIREMENTS.value:
                contract.quality_requirements = value
            elif kind == OfferKind.SPECIAL_REQUIREMENTS.value:
                contract.special_requirements = value
        contract.total_amount = compute_total(contract.quantity, contract.price_per_unit)

    async def accept_latest_offer(
        self,
        contract_id: str,
        user: User,
        message: Optional[str] = None,
    ) -> tuple[Contract, CounterOffer, Message]:
        """Accept the counterparty's latest pending offer and apply its terms."""
        contract, actor = await self.get_for_party(contract_id, user)
        state_machine.validate_offer_acceptance(as_status(contract.status))

        pending = [o for o in contract.counter_offers if o.status == CounterOfferStatus.PENDING.value]
        if not pending:
            raise NotFoundError("No pending counter-offer to accept")
        offer = max(pending, key=lambda o: o.sequence)
        if offer.proposed_by == user.id:
            raise ValidationError("You cannot accept your own counter-offer")

        self._apply_offer(contract, offer)
        offer.status = CounterOfferStatus.ACCEPTED.value
        self.transition(
            contract,
            ContractStatus.ACCEPTED,
            actor,
            user.id,
            ContractEventType.OFFER_ACCEPTED,
            {"counter_offer_id": offer.id, "sequence": offer.sequence},
            validate=False,
        )
        system_message = add_message(
            self.db,
            contract,
            user,
            message or f"{user.name} accepted the offer. Contract terms have been updated.",
            MessageType.SYSTEM_MESSAGE,
            offer_details=serialize_counter_offer(offer),
            counter_offer_id=offer.id,
        )
        await self.db.commit()

        contract = await self.load(contract.id)
        recipient = self._counterparty(contract, user)
        await self._notify_party(
            contract,
            recipient,
            NotificationType.CONTRACT_STATUS_UPDATE,
            "Offer accepted",
            f"{user.name} accepted your offer. Total amount is now {contract.total_amount:.2f}",
            {"counter_offer_id": offer.id},
        )
        await self._broadcast_message(contract, system_message)
        await self._broadcast(
            contract_room(contract.id),
            "offer_accepted",
            {"contract_id": contract.id, "counter_offer": serialize_counter_offer(offer), "accepted_by": user.id},
        )
        await self.broadcast_contract(contract)
        return contract, offer, system_message

    async def accept(self, contract_id: str, user: User) -> Contract:
        """Farmer accepts the contract on its current terms."""
        contract, actor = await self.get_for_party(contract_id, user)
        if actor != ContractActor.FARMER:
            raise AuthorizationError("Only the farmer can accept a contract request")

        self.transition(contract, ContractStatus.ACCEPTED, actor, user.id, ContractEventType.ACCEPTED)
        for offer in contract.counter_offers:
            if offer.status == CounterOfferStatus.PENDING.value:
                offer.status = CounterOfferStatus.SUPERSEDED.value
        await self.db.commit()

        contract = await self.load(contract.id)
        await self._notify_party(
            contract,
            contract.buyer,
            NotificationType.CONTRACT_STATUS_UPDATE,
            "Contract accepted",
            f"{user.name} accepted your contract request",
        )
        await self.broadcast_contract(contract)
        return contract

    # ------------------------------------------------------------------
    # Status / progress / document
    # ------------------------------------------------------------------

    async def update_status(
        self,
        contract_id: str,
        user: User,
        target_status: ContractStatus,
        note: Optional[str] = None,
    ) -> Contract:
        """Party-driven status change (payment-driven ones are system only)."""
        contract, actor = await self.get_for_party(contract_id, user)
        self.transition(
            contract,
            target_status,
            actor,
            user.id,
            ContractEventType.STATUS_CHANGED,
            {"note": note} if note else None,
        )
        await self.db.commit()

        contract = await self.load(contract.id)
        await self._notify_party(
            contract,
            self._counterparty(contract, user),
            NotificationType.CONTRACT_STATUS_UPDATE,
            "Contract status updated",
            f"{user.name} changed the contract status to {target_status.value}",
        )
        await self.broadcast_contract(contract)
        return contract

    async def add_progress_update(
        self,
        contract_id: str,
        user: User,
        data: ProgressUpdateCreate,
    ) -> Contract:
        """Farmer appends a progress update to the contract log."""
        contract, actor = await self.get_for_party(contract_id, user)
        if actor != ContractActor.FARMER:
            raise AuthorizationError("Only the farmer can post progress updates")
        if contract.status == ContractStatus.CANCELLED.value:
            raise ValidationError("Cannot post progress on a cancelled contract")

        self.db.add(
            ProgressUpdate(
                contract_id=contract.id,
                update_type=data.update_type.value,
                description=data.description,
                image_urls=data.image_urls,
                created_by=user.id,
            )
        )
        self.db.add(
            ContractEvent(
                contract_id=contract.id,
                event_type=ContractEventType.PROGRESS_UPDATE.value,
                actor=actor.value,
                actor_id=user.id,
                from_status=contract.status,
                to_status=contract.status,
                data={"update_type": data.update_type.value},
            )
        )
        await self.db.commit()

        contract = await self.load(contract.id)
        await self._notify_party(
            contract,
            contract.buyer,
            NotificationType.CONTRACT_STATUS_UPDATE,
            "Crop progress update",
            f"{user.name} posted a {data.update_type.value} update",
        )
        await self.broadcast_contract(contract)
        return contract

    async def generate_document(self, contract_id: str, user: User) -> dict:
        """Produce the contract document. Only possible once accepted."""
        contract, _ = await self.get_for_party(contract_id, user)
        if contract.status != ContractStatus.ACCEPTED.value:
            raise ValidationError("Contract document can only be generated for accepted contracts")

        document = {
            "contract_id": contract.id,
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "farmer": {"id": contract.farmer.id, "name": contract.farmer.name, "email": contract.farmer.email},
            "buyer": {"id": contract.buyer.id, "name": contract.buyer.name, "email": contract.buyer.email},
            "crop": {"id": contract.crop.id, "name": contract.crop.name, "category": contract.crop.category},
            "quantity": contract.quantity,
            "unit": contract.unit,
            "price_per_unit": contract.price_per_unit,
            "total_amount": contract.total_amount,
            "expected_harvest_date": contract.expected_harvest_date.isoformat()
            if contract.expected_harvest_date else None,
            "delivery_date": contract.delivery_date.isoformat() if contract.delivery_date else None,
            "quality_requirements": contract.quality_requirements,
            "special_requirements": contract.special_requirements,
            "payment_schedule": [
                {
                    "stage": stage.value,
                    "percentage": contract.payment_percentage(stage.value),
                    "amount": round(contract.total_amount * contract.payment_percentage(stage.value) / 100, 2),
                }
                for stage in PaymentStage
            ],
        }
        stored = contract.contract_document
        if stored is not None and _document_terms(stored) == _document_terms(document):
            return stored
        # Only a change of terms is written; repeat reads leave the version alone.
        contract.contract_document = document
        await self.db.commit()
        return document
