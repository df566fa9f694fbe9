"""Contract lifecycle API endpoints.

Every mutation goes through the ContractStateMachine and produces a
ContractEvent audit record. Only the contract's farmer and buyer may read
or change a contract.
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from agrolink.app.dependencies import get_gateway, get_mailer, get_realtime
from agrolink.app.routes.auth import get_current_user_dep
from agrolink.domain.enums import ContractStatus
from agrolink.domain.models import User
from agrolink.domain.schemas import (
    AcceptOfferRequest,
    ContractRequestCreate,
    CounterOfferRequest,
    ProgressUpdateCreate,
    StatusUpdateRequest,
)
from agrolink.infra.database import get_db
from agrolink.infra.instamojo import InstamojoClient
from agrolink.services.contract_service import ContractService
from agrolink.services.email_service import Mailer
from agrolink.services.payment_service import PaymentService
from agrolink.services.realtime import ConnectionManager
from agrolink.services.serializers import (
    serialize_contract,
    serialize_contract_event,
    serialize_counter_offer,
    serialize_payment,
)

router = APIRouter(prefix="/api/v1/contracts", tags=["contracts"])


def get_contract_service(
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
    realtime: ConnectionManager = Depends(get_realtime),
) -> ContractService:
    return ContractService(db, mailer, realtime)


@router.get("")
async def list_contracts(
    user: User = Depends(get_current_user_dep),
    service: ContractService = Depends(get_contract_service),
    status_filter: Optional[ContractStatus] = Query(None, alias="status"),
    role: Optional[str] = Query(None, pattern="^(farmer|buyer)$"),
):
    """List contracts where the caller is the farmer or the buyer."""
    contracts = await service.list_for_user(user, status_filter, role)
    return {
        "success": True,
        "count": len(contracts),
        "contracts": [serialize_contract(c) for c in contracts],
    }


@router.get("/stats")
async def contract_stats(
    user: User = Depends(get_current_user_dep),
    service: ContractService = Depends(get_contract_service),
):
    return {"success": True, "stats": await service.stats(user)}


@router.post("/request", status_code=status.HTTP_201_CREATED)
async def request_contract(
    data: ContractRequestCreate,
    user: User = Depends(get_current_user_dep),
    service: ContractService = Depends(get_contract_service),
):
    contract = await service.create_request(user, data)
    return {"success": True, "contract": serialize_contract(contract)}


@router.get("/{contract_id}")
async def get_contract(
    contract_id: str,
    user: User = Depends(get_current_user_dep),
    service: ContractService = Depends(get_contract_service),
):
    contract, _ = await service.get_for_party(contract_id, user)
    return {"success": True, "contract": serialize_contract(contract)}


async def _counter_offer(contract_id: str, data: CounterOfferRequest, user: User, service: ContractService):
    contract, offer, _ = await service.submit_counter_offer(contract_id, user, data.changes, data.message)
    return {
        "success": True,
        "contract": serialize_contract(contract),
        "counter_offer": serialize_counter_offer(offer),
    }


@router.post("/{contract_id}/negotiate")
async def negotiate(
    contract_id: str,
    data: CounterOfferRequest,
    user: User = Depends(get_current_user_dep),
    service: ContractService = Depends(get_contract_service),
):
    return await _counter_offer(contract_id, data, user, service)


@router.post("/{contract_id}/counter-offer")
async def counter_offer(
    contract_id: str,
    data: CounterOfferRequest,
    user: User = Depends(get_current_user_dep),
    service: ContractService = Depends(get_contract_service),
):
    return await _counter_offer(contract_id, data, user, service)


@router.post("/{contract_id}/accept")
async def accept_contract(
    contract_id: str,
    user: User = Depends(get_current_user_dep),
    service: ContractService = Depends(get_contract_service),
):
    """Farmer accepts the contract on its current terms."""
    contract = await service.accept(contract_id, user)
    return {"success": True, "contract": serialize_contract(contract)}


@router.put("/{contract_id}/accept-offer")
async def accept_offer(
    contract_id: str,
    data: Optional[AcceptOfferRequest] = Body(None),
    user: User = Depends(get_current_user_dep),
    service: ContractService = Depends(get_contract_service),
):
    """Accept the counterparty's latest counter-offer."""
    contract, offer, _ = await service.accept_latest_offer(
        contract_id, user, data.message if data else None
    )
    return {
        "success": True,
        "contract": serialize_contract(contract),
        "counter_offer": serialize_counter_offer(offer),
    }


@router.put("/{contract_id}/status")
async def update_status(
    contract_id: str,
    data: StatusUpdateRequest,
    user: User = Depends(get_current_user_dep),
    service: ContractService = Depends(get_contract_service),
):
    contract = await service.update_status(contract_id, user, data.status, data.note)
    return {"success": True, "contract": serialize_contract(contract)}


@router.post("/{contract_id}/progress", status_code=status.HTTP_201_CREATED)
async def add_progress(
    contract_id: str,
    data: ProgressUpdateCreate,
    user: User = Depends(get_current_user_dep),
    service: ContractService = Depends(get_contract_service),
):
    contract = await service.add_progress_update(contract_id, user, data)
    return {"success": True, "contract": serialize_contract(contract)}


@router.get("/{contract_id}/document")
async def contract_document(
    contract_id: str,
    user: User = Depends(get_current_user_dep),
    service: ContractService = Depends(get_contract_service),
):
    return {"success": True, "document": await service.generate_document(contract_id, user)}


@router.get("/{contract_id}/timeline")
async def contract_timeline(
    contract_id: str,
    user: User = Depends(get_current_user_dep),
    service: ContractService = Depends(get_contract_service),
):
    events = await service.timeline(contract_id, user)
    return {"success": True, "events": [serialize_contract_event(e) for e in events]}


@router.get("/{contract_id}/payments")
async def contract_payments(
    contract_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    gateway: InstamojoClient = Depends(get_gateway),
    mailer: Mailer = Depends(get_mailer),
    realtime: ConnectionManager = Depends(get_realtime),
):
    payments = await PaymentService(db, gateway, mailer, realtime).list_contract_payments(contract_id, user)
    return {"success": True, "payments": [serialize_payment(p) for p in payments]}
