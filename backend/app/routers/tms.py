"""API routes for loads, billing, settlements, and the records linked to them."""
from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from app.core.auth import TenantContext, get_tenant_context
from app.core.errors import (
    IOFailure,
    NotFound,
    PermissionDenied,
    PreconditionFailed,
    TMSError,
    ValidationFailed,
)
from app.core.logging import logger
from app.models.tms import (
    BrokerCreateRequest,
    BrokerUpdateRequest,
    EmployeeCreateRequest,
    EmployeeUpdateRequest,
    ExpenseCreateRequest,
    ExpenseUpdateRequest,
    FactoringCompanyCreateRequest,
    FactoringCompanyUpdateRequest,
    InvoiceCreateRequest,
    InvoiceUpdateRequest,
    LoadCreateRequest,
    LoadUpdateRequest,
    PaymentRequest,
    SettlementCreateRequest,
    SettlementUpdateRequest,
    TrailerCreateRequest,
    TrailerUpdateRequest,
    TruckCreateRequest,
    TruckUpdateRequest,
)
from app.services.session import SessionRegistry, TenantSession

router = APIRouter(prefix="/tms", tags=["tms"])

_STATUS_CODES = {
    NotFound: 404,
    PermissionDenied: 403,
    PreconditionFailed: 409,
    ValidationFailed: 422,
    IOFailure: 503,
}


def _http_error(exc: TMSError, operation: str) -> HTTPException:
    status_code = _STATUS_CODES.get(type(exc), 400)
    if status_code >= 500:
        logger.error("TMS operation failed", operation=operation, error=exc.message)
    else:
        logger.info("TMS operation rejected", operation=operation, code=exc.code, error=exc.message)
    if isinstance(exc, PreconditionFailed):
        return HTTPException(status_code=status_code, detail={"message": exc.message, "blockers": exc.blockers})
    return HTTPException(status_code=status_code, detail=exc.message)


def get_registry(request: Request) -> SessionRegistry:
    registry = getattr(request.app.state, "tms_registry", None)
    if registry is None:
        registry = SessionRegistry()
        request.app.state.tms_registry = registry
    return registry


async def get_session(
    context: TenantContext = Depends(get_tenant_context),
    registry: SessionRegistry = Depends(get_registry),
) -> TenantSession:
    try:
        return await registry.get(context.tenant_id)
    except TMSError as exc:
        raise _http_error(exc, "open_session")


# ----------------------------------------------------------------------
# loads
# ----------------------------------------------------------------------


@router.get("/loads")
async def list_loads(session: TenantSession = Depends(get_session)):
    return {"loads": session.list_loads()}


@router.get("/loads/{load_id}")
async def get_load(load_id: str, session: TenantSession = Depends(get_session)):
    try:
        return session.get_load(load_id)
    except TMSError as exc:
        raise _http_error(exc, "get_load")


@router.post("/loads")
async def create_load(
    request: LoadCreateRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.add_load(request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "create_load")


@router.patch("/loads/{load_id}")
async def update_load(
    load_id: str,
    request: LoadUpdateRequest,
    reason: Optional[str] = Query(default=None, max_length=500),
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.update_load(load_id, request, context.to_actor(), reason=reason)
    except TMSError as exc:
        raise _http_error(exc, "update_load")


@router.delete("/loads/{load_id}")
async def delete_load(
    load_id: str,
    force: bool = Query(default=False),
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        await session.delete_load(load_id, context.to_actor(), force=force)
    except TMSError as exc:
        raise _http_error(exc, "delete_load")
    return {"deleted": True, "id": load_id}


# ----------------------------------------------------------------------
# employees
# ----------------------------------------------------------------------


@router.get("/employees")
async def list_employees(session: TenantSession = Depends(get_session)):
    return {"employees": session.list_employees()}


@router.post("/employees")
async def create_employee(
    request: EmployeeCreateRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.add_employee(request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "create_employee")


@router.patch("/employees/{employee_id}")
async def update_employee(
    employee_id: str,
    request: EmployeeUpdateRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.update_employee(employee_id, request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "update_employee")


@router.delete("/employees/{employee_id}")
async def delete_employee(
    employee_id: str,
    force: bool = Query(default=False),
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        await session.delete_employee(employee_id, context.to_actor(), force=force)
    except TMSError as exc:
        raise _http_error(exc, "delete_employee")
    return {"deleted": True, "id": employee_id}


# ----------------------------------------------------------------------
# equipment
# ----------------------------------------------------------------------


@router.get("/trucks")
async def list_trucks(session: TenantSession = Depends(get_session)):
    return {"trucks": session.list_trucks()}


@router.post("/trucks")
async def create_truck(
    request: TruckCreateRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.add_truck(request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "create_truck")


@router.patch("/trucks/{truck_id}")
async def update_truck(
    truck_id: str,
    request: TruckUpdateRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.update_truck(truck_id, request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "update_truck")


@router.delete("/trucks/{truck_id}")
async def delete_truck(
    truck_id: str,
    force: bool = Query(default=False),
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        await session.delete_truck(truck_id, context.to_actor(), force=force)
    except TMSError as exc:
        raise _http_error(exc, "delete_truck")
    return {"deleted": True, "id": truck_id}


@router.get("/trailers")
async def list_trailers(session: TenantSession = Depends(get_session)):
    return {"trailers": session.list_trailers()}


@router.post("/trailers")
async def create_trailer(
    request: TrailerCreateRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.add_trailer(request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "create_trailer")


@router.patch("/trailers/{trailer_id}")
async def update_trailer(
    trailer_id: str,
    request: TrailerUpdateRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.update_trailer(trailer_id, request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "update_trailer")


@router.delete("/trailers/{trailer_id}")
async def delete_trailer(
    trailer_id: str,
    force: bool = Query(default=False),
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        await session.delete_trailer(trailer_id, context.to_actor(), force=force)
    except TMSError as exc:
        raise _http_error(exc, "delete_trailer")
    return {"deleted": True, "id": trailer_id}


# ----------------------------------------------------------------------
# brokers / factoring companies / expenses
# ----------------------------------------------------------------------


@router.get("/brokers")
async def list_brokers(session: TenantSession = Depends(get_session)):
    return {"brokers": session.list_brokers()}


@router.post("/brokers")
async def create_broker(
    request: BrokerCreateRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.add_broker(request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "create_broker")


@router.patch("/brokers/{broker_id}")
async def update_broker(
    broker_id: str,
    request: BrokerUpdateRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.update_broker(broker_id, request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "update_broker")


@router.delete("/brokers/{broker_id}")
async def delete_broker(
    broker_id: str,
    force: bool = Query(default=False),
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        await session.delete_broker(broker_id, context.to_actor(), force=force)
    except TMSError as exc:
        raise _http_error(exc, "delete_broker")
    return {"deleted": True, "id": broker_id}


@router.get("/factoring-companies")
async def list_factoring_companies(session: TenantSession = Depends(get_session)):
    return {"factoring_companies": session.list_factoring_companies()}


@router.post("/factoring-companies")
async def create_factoring_company(
    request: FactoringCompanyCreateRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.add_factoring_company(request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "create_factoring_company")


@router.patch("/factoring-companies/{company_id}")
async def update_factoring_company(
    company_id: str,
    request: FactoringCompanyUpdateRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.update_factoring_company(company_id, request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "update_factoring_company")


@router.delete("/factoring-companies/{company_id}")
async def delete_factoring_company(
    company_id: str,
    force: bool = Query(default=False),
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        await session.delete_factoring_company(company_id, context.to_actor(), force=force)
    except TMSError as exc:
        raise _http_error(exc, "delete_factoring_company")
    return {"deleted": True, "id": company_id}


@router.get("/expenses")
async def list_expenses(session: TenantSession = Depends(get_session)):
    return {"expenses": session.list_expenses()}


@router.post("/expenses")
async def create_expense(
    request: ExpenseCreateRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.add_expense(request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "create_expense")


@router.patch("/expenses/{expense_id}")
async def update_expense(
    expense_id: str,
    request: ExpenseUpdateRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.update_expense(expense_id, request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "update_expense")


@router.delete("/expenses/{expense_id}")
async def delete_expense(
    expense_id: str,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        await session.delete_expense(expense_id, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "delete_expense")
    return {"deleted": True, "id": expense_id}


# ----------------------------------------------------------------------
# invoices
# ----------------------------------------------------------------------


@router.get("/invoices")
async def list_invoices(session: TenantSession = Depends(get_session)):
    return {"invoices": session.list_invoices()}


@router.get("/invoices/{invoice_id}")
async def get_invoice(invoice_id: str, session: TenantSession = Depends(get_session)):
    try:
        return session.get_invoice(invoice_id)
    except TMSError as exc:
        raise _http_error(exc, "get_invoice")


@router.post("/invoices/from-loads")
async def create_invoice_from_loads(
    request: InvoiceCreateRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.create_invoice_for_loads(request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "create_invoice")


@router.patch("/invoices/{invoice_id}")
async def update_invoice(
    invoice_id: str,
    request: InvoiceUpdateRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.update_invoice(invoice_id, request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "update_invoice")


@router.post("/invoices/{invoice_id}/payments")
async def record_invoice_payment(
    invoice_id: str,
    request: PaymentRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.record_invoice_payment(invoice_id, request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "record_payment")


@router.delete("/invoices/{invoice_id}")
async def delete_invoice(
    invoice_id: str,
    force: bool = Query(default=False),
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        await session.delete_invoice(invoice_id, context.to_actor(), force=force)
    except TMSError as exc:
        raise _http_error(exc, "delete_invoice")
    return {"deleted": True, "id": invoice_id}


# ----------------------------------------------------------------------
# settlements
# ----------------------------------------------------------------------


@router.get("/settlements")
async def list_settlements(session: TenantSession = Depends(get_session)):
    return {"settlements": session.list_settlements()}


@router.post("/settlements")
async def create_settlement(
    request: SettlementCreateRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.create_settlement(request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "create_settlement")


@router.patch("/settlements/{settlement_id}")
async def update_settlement(
    settlement_id: str,
    request: SettlementUpdateRequest,
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        return await session.update_settlement(settlement_id, request, context.to_actor())
    except TMSError as exc:
        raise _http_error(exc, "update_settlement")


@router.delete("/settlements/{settlement_id}")
async def delete_settlement(
    settlement_id: str,
    force: bool = Query(default=False),
    context: TenantContext = Depends(get_tenant_context),
    session: TenantSession = Depends(get_session),
):
    try:
        await session.delete_settlement(settlement_id, context.to_actor(), force=force)
    except TMSError as exc:
        raise _http_error(exc, "delete_settlement")
    return {"deleted": True, "id": settlement_id}


# ----------------------------------------------------------------------
# audit / tasks
# ----------------------------------------------------------------------


@router.get("/audit")
async def audit_trail(
    entity_type: Optional[str] = Query(default=None),
    entity_id: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    session: TenantSession = Depends(get_session),
):
    try:
        entries = await session.audit_trail(entity_type, entity_id, limit)
    except TMSError as exc:
        raise _http_error(exc, "audit_trail")
    return {"entries": entries}


@router.get("/tasks")
async def list_tasks(
    entity_type: Optional[str] = Query(default=None),
    entity_id: Optional[str] = Query(default=None),
    session: TenantSession = Depends(get_session),
):
    return {"tasks": session.tasks(entity_type, entity_id)}


@router.get("/reports/period")
async def period_report(
    start: date = Query(...),
    end: date = Query(...),
    session: TenantSession = Depends(get_session),
):
    try:
        return session.period_report(start, end)
    except TMSError as exc:
        raise _http_error(exc, "period_report")
