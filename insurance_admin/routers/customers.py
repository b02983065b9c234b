"""Customer API router."""

import asyncio
from uuid import UUID, uuid4

from fastapi import APIRouter, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from insurance_admin.auth import require_super_admin
from insurance_admin.deps import BlobStoreDep, CurrentAdmin, DbSession
from insurance_admin.logger import get_logger
from insurance_admin.models import Customer, CustomerType, InsurancePolicy, generate_customer_code
from insurance_admin.routers.document_handling import (
    apply_documents,
    commit_and_cleanup,
    parse_fields,
    read_mutation,
    render_documents,
    select_slots,
)
from insurance_admin.schemas import (
    CustomerFields,
    CustomerListResponse,
    CustomerResponse,
    CustomerSummary,
    DeletionSummary,
)
from insurance_admin.services import (
    CUSTOMER_SLOTS,
    BlobStore,
    DeletionRequest,
    MutationRequest,
    collect_all_keys,
    policy_slots,
)
from insurance_admin.utils import raise_bad_request, raise_internal_error, raise_not_found

router = APIRouter(prefix="/customers", tags=["customers"])
logger = get_logger(__name__)

JSON_FIELDS = ("personal_details", "corporate_details", "family_details")
TEXT_FIELDS = ("customer_type",)
CODE_ATTEMPTS = 20


async def _get_customer(db: AsyncSession, customer_id: UUID) -> Customer:
    customer = await db.get(Customer, customer_id)
    if customer is None:
        raise_not_found("Customer")
    return customer


async def _allocate_customer_code(db: AsyncSession) -> str:
    """Draw customer codes until one is not taken."""
    for _ in range(CODE_ATTEMPTS):
        code = generate_customer_code()
        taken = await db.scalar(select(Customer.id).where(Customer.customer_code == code))
        if taken is None:
            return code
    logger.error("Customer code space exhausted", attempts=CODE_ATTEMPTS)
    raise_internal_error("Could not allocate a customer code")


async def _to_response(customer: Customer, store: BlobStore) -> CustomerResponse:
    views = await render_documents(customer, CUSTOMER_SLOTS, store)
    summary = CustomerSummary.model_validate(customer)
    return CustomerResponse(**summary.model_dump(), **views)


@router.post("", response_model=CustomerResponse, status_code=status.HTTP_201_CREATED)
async def create_customer(
    request: Request,
    db: DbSession,
    admin: CurrentAdmin,
    store: BlobStoreDep,
) -> CustomerResponse:
    """Create a customer from a multipart form with optional documents."""
    form = await request.form()
    fields = parse_fields(form, CustomerFields, json_fields=JSON_FIELDS, text_fields=TEXT_FIELDS)
    mutation = await read_mutation(form, CUSTOMER_SLOTS)
    customer_code = await _allocate_customer_code(db)

    customer = Customer(
        id=uuid4(),
        customer_code=customer_code,
        created_by=admin.admin_id,
        customer_type=fields.customer_type or CustomerType.INDIVIDUAL,
        personal_details=fields.personal_details or {},
        corporate_details=fields.corporate_details or [],
        family_details=fields.family_details or [],
        documents=[],
        additional_documents=[],
        profile_photo=None,
    )
    change = await apply_documents(customer, CUSTOMER_SLOTS, mutation, store)
    change.apply_to(customer)
    db.add(customer)
    customer = await commit_and_cleanup(
        db, customer, change.keys_to_delete, store, orphaned_keys=change.uploaded_keys
    )

    logger.info(
        "Customer created",
        customer_id=str(customer.id),
        customer_code=customer.customer_code,
        admin_id=str(admin.admin_id),
        uploaded=len(change.uploaded_keys),
    )
    return await _to_response(customer, store)


@router.get("", response_model=CustomerListResponse)
async def list_customers(
    db: DbSession,
    admin: CurrentAdmin,
    store: BlobStoreDep,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    include_inactive: bool = False,
) -> CustomerListResponse:
    query = select(Customer)
    if not include_inactive:
        query = query.where(Customer.is_active.is_(True))

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(query.order_by(Customer.created_at.desc()).limit(limit).offset(offset))
    customers = result.scalars().all()
    items = await asyncio.gather(*(_to_response(customer, store) for customer in customers))
    return CustomerListResponse(items=list(items), total=total or 0)


@router.get("/{customer_id}", response_model=CustomerResponse)
async def get_customer(
    customer_id: UUID,
    db: DbSession,
    admin: CurrentAdmin,
    store: BlobStoreDep,
) -> CustomerResponse:
    customer = await _get_customer(db, customer_id)
    return await _to_response(customer, store)


@router.put("/{customer_id}", response_model=CustomerResponse)
async def update_customer(
    customer_id: UUID,
    request: Request,
    db: DbSession,
    admin: CurrentAdmin,
    store: BlobStoreDep,
) -> CustomerResponse:
    """Update customer details and reconcile its documents.

    Blobs dropped by the update are deleted only after the commit succeeds.
    """
    customer = await _get_customer(db, customer_id)
    form = await request.form()
    fields = parse_fields(form, CustomerFields, json_fields=JSON_FIELDS, text_fields=TEXT_FIELDS)
    mutation = await read_mutation(form, CUSTOMER_SLOTS)

    change = await apply_documents(customer, CUSTOMER_SLOTS, mutation, store)
    for name, value in fields.model_dump(exclude_none=True).items():
        setattr(customer, name, value)
    change.apply_to(customer)
    customer.last_updated_by = admin.admin_id

    customer = await commit_and_cleanup(
        db, customer, change.keys_to_delete, store, orphaned_keys=change.uploaded_keys
    )
    logger.info(
        "Customer updated",
        customer_id=str(customer.id),
        admin_id=str(admin.admin_id),
        uploaded=len(change.uploaded_keys),
        deleted=len(change.keys_to_delete),
    )
    return await _to_response(customer, store)


@router.delete("/{customer_id}", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate_customer(
    customer_id: UUID,
    db: DbSession,
    admin: CurrentAdmin,
) -> None:
    """Soft delete: the customer and its documents stay in place."""
    customer = await _get_customer(db, customer_id)
    customer.is_active = False
    customer.last_updated_by = admin.admin_id
    await db.commit()
    logger.info("Customer deactivated", customer_id=str(customer_id), admin_id=str(admin.admin_id))


@router.patch("/{customer_id}/toggle-status", response_model=CustomerResponse)
async def toggle_customer_status(
    customer_id: UUID,
    db: DbSession,
    admin: CurrentAdmin,
    store: BlobStoreDep,
) -> CustomerResponse:
    """Flip ``is_active``; reactivates a soft-deleted customer."""
    customer = await _get_customer(db, customer_id)
    customer.is_active = not customer.is_active
    customer.last_updated_by = admin.admin_id
    await db.commit()
    await db.refresh(customer)
    logger.info(
        "Customer status changed",
        customer_id=str(customer_id),
        is_active=customer.is_active,
        admin_id=str(admin.admin_id),
    )
    return await _to_response(customer, store)


@router.delete("/{customer_id}/permanent", response_model=DeletionSummary)
async def delete_customer_permanently(
    customer_id: UUID,
    db: DbSession,
    admin: CurrentAdmin,
    store: BlobStoreDep,
) -> DeletionSummary:
    """Remove a deactivated customer, its policies and every stored document."""
    require_super_admin(admin)
    customer = await _get_customer(db, customer_id)
    if customer.is_active:
        raise_bad_request("Customer must be deactivated before permanent deletion")

    keys = collect_all_keys(customer, CUSTOMER_SLOTS)
    result = await db.execute(select(InsurancePolicy).where(InsurancePolicy.customer_id == customer.id))
    policies = result.scalars().all()
    for policy in policies:
        keys.extend(collect_all_keys(policy, policy_slots(policy.kind.value)))
        await db.delete(policy)
    await db.delete(customer)
    keys = list(dict.fromkeys(keys))

    async def _persist() -> Customer:
        await db.commit()
        return customer

    await commit_and_cleanup(db, customer, keys, store, persist=_persist)
    logger.info(
        "Customer permanently deleted",
        customer_id=str(customer_id),
        admin_id=str(admin.admin_id),
        policies_removed=len(policies),
        documents_removed=len(keys),
    )
    return DeletionSummary(id=str(customer_id), documents_removed=len(keys))


@router.delete("/{customer_id}/documents/{document_id}", response_model=CustomerResponse)
async def delete_customer_document(
    customer_id: UUID,
    document_id: str,
    db: DbSession,
    admin: CurrentAdmin,
    store: BlobStoreDep,
    slot: str | None = None,
) -> CustomerResponse:
    """Remove one document by id, optionally restricted to a single slot."""
    customer = await _get_customer(db, customer_id)
    slots = select_slots(CUSTOMER_SLOTS, slot)
    mutation = MutationRequest(deletions=(DeletionRequest(id=document_id),))

    change = await apply_documents(customer, slots, mutation, store)
    if change.deleted_count() == 0:
        raise_not_found("Document")
    change.apply_to(customer)
    customer.last_updated_by = admin.admin_id

    customer = await commit_and_cleanup(db, customer, change.keys_to_delete, store)
    logger.info(
        "Customer document deleted",
        customer_id=str(customer_id),
        document_id=document_id,
        admin_id=str(admin.admin_id),
    )
    return await _to_response(customer, store)
