"""Policy API routers: one router per policy kind, built from a single factory."""

import asyncio
from uuid import UUID, uuid4

from fastapi import APIRouter, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from insurance_admin.auth import require_super_admin
from insurance_admin.deps import BlobStoreDep, CurrentAdmin, DbSession
from insurance_admin.logger import get_logger
from insurance_admin.models import Customer, InsurancePolicy, PolicyKind
from insurance_admin.routers.document_handling import (
    apply_documents,
    commit_and_cleanup,
    parse_fields,
    read_mutation,
    render_documents,
    select_slots,
)
from insurance_admin.schemas import (
    DeletionSummary,
    PolicyFields,
    PolicyListResponse,
    PolicyResponse,
    PolicySummary,
)
from insurance_admin.services import (
    BlobStore,
    DeletionRequest,
    MutationRequest,
    collect_all_keys,
    policy_slots,
)
from insurance_admin.utils import raise_bad_request, raise_not_found

logger = get_logger(__name__)

JSON_FIELDS = ("details",)
TEXT_FIELDS = ("customer_id", "policy_number", "notes")


def build_policy_router(kind: PolicyKind) -> APIRouter:
    """Create the CRUD router for one policy kind."""
    router = APIRouter(prefix=f"/policies/{kind.value}", tags=[f"{kind.value} policies"])
    slots = policy_slots(kind.value)
    resource = f"{kind.value.capitalize()} policy"

    async def _get_policy(db: AsyncSession, policy_id: UUID) -> InsurancePolicy:
        policy = await db.get(InsurancePolicy, policy_id)
        if policy is None or policy.kind != kind:
            raise_not_found(resource)
        return policy

    async def _ensure_customer(db: AsyncSession, customer_id: UUID) -> None:
        customer = await db.get(Customer, customer_id)
        if customer is None:
            raise_not_found("Customer")

    async def _to_response(policy: InsurancePolicy, store: BlobStore) -> PolicyResponse:
        views = await render_documents(policy, slots, store)
        summary = PolicySummary.model_validate(policy)
        return PolicyResponse(**summary.model_dump(), **views)

    @router.post("", response_model=PolicyResponse, status_code=status.HTTP_201_CREATED)
    async def create_policy(
        request: Request,
        db: DbSession,
        admin: CurrentAdmin,
        store: BlobStoreDep,
    ) -> PolicyResponse:
        form = await request.form()
        fields = parse_fields(form, PolicyFields, json_fields=JSON_FIELDS, text_fields=TEXT_FIELDS)
        if fields.customer_id is None or not fields.policy_number:
            raise_bad_request("customer_id and policy_number are required")
        await _ensure_customer(db, fields.customer_id)
        mutation = await read_mutation(form, slots)

        policy = InsurancePolicy(
            id=uuid4(),
            kind=kind,
            customer_id=fields.customer_id,
            policy_number=fields.policy_number,
            details=fields.details or {},
            notes=fields.notes,
            created_by=admin.admin_id,
            upload_documents=[],
            policy_file=None,
        )
        change = await apply_documents(policy, slots, mutation, store)
        change.apply_to(policy)
        db.add(policy)
        policy = await commit_and_cleanup(
            db, policy, change.keys_to_delete, store, orphaned_keys=change.uploaded_keys
        )

        logger.info(
            "Policy created",
            kind=kind.value,
            policy_id=str(policy.id),
            customer_id=str(policy.customer_id),
            admin_id=str(admin.admin_id),
            uploaded=len(change.uploaded_keys),
        )
        return await _to_response(policy, store)

    @router.get("", response_model=PolicyListResponse)
    async def list_policies(
        db: DbSession,
        admin: CurrentAdmin,
        store: BlobStoreDep,
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
        include_inactive: bool = False,
        customer_id: UUID | None = None,
    ) -> PolicyListResponse:
        query = select(InsurancePolicy).where(InsurancePolicy.kind == kind)
        if not include_inactive:
            query = query.where(InsurancePolicy.is_active.is_(True))
        if customer_id is not None:
            query = query.where(InsurancePolicy.customer_id == customer_id)

        total = await db.scalar(select(func.count()).select_from(query.subquery()))
        result = await db.execute(
            query.order_by(InsurancePolicy.created_at.desc()).limit(limit).offset(offset)
        )
        policies = result.scalars().all()
        items = await asyncio.gather(*(_to_response(policy, store) for policy in policies))
        return PolicyListResponse(items=list(items), total=total or 0)

    @router.get("/{policy_id}", response_model=PolicyResponse)
    async def get_policy(
        policy_id: UUID,
        db: DbSession,
        admin: CurrentAdmin,
        store: BlobStoreDep,
    ) -> PolicyResponse:
        policy = await _get_policy(db, policy_id)
        return await _to_response(policy, store)

    @router.put("/{policy_id}", response_model=PolicyResponse)
    async def update_policy(
        policy_id: UUID,
        request: Request,
        db: DbSession,
        admin: CurrentAdmin,
        store: BlobStoreDep,
    ) -> PolicyResponse:
        policy = await _get_policy(db, policy_id)
        form = await request.form()
        fields = parse_fields(form, PolicyFields, json_fields=JSON_FIELDS, text_fields=TEXT_FIELDS)
        if fields.customer_id is not None and fields.customer_id != policy.customer_id:
            await _ensure_customer(db, fields.customer_id)
        mutation = await read_mutation(form, slots)

        change = await apply_documents(policy, slots, mutation, store)
        for name, value in fields.model_dump(exclude_none=True).items():
            setattr(policy, name, value)
        change.apply_to(policy)
        policy.last_updated_by = admin.admin_id

        policy = await commit_and_cleanup(
            db, policy, change.keys_to_delete, store, orphaned_keys=change.uploaded_keys
        )
        logger.info(
            "Policy updated",
            kind=kind.value,
            policy_id=str(policy.id),
            admin_id=str(admin.admin_id),
            uploaded=len(change.uploaded_keys),
            deleted=len(change.keys_to_delete),
        )
        return await _to_response(policy, store)

    @router.delete("/{policy_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def deactivate_policy(
        policy_id: UUID,
        db: DbSession,
        admin: CurrentAdmin,
    ) -> None:
        policy = await _get_policy(db, policy_id)
        policy.is_active = False
        policy.last_updated_by = admin.admin_id
        await db.commit()
        logger.info(
            "Policy deactivated",
            kind=kind.value,
            policy_id=str(policy_id),
            admin_id=str(admin.admin_id),
        )

    @router.patch("/{policy_id}/toggle-status", response_model=PolicyResponse)
    async def toggle_policy_status(
        policy_id: UUID,
        db: DbSession,
        admin: CurrentAdmin,
        store: BlobStoreDep,
    ) -> PolicyResponse:
        policy = await _get_policy(db, policy_id)
        policy.is_active = not policy.is_active
        policy.last_updated_by = admin.admin_id
        await db.commit()
        await db.refresh(policy)
        logger.info(
            "Policy status changed",
            kind=kind.value,
            policy_id=str(policy_id),
            is_active=policy.is_active,
            admin_id=str(admin.admin_id),
        )
        return await _to_response(policy, store)

    @router.delete("/{policy_id}/permanent", response_model=DeletionSummary)
    async def delete_policy_permanently(
        policy_id: UUID,
        db: DbSession,
        admin: CurrentAdmin,
        store: BlobStoreDep,
    ) -> DeletionSummary:
        require_super_admin(admin)
        policy = await _get_policy(db, policy_id)
        keys = collect_all_keys(policy, slots)
        await db.delete(policy)

        async def _persist() -> InsurancePolicy:
            await db.commit()
            return policy

        await commit_and_cleanup(db, policy, keys, store, persist=_persist)
        logger.info(
            "Policy permanently deleted",
            kind=kind.value,
            policy_id=str(policy_id),
            admin_id=str(admin.admin_id),
            documents_removed=len(keys),
        )
        return DeletionSummary(id=str(policy_id), documents_removed=len(keys))

    @router.delete("/{policy_id}/documents/{document_id}", response_model=PolicyResponse)
    async def delete_policy_document(
        policy_id: UUID,
        document_id: str,
        db: DbSession,
        admin: CurrentAdmin,
        store: BlobStoreDep,
        slot: str | None = None,
    ) -> PolicyResponse:
        policy = await _get_policy(db, policy_id)
        selected = select_slots(slots, slot)
        mutation = MutationRequest(deletions=(DeletionRequest(id=document_id),))

        change = await apply_documents(policy, selected, mutation, store)
        if change.deleted_count() == 0:
            raise_not_found("Document")
        change.apply_to(policy)
        policy.last_updated_by = admin.admin_id

        policy = await commit_and_cleanup(db, policy, change.keys_to_delete, store)
        return await _to_response(policy, store)

    return router


life_router = build_policy_router(PolicyKind.LIFE)
health_router = build_policy_router(PolicyKind.HEALTH)
vehicle_router = build_policy_router(PolicyKind.VEHICLE)

routers = (life_router, health_router, vehicle_router)
