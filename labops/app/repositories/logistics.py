"""
SQLAlchemy logistics repository.

Tenant-scoped access to cases, routes, stops and pickup requests.

- Collection reads are scoped by lab in SQL and re-filtered in Python.
- Loads by id go through ``authorize``; a foreign-lab id is ACCESS_DENIED.
- Case and Route writes are conditional on the version that was read
  (``UPDATE ... WHERE version = :expected``) and bump it by exactly one.
- Stop writes commit through the parent route's version.
- Pickup status writes are compare-and-set on the status that was read.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from labops.app.core.clock import utcnow
from labops.app.core.exceptions import (
    GovernanceException,
    Result,
    concurrency_error,
    not_found,
    status_conflict,
)
from labops.app.core.guards import authorize, filter_to_tenant, scope_query
from labops.app.core.tenant_context import TenantContext
from labops.app.models.lab_case import LabCase
from labops.app.models.logistics_enums import PickupRequestStatus, StopType
from labops.app.models.pickup_request import PickupRequestRecord
from labops.app.models.route import Route
from labops.app.models.route_stop import RouteStopRecord
from labops.app.schemas.logistics import PickupRequestDraft

logger = logging.getLogger(__name__)


class LogisticsRepository:
    """Per-session repository; one instance per unit of work."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # Creation

    async def create_case(self, context: TenantContext, **fields: Any) -> LabCase:
        case = LabCase(lab_id=context.lab_id, version=0, **fields)
        self.db.add(case)
        await self.db.flush()
        return case

    async def create_route(
        self,
        context: TenantContext,
        route_date: date,
        driver_id: Optional[str] = None,
        vehicle_id: Optional[str] = None,
        **fields: Any,
    ) -> Route:
        route = Route(
            lab_id=context.lab_id,
            date=route_date,
            driver_id=driver_id,
            vehicle_id=vehicle_id,
            version=0,
            **fields,
        )
        self.db.add(route)
        await self.db.flush()
        return route

    async def add_stop(
        self,
        context: TenantContext,
        route: Route,
        clinic_id: str,
        type: StopType,
        sequence: int,
        **fields: Any,
    ) -> RouteStopRecord:
        authorize(context, route.lab_id, entity_type="route", entity_id=route.id)
        stop = RouteStopRecord(
            route_id=route.id,
            lab_id=context.lab_id,
            clinic_id=clinic_id,
            type=type,
            sequence=sequence,
            **fields,
        )
        self.db.add(stop)
        await self.db.flush()
        return stop

    async def create_pickup_request(self, context: TenantContext, draft: PickupRequestDraft) -> PickupRequestRecord:
        """Persist a validated draft in Pending under the context's lab."""
        authorize(context, draft.lab_id or context.lab_id, entity_type="pickup")
        pickup = PickupRequestRecord(
            lab_id=context.lab_id,
            clinic_id=draft.clinic_id,
            window_start=draft.window_start,
            window_end=draft.window_end,
            status=PickupRequestStatus.PENDING,
            package_count=draft.package_count,
            package_specs=draft.package_specs.model_dump() if draft.package_specs else None,
            associated_case_ids=list(draft.associated_case_ids),
            is_rush=draft.is_rush,
            notes=draft.notes,
            patient_id=draft.patient_id,
            source=draft.source,
            external_reference=draft.external_reference,
            requested_by=draft.requested_by,
        )
        self.db.add(pickup)
        await self.db.flush()
        return pickup

    # Loads

    async def _load(self, context: TenantContext, model: Type, entity_type: str, entity_id: str):
        record = await self.db.get(model, entity_id, populate_existing=True)
        if record is None:
            raise GovernanceException(not_found(entity_type, entity_id))
        authorize(context, record.lab_id, entity_type=entity_type, entity_id=entity_id)
        return record

    async def get_case(self, context: TenantContext, case_id: str) -> LabCase:
        return await self._load(context, LabCase, "case", case_id)

    async def get_route(self, context: TenantContext, route_id: str) -> Route:
        return await self._load(context, Route, "route", route_id)

    async def get_stop(self, context: TenantContext, stop_id: str) -> RouteStopRecord:
        return await self._load(context, RouteStopRecord, "stop", stop_id)

    async def get_pickup(self, context: TenantContext, pickup_id: str) -> PickupRequestRecord:
        return await self._load(context, PickupRequestRecord, "pickup", pickup_id)

    async def list_route_stops(self, context: TenantContext, route_id: str) -> List[RouteStopRecord]:
        query = scope_query(select(RouteStopRecord), RouteStopRecord, context)
        query = query.where(RouteStopRecord.route_id == route_id).order_by(RouteStopRecord.sequence)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return filter_to_tenant(result.scalars().all(), context)

    async def list_routes(self, context: TenantContext, status=None) -> List[Route]:
        query = scope_query(select(Route), Route, context)
        if status is not None:
            query = query.where(Route.status == status)
        result = await self.db.execute(query.order_by(Route.date))
        return filter_to_tenant(result.scalars().all(), context)

    async def list_pickup_requests(self, context: TenantContext, status=None) -> List[PickupRequestRecord]:
        query = scope_query(select(PickupRequestRecord), PickupRequestRecord, context)
        if status is not None:
            query = query.where(PickupRequestRecord.status == status)
        result = await self.db.execute(query.order_by(PickupRequestRecord.window_start))
        return filter_to_tenant(result.scalars().all(), context)

    async def list_cases(self, context: TenantContext, case_ids: Optional[List[str]] = None) -> List[LabCase]:
        query = scope_query(select(LabCase), LabCase, context)
        if case_ids is not None:
            query = query.where(LabCase.id.in_(case_ids))
        result = await self.db.execute(query)
        return filter_to_tenant(result.scalars().all(), context)

    # Versioned writes

    async def _versioned_update(
        self,
        context: TenantContext,
        model: Type,
        entity_type: str,
        entity_id: str,
        expected_version: int,
        changes: Dict[str, Any],
    ) -> Result[int]:
        statement = (
            update(model)
            .where(
                model.id == entity_id,
                model.lab_id == context.lab_id,
                model.version == expected_version,
            )
            .values(**changes, version=model.version + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(statement)
        if result.rowcount == 1:
            return Result.accepted(expected_version + 1)
        
        # Zero rows: either the row moved on or it is not visible to this lab
        current = await self.db.get(model, entity_id, populate_existing=True)
        if current is None or current.lab_id != context.lab_id:
            return Result.rejected(not_found(entity_type, entity_id))
        logger.warning(
            "Versioned Update Conflict",
            extra={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "expected_version": expected_version,
                "actual_version": current.version,
            },
        )
        return Result.rejected(concurrency_error(entity_type, entity_id, expected_version, current.version))

    async def update_case(
        self,
        context: TenantContext,
        case_id: str,
        expected_version: int,
        changes: Dict[str, Any],
    ) -> Result[int]:
        """
        Apply ``changes`` to a case if it is still at ``expected_version``.
        
        Returns:
            Result with the new version, or CONCURRENCY_CONFLICT / NOT_FOUND
        """
        changes = {**changes, "updated_by": context.user_id, "updated_at": utcnow()}
        return await self._versioned_update(context, LabCase, "case", case_id, expected_version, changes)

    async def update_route(
        self,
        context: TenantContext,
        route_id: str,
        expected_version: int,
        changes: Dict[str, Any],
    ) -> Result[int]:
        return await self._versioned_update(context, Route, "route", route_id, expected_version, changes)

    async def update_stop(
        self,
        context: TenantContext,
        stop: RouteStopRecord,
        expected_route_version: int,
        changes: Dict[str, Any],
    ) -> Result[int]:
        """
        Update a stop, committing through its route's version.
        
        Returns:
            Result with the new route version
        """
        route_result = await self.update_route(context, stop.route_id, expected_route_version, {})
        if not route_result.ok:
            return route_result
        await self.db.execute(
            update(RouteStopRecord)
            .where(RouteStopRecord.id == stop.id, RouteStopRecord.lab_id == context.lab_id)
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        return route_result

    async def set_pickup_status(
        self,
        context: TenantContext,
        pickup_id: str,
        expected_status: PickupRequestStatus,
        changes: Dict[str, Any],
    ) -> Result[PickupRequestStatus]:
        """Compare-and-set a pickup's status; ``changes`` must include the new status."""
        changes = {**changes, "updated_at": utcnow()}
        result = await self.db.execute(
            update(PickupRequestRecord)
            .where(
                PickupRequestRecord.id == pickup_id,
                PickupRequestRecord.lab_id == context.lab_id,
                PickupRequestRecord.status == expected_status,
            )
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return Result.accepted(changes["status"])
        
        current = await self.db.get(PickupRequestRecord, pickup_id, populate_existing=True)
        if current is None or current.lab_id != context.lab_id:
            return Result.rejected(not_found("pickup", pickup_id))
        return Result.rejected(status_conflict("pickup", pickup_id, expected_status.value, current.status.value))
