"""
Tenant isolation tests.

Context resolution, fail-closed guards, and cross-lab access through the
governance service.
"""

import pytest
from sqlalchemy import select

from labops.app.core.exceptions import ErrorKind, GovernanceException
from labops.app.core.guards import authorize, filter_to_tenant, scope_query
from labops.app.core.jwt import create_access_token
from labops.app.core.tenant_context import TenantContext, resolve
from labops.app.models.enums import AuditSeverity
from labops.app.models.route import Route
from labops.app.repositories.logistics import LogisticsRepository
from labops.app.schemas.case import CaseUpdate
from labops.app.schemas.logistics import PickupRequestDraft
from labops.app.services.audit import AuditAction


def test_resolve_from_claims():
    context = resolve({"labId": "lab-a", "sub": "user-1", "role": "Dispatcher"}, correlation_id="corr-1")

    assert context == TenantContext(lab_id="lab-a", user_id="user-1", role_id="Dispatcher", correlation_id="corr-1")


def test_resolve_from_custom_claim():
    assert resolve({"custom:labId": "lab-c"}).lab_id == "lab-c"


def test_resolve_from_signed_token():
    token = create_access_token({"sub": "user-2", "lab_id": "lab-b"})

    context = resolve(token)

    assert context.lab_id == "lab-b"
    assert context.user_id == "user-2"
    assert context.correlation_id


def test_each_resolution_gets_its_own_correlation_id():
    assert resolve({"labId": "lab-a"}).correlation_id != resolve({"labId": "lab-a"}).correlation_id


@pytest.mark.parametrize("credential", [None, {}, {"sub": "user-1"}, "not-a-jwt"])
def test_resolve_rejects_credentials_without_lab(credential):
    with pytest.raises(GovernanceException) as exc_info:
        resolve(credential)

    assert exc_info.value.kind == ErrorKind.INVALID_CONTEXT


def test_authorize_fails_closed(lab_a):
    authorize(lab_a, "lab-a")

    for context, resource_lab in [(lab_a, "lab-b"), (None, "lab-a"), (lab_a, None)]:
        with pytest.raises(GovernanceException) as exc_info:
            authorize(context, resource_lab, entity_type="route", entity_id="route-1")
        assert exc_info.value.kind == ErrorKind.ACCESS_DENIED


def test_filter_to_tenant(lab_a):
    items = [{"lab_id": "lab-a", "id": 1}, {"lab_id": "lab-b", "id": 2}, {"id": 3}]

    assert filter_to_tenant(items, lab_a) == [{"lab_id": "lab-a", "id": 1}]
    assert filter_to_tenant(items, None) == []


def test_scope_query_requires_context(lab_a):
    scoped = scope_query(select(Route), Route, lab_a)
    assert "routes.lab_id" in str(scoped)

    with pytest.raises(GovernanceException):
        scope_query(select(Route), Route, None)


@pytest.mark.asyncio
async def test_collection_reads_are_scoped(db_session, lab_a, lab_b, delivery_route):
    repository = LogisticsRepository(db_session)

    assert [route.id for route in await repository.list_routes(lab_a)] == [delivery_route["route_id"]]
    assert await repository.list_routes(lab_b) == []
    assert await repository.list_route_stops(lab_b, delivery_route["route_id"]) == []
    assert len(await repository.list_route_stops(lab_a, delivery_route["route_id"])) == 2


@pytest.mark.asyncio
async def test_foreign_lab_transition_is_denied_and_audited(service, lab_a, lab_b, delivery_route):
    result = await service.transition_route(
        lab_b, delivery_route["route_id"], "Cancelled", expected_version=0,
        fields={"cancellationReason": "Not ours"},
    )

    assert not result.ok
    assert result.error.kind == ErrorKind.ACCESS_DENIED
    assert result.error.details == {"resource_lab_id": "lab-a", "context_lab_id": "lab-b"}

    # The denial is visible to the requesting lab's security review only
    denials = await service.audit.query(lab_b)
    assert [entry.action for entry in denials] == [AuditAction.ACCESS_DENIED]
    assert denials[0].severity == AuditSeverity.SECURITY
    assert denials[0].correlation_id == lab_b.correlation_id
    assert await service.audit.query(lab_a) == []

    # Nothing changed for the owning lab
    route = await LogisticsRepository(service.db).get_route(lab_a, delivery_route["route_id"])
    assert route.version == 0


@pytest.mark.asyncio
async def test_missing_entity_is_not_found(service, lab_a):
    result = await service.update_case(lab_a, "no-such-case", CaseUpdate(expected_version=0, status="InProduction"))

    assert result.error.kind == ErrorKind.NOT_FOUND
    assert await service.audit.query(lab_a) == []


@pytest.mark.asyncio
async def test_missing_context_is_denied(service, delivery_route):
    result = await service.transition_stop(None, delivery_route["stop_ids"][0], "Skipped", 0, {"skipReason": "x"})

    assert result.error.kind == ErrorKind.ACCESS_DENIED


@pytest.mark.asyncio
async def test_pickup_create_for_other_lab_is_denied(service, lab_a):
    draft = PickupRequestDraft(lab_id="lab-b", clinic_id="clinic-1", package_count=1)
    result = await service.create_pickup_request(lab_a, draft)

    assert result.error.kind == ErrorKind.ACCESS_DENIED
