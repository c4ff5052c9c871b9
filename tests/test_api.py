"""Tests for API endpoints (router layer).

Tests the FastAPI routes by calling the service layer through dependency
injection overrides. Does not test service logic; that is in test_services.py.

Tests verify:
- Request validation (Pydantic schema enforcement)
- HTTP status codes, including PolicyEngineError rendering
- Response schema shapes
- Tenant header enforcement
"""

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from kontra_policy_engine.api.router import (
    get_evaluation_service,
    get_finding_service,
    get_impact_scheduler,
    get_impact_service,
    get_pack_service,
    get_rule_service,
)
from kontra_policy_engine.api.schemas import (
    FindingResponse,
    ImpactRunDetailResponse,
    ImpactRunResponse,
    ImpactRunStartResponse,
    OverrideResponse,
    OverrideResultResponse,
    PackResponse,
)
from kontra_policy_engine.common.auth import TenantContext, get_current_user
from kontra_policy_engine.common.errors import ConflictError, InvalidConditionError, NotFoundError
from kontra_policy_engine.main import create_app
from kontra_policy_engine.settings import Settings

PREFIX = "/api/v1/policy"


def make_pack_response(tenant_id: uuid.UUID) -> PackResponse:
    """Create a fake PackResponse for mock service return values."""
    return PackResponse(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        name="Servicing Guide",
        authority="FHLMC",
        description=None,
        status="active",
        created_at=datetime.now(UTC),
        updated_at=datetime.now(UTC),
    )


def make_finding_response(tenant_id: uuid.UUID, status: str = "open") -> FindingResponse:
    """Create a fake FindingResponse for mock service return values."""
    return FindingResponse(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        entity_type="loan",
        entity_id="loan-1",
        pack_id=uuid.uuid4(),
        rule_id=uuid.uuid4(),
        rule_version_id=uuid.uuid4(),
        status=status,
        severity="high",
        title="High risk loan",
        due_date=None,
        details={"rule_name": "High risk review", "inputs_snapshot": {"risk_rating": 8}},
        tasks=[],
        created_at=datetime.now(UTC),
        updated_at=datetime.now(UTC),
    )


def make_run_response(tenant_id: uuid.UUID, status: str = "complete") -> ImpactRunResponse:
    return ImpactRunResponse(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        pack_id=None,
        rule_version_id=uuid.uuid4(),
        status=status,
        summary={"total_entities": 10, "would_trigger": 3, "no_trigger": 7, "severity": "high"},
        error=None,
        created_by=None,
        created_at=datetime.now(UTC),
        completed_at=datetime.now(UTC),
    )


@pytest.fixture()
def test_app(mock_tenant: TenantContext) -> FastAPI:
    """Create the application with the tenant dependency overridden.

    Args:
        mock_tenant: The tenant context fixture.

    Returns:
        FastAPI app with mocked dependencies.
    """
    app = create_app(Settings(api_prefix=PREFIX))
    app.dependency_overrides[get_current_user] = lambda: mock_tenant
    app.dependency_overrides[get_impact_scheduler] = lambda: None
    return app


def client_for(app: FastAPI, headers: dict[str, str] | None = None) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test", headers=headers)


class TestPackEndpoints:
    """Tests for /packs endpoints."""

    @pytest.mark.asyncio()
    async def test_create_pack_returns_201(self, test_app: FastAPI, tenant_id: uuid.UUID) -> None:
        """POST /packs with a valid body returns 201 and the pack."""
        service = AsyncMock()
        service.create_pack.return_value = make_pack_response(tenant_id)
        test_app.dependency_overrides[get_pack_service] = lambda: service

        async with client_for(test_app) as client:
            response = await client.post(f"{PREFIX}/packs", json={"name": "Servicing Guide", "authority": "FHLMC"})

        assert response.status_code == 201
        assert response.json()["authority"] == "FHLMC"

    @pytest.mark.asyncio()
    async def test_create_pack_missing_authority_returns_422(self, test_app: FastAPI) -> None:
        service = AsyncMock()
        test_app.dependency_overrides[get_pack_service] = lambda: service

        async with client_for(test_app) as client:
            response = await client.post(f"{PREFIX}/packs", json={"name": "Servicing Guide"})

        assert response.status_code == 422
        service.create_pack.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_update_missing_pack_returns_404(self, test_app: FastAPI) -> None:
        """NotFoundError renders as 404 with the error code and details."""
        service = AsyncMock()
        pack_id = uuid.uuid4()
        service.update_pack.side_effect = NotFoundError("PolicyPack", str(pack_id))
        test_app.dependency_overrides[get_pack_service] = lambda: service

        async with client_for(test_app) as client:
            response = await client.patch(f"{PREFIX}/packs/{pack_id}", json={"status": "retired"})

        assert response.status_code == 404
        body = response.json()
        assert body["code"] == "NOT_FOUND"
        assert body["details"]["resource_id"] == str(pack_id)
        assert service.update_pack.call_args.args[2] == {"status": "retired"}


class TestRuleEndpoints:
    """Tests for /rules and /versions endpoints."""

    @pytest.mark.asyncio()
    async def test_invalid_conditions_return_422(self, test_app: FastAPI) -> None:
        service = AsyncMock()
        service.create_rule.side_effect = InvalidConditionError("Invalid condition at $.all[0]", path="$.all[0]")
        test_app.dependency_overrides[get_rule_service] = lambda: service

        async with client_for(test_app) as client:
            response = await client.post(
                f"{PREFIX}/rules",
                json={
                    "pack_id": str(uuid.uuid4()),
                    "name": "Broken",
                    "conditions": {"all": [{"field": "loan.state", "op": "~", "value": "TX"}]},
                },
            )

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "INVALID_CONDITION"
        assert body["details"]["path"] == "$.all[0]"

    @pytest.mark.asyncio()
    async def test_activate_conflict_returns_409(self, test_app: FastAPI) -> None:
        service = AsyncMock()
        service.activate_version.side_effect = ConflictError("Version is draft")
        test_app.dependency_overrides[get_rule_service] = lambda: service

        async with client_for(test_app) as client:
            response = await client.post(f"{PREFIX}/versions/{uuid.uuid4()}/activate")

        assert response.status_code == 409
        assert response.json()["code"] == "CONFLICT"

    @pytest.mark.asyncio()
    async def test_approve_passes_actor(self, test_app: FastAPI, mock_tenant: TenantContext) -> None:
        service = AsyncMock()
        service.approve_version.side_effect = ConflictError("Version is draft")
        test_app.dependency_overrides[get_rule_service] = lambda: service
        version_id = uuid.uuid4()

        async with client_for(test_app) as client:
            await client.post(f"{PREFIX}/versions/{version_id}/approve")

        service.approve_version.assert_awaited_once_with(mock_tenant, version_id, actor_id=mock_tenant.user_id)


class TestEvaluationEndpoints:
    """Tests for POST /evaluate."""

    @pytest.mark.asyncio()
    async def test_inline_entity(self, test_app: FastAPI, tenant_id: uuid.UUID) -> None:
        service = AsyncMock()
        service.evaluate.return_value = [make_finding_response(tenant_id)]
        test_app.dependency_overrides[get_evaluation_service] = lambda: service

        async with client_for(test_app) as client:
            response = await client.post(
                f"{PREFIX}/evaluate",
                json={"entity_type": "loan", "entity": {"id": "loan-1", "risk_rating": 8}},
            )

        assert response.status_code == 200
        body = response.json()
        assert body["entity_id"] == "loan-1"
        assert len(body["findings"]) == 1
        service.evaluate_by_id.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_entity_by_id(self, test_app: FastAPI, mock_tenant: TenantContext) -> None:
        service = AsyncMock()
        service.evaluate_by_id.return_value = []
        test_app.dependency_overrides[get_evaluation_service] = lambda: service

        async with client_for(test_app) as client:
            response = await client.post(f"{PREFIX}/evaluate", json={"entity_id": "loan-9"})

        assert response.status_code == 200
        assert response.json() == {"entity_type": "loan", "entity_id": "loan-9", "findings": []}
        service.evaluate_by_id.assert_awaited_once_with(mock_tenant, "loan", "loan-9")

    @pytest.mark.asyncio()
    async def test_missing_entity_returns_422(self, test_app: FastAPI) -> None:
        test_app.dependency_overrides[get_evaluation_service] = lambda: AsyncMock()

        async with client_for(test_app) as client:
            response = await client.post(f"{PREFIX}/evaluate", json={"entity_type": "loan"})

        assert response.status_code == 422


class TestImpactEndpoints:
    """Tests for /impact endpoints."""

    @pytest.mark.asyncio()
    async def test_start_run_returns_202(self, test_app: FastAPI) -> None:
        service = AsyncMock()
        run_id = uuid.uuid4()
        service.start_run.return_value = ImpactRunStartResponse(run_id=run_id, status="running")
        test_app.dependency_overrides[get_impact_service] = lambda: service

        async with client_for(test_app) as client:
            response = await client.post(f"{PREFIX}/impact/run", json={"rule_version_id": str(uuid.uuid4())})

        assert response.status_code == 202
        assert response.json() == {"run_id": str(run_id), "status": "running"}
        assert service.start_run.call_args.kwargs["scheduler"] is None

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("background", [True, False])
    async def test_scheduler_follows_app_settings(self, mock_tenant: TenantContext, background: bool) -> None:
        """The app's own settings decide whether runs go to the background scheduler."""
        app = create_app(Settings(api_prefix=PREFIX, impact_run_in_background=background))
        scheduler = MagicMock()
        app.state.impact_scheduler = scheduler
        service = AsyncMock()
        service.start_run.return_value = ImpactRunStartResponse(run_id=uuid.uuid4(), status="running")
        app.dependency_overrides[get_current_user] = lambda: mock_tenant
        app.dependency_overrides[get_impact_service] = lambda: service

        async with client_for(app) as client:
            response = await client.post(f"{PREFIX}/impact/run", json={"rule_version_id": str(uuid.uuid4())})

        assert response.status_code == 202
        expected = scheduler if background else None
        assert service.start_run.call_args.kwargs["scheduler"] is expected

    @pytest.mark.asyncio()
    async def test_get_run(self, test_app: FastAPI, tenant_id: uuid.UUID) -> None:
        service = AsyncMock()
        run = make_run_response(tenant_id)
        service.get_run.return_value = ImpactRunDetailResponse(run=run, results=[])
        test_app.dependency_overrides[get_impact_service] = lambda: service

        async with client_for(test_app) as client:
            response = await client.get(f"{PREFIX}/impact/{run.id}")

        assert response.status_code == 200
        assert response.json()["run"]["summary"]["would_trigger"] == 3

    @pytest.mark.asyncio()
    async def test_cancel_finished_run_returns_409(self, test_app: FastAPI) -> None:
        service = AsyncMock()
        service.cancel_run.side_effect = ConflictError("Impact run is complete and cannot be cancelled")
        test_app.dependency_overrides[get_impact_service] = lambda: service

        async with client_for(test_app) as client:
            response = await client.post(f"{PREFIX}/impact/{uuid.uuid4()}/cancel")

        assert response.status_code == 409


class TestFindingEndpoints:
    """Tests for /findings endpoints."""

    @pytest.mark.asyncio()
    async def test_list_findings_passes_filters(self, test_app: FastAPI, mock_tenant: TenantContext) -> None:
        service = AsyncMock()
        service.list_findings.return_value = [make_finding_response(mock_tenant.tenant_id)]
        test_app.dependency_overrides[get_finding_service] = lambda: service

        async with client_for(test_app) as client:
            response = await client.get(f"{PREFIX}/findings", params={"status": "open", "entity_id": "loan-1"})

        assert response.status_code == 200
        assert len(response.json()) == 1
        service.list_findings.assert_awaited_once_with(mock_tenant, status="open", entity_type=None, entity_id="loan-1")

    @pytest.mark.asyncio()
    async def test_override_returns_201(self, test_app: FastAPI, mock_tenant: TenantContext) -> None:
        finding = make_finding_response(mock_tenant.tenant_id, status="waived")
        service = AsyncMock()
        service.override.return_value = OverrideResultResponse(
            override=OverrideResponse(
                id=uuid.uuid4(),
                finding_id=finding.id,
                action="waive",
                reason_code="W1",
                reason="Investor exception",
                approved_by=mock_tenant.user_id,
                approved_at=datetime.now(UTC),
                expires_at=None,
            ),
            finding=finding,
        )
        test_app.dependency_overrides[get_finding_service] = lambda: service

        async with client_for(test_app) as client:
            response = await client.post(
                f"{PREFIX}/findings/{finding.id}/override",
                json={"action": "waive", "reason_code": "W1", "reason": "Investor exception"},
            )

        assert response.status_code == 201
        assert response.json()["finding"]["status"] == "waived"
        assert service.override.call_args.kwargs["actor_id"] == mock_tenant.user_id

    @pytest.mark.asyncio()
    async def test_override_without_action_returns_422(self, test_app: FastAPI) -> None:
        test_app.dependency_overrides[get_finding_service] = lambda: AsyncMock()

        async with client_for(test_app) as client:
            response = await client.post(f"{PREFIX}/findings/{uuid.uuid4()}/override", json={"reason": "x"})

        assert response.status_code == 422

    @pytest.mark.asyncio()
    async def test_storage_error_returns_503(self, test_app: FastAPI) -> None:
        """Unhandled database errors render as STORAGE_ERROR."""
        service = AsyncMock()
        service.list_findings.side_effect = OperationalError("SELECT 1", {}, Exception("connection lost"))
        test_app.dependency_overrides[get_finding_service] = lambda: service

        async with client_for(test_app) as client:
            response = await client.get(f"{PREFIX}/findings")

        assert response.status_code == 503
        assert response.json()["code"] == "STORAGE_ERROR"


class TestConditionValidation:
    """Tests for POST /conditions/validate."""

    @pytest.mark.asyncio()
    async def test_valid_tree_lists_fields(self, test_app: FastAPI) -> None:
        async with client_for(test_app) as client:
            response = await client.post(
                f"{PREFIX}/conditions/validate",
                json={"conditions": {"any": [{"field": "loan.state", "op": "in", "value": ["TX"]}]}},
            )

        assert response.status_code == 200
        assert response.json()["valid"] is True
        assert response.json()["fields"] == ["loan.state"]

    @pytest.mark.asyncio()
    async def test_invalid_tree_reports_path(self, test_app: FastAPI) -> None:
        async with client_for(test_app) as client:
            response = await client.post(
                f"{PREFIX}/conditions/validate",
                json={"conditions": {"all": [{"field": "loan.state", "op": "in", "value": "TX"}]}},
            )

        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is False
        assert body["path"] == "$.all[0]"


class TestTenantHeaders:
    """Tests for gateway header enforcement."""

    @pytest.mark.asyncio()
    async def test_missing_tenant_header_returns_400(self) -> None:
        app = create_app(Settings(api_prefix=PREFIX))

        async with client_for(app) as client:
            response = await client.post(f"{PREFIX}/conditions/validate", json={"conditions": {}})

        assert response.status_code == 400

    @pytest.mark.asyncio()
    async def test_malformed_tenant_header_returns_400(self) -> None:
        app = create_app(Settings(api_prefix=PREFIX))

        async with client_for(app, headers={"X-Tenant-ID": "acme"}) as client:
            response = await client.post(f"{PREFIX}/conditions/validate", json={"conditions": {}})

        assert response.status_code == 400

    @pytest.mark.asyncio()
    async def test_valid_headers_accepted(self, tenant_id: uuid.UUID, actor_id: uuid.UUID) -> None:
        app = create_app(Settings(api_prefix=PREFIX))
        headers = {"X-Tenant-ID": str(tenant_id), "X-User-ID": str(actor_id)}

        async with client_for(app, headers=headers) as client:
            response = await client.post(f"{PREFIX}/conditions/validate", json={"conditions": {}})

        assert response.status_code == 200
        assert response.json()["valid"] is True

    @pytest.mark.asyncio()
    async def test_health(self) -> None:
        app = create_app(Settings(api_prefix=PREFIX))

        async with client_for(app) as client:
            response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
