"""
Tests for the FastAPI boundary adapter.

Uses a throwaway app whose test middleware places a principal on
request.state, with get_db_session overridden to the test session.
"""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI, Request, status
from httpx import ASGITransport, AsyncClient

from tenant_authz.api.dependencies import (
    get_resolved_scope,
    policy_status_code,
    register_exception_handlers,
    require_policy,
)
from tenant_authz.database.session import get_db_session
from tenant_authz.iam.context import AGENCY_HEADER, SUBACCOUNT_HEADER, AgencyApiKey, UserSession
from tenant_authz.policy import PolicyDecision, PolicyReason, PolicySuggestion, UsageDecision

USER_ID = "user-1"


def _build_app(db_session) -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.middleware("http")
    async def test_principal(request: Request, call_next):
        if "x-test-user" in request.headers:
            request.state.principal = UserSession(request.headers["x-test-user"])
        elif "x-test-agency-key" in request.headers:
            request.state.principal = AgencyApiKey(request.headers["x-test-agency-key"])
        return await call_next(request)

    async def override_session():
        yield db_session

    app.dependency_overrides[get_db_session] = override_session

    @app.get("/scope")
    async def read_scope(scope=Depends(get_resolved_scope)):
        return {"agency_id": scope.agency_id, "subaccount_id": scope.subaccount_id}

    @app.get("/contacts")
    async def list_contacts(decision: PolicyDecision = Depends(require_policy("crm.customers.view"))):
        return {"allowed": decision.allowed}

    @app.post("/contacts/import")
    async def import_contacts(
        decision: PolicyDecision = Depends(require_policy("crm.customers.view", feature_key="crm.contacts")),
    ):
        return decision.to_dict()

    return app


@pytest.fixture
def app(db_session):
    return _build_app(db_session)


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _member(seed, keys=("crm.customers.view",), subscribed=True):
    agency = await seed.entitled_agency() if subscribed else await seed.agency()
    role = await seed.role(agency, keys)
    await seed.agency_member(USER_ID, agency, role)
    return agency


def _headers(agency_id=None, subaccount_id=None, user_id=USER_ID):
    headers = {"x-test-user": user_id}
    if agency_id:
        headers[AGENCY_HEADER] = agency_id
    if subaccount_id:
        headers[SUBACCOUNT_HEADER] = subaccount_id
    return headers


# =============================================================================
# Scope resolution
# =============================================================================


class TestScopeEndpoint:

    @pytest.mark.asyncio
    async def test_no_principal_is_401(self, client):
        response = await client.get("/scope")
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_missing_headers_is_400(self, client):
        response = await client.get("/scope", headers=_headers())

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["code"] == "CONTEXT_MISSING"
        assert response.json()["error"] == "context_error"

    @pytest.mark.asyncio
    async def test_non_member_is_403(self, client, seed):
        agency = await seed.agency()

        response = await client.get("/scope", headers=_headers(agency.id))

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["code"] == "CONTEXT_FORBIDDEN"

    @pytest.mark.asyncio
    async def test_member_scope(self, client, seed):
        agency = await _member(seed)

        response = await client.get("/scope", headers=_headers(agency.id))

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"agency_id": agency.id, "subaccount_id": None}

    @pytest.mark.asyncio
    async def test_agency_key_subaccount_scope(self, client, seed):
        agency = await seed.agency()
        sub = await seed.subaccount(agency)

        response = await client.get(
            "/scope",
            headers={"x-test-agency-key": agency.id, SUBACCOUNT_HEADER: sub.id},
        )

        assert response.json() == {"agency_id": agency.id, "subaccount_id": sub.id}


# =============================================================================
# Policy enforcement
# =============================================================================


class TestRequirePolicy:

    @pytest.mark.asyncio
    async def test_allowed(self, client, seed):
        agency = await _member(seed)

        response = await client.get("/contacts", headers=_headers(agency.id))

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"allowed": True}

    @pytest.mark.asyncio
    async def test_missing_permission_is_403(self, client, seed):
        agency = await _member(seed, keys=("crm.customers.update",))

        response = await client.get("/contacts", headers=_headers(agency.id))

        assert response.status_code == status.HTTP_403_FORBIDDEN
        detail = response.json()["detail"]
        assert detail["reason"] == "NO_PERMISSION"
        assert detail["allowed"] is False

    @pytest.mark.asyncio
    async def test_no_subscription_is_402(self, client, seed):
        agency = await _member(seed, subscribed=False)

        response = await client.get("/contacts", headers=_headers(agency.id))

        assert response.status_code == status.HTTP_402_PAYMENT_REQUIRED
        detail = response.json()["detail"]
        assert detail["reason"] == "NO_SUBSCRIPTION"
        assert detail["suggestion"] == "CONTACT_ADMIN"

    @pytest.mark.asyncio
    async def test_api_key_principal_rejected(self, client, seed):
        agency = await seed.entitled_agency()

        response = await client.get("/contacts", headers={"x-test-agency-key": agency.id})

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert "user principal" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_feature_route_without_usage_checker(self, client, seed):
        agency = await _member(seed)

        response = await client.post("/contacts/import", headers=_headers(agency.id))

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR

    @pytest.mark.asyncio
    async def test_usage_allowed(self, app, client, seed):
        agency = await _member(seed)
        checker = AsyncMock()
        checker.check_usage.return_value = UsageDecision(allowed=True)
        app.state.usage_checker = checker

        response = await client.post("/contacts/import", headers=_headers(agency.id))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["usage"]["allowed"] is True
        checker.check_usage.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_usage_limit_is_402(self, app, client, seed):
        agency = await _member(seed)
        checker = AsyncMock()
        checker.check_usage.return_value = UsageDecision(allowed=False, reason="LIMIT_EXCEEDED")
        app.state.usage_checker = checker

        response = await client.post("/contacts/import", headers=_headers(agency.id))

        assert response.status_code == status.HTTP_402_PAYMENT_REQUIRED
        assert response.json()["detail"]["reason"] == "LIMIT_EXCEEDED"


class TestPolicyStatusCode:

    @pytest.mark.parametrize("reason,expected", [
        (PolicyReason.NO_MEMBERSHIP, 403),
        (PolicyReason.NO_PERMISSION, 403),
        (PolicyReason.NO_SUBSCRIPTION, 402),
        (PolicyReason.FEATURE_DISABLED, 402),
        (PolicyReason.INSUFFICIENT_CREDITS, 402),
        (PolicyReason.LIMIT_EXCEEDED, 402),
    ])
    def test_mapping(self, reason, expected):
        decision = PolicyDecision.deny(reason, PolicySuggestion.NONE)
        assert policy_status_code(decision) == expected
