"""
Break-glass HTTP API Tests

Tests the JSON surface end to end:
- Authentication is required on every route
- Errors render as {"error", "kind"} with the matching status
- Audit log visibility follows effective roles
- Security headers are present on every response
"""

from datetime import datetime

import pytest
from httpx import ASGITransport, AsyncClient

from academic_portal.core.config import BreakGlassConfig
from academic_portal.core.database import get_db
from academic_portal.core.middleware import security_headers
from academic_portal.main import create_app
from academic_portal.modules.break_glass.engine import BreakGlassEngine
from academic_portal.modules.break_glass.routes import get_break_glass_engine
from academic_portal.modules.portal.dependencies import get_current_user


class CurrentUser:
    """Mutable holder so one client can act as different users."""

    def __init__(self):
        self.user = None

    async def __call__(self):
        return self.user


@pytest.fixture
def live_engine(session_factory, audit_sink):
    """Engine on the wall clock, matching what the routes see."""
    return BreakGlassEngine(
        session_factory,
        audit_sink,
        BreakGlassConfig(notify_email=False),
        clock=datetime.utcnow,
    )


@pytest.fixture
def current_user():
    return CurrentUser()


@pytest.fixture
def app(live_engine, session_factory, current_user):
    async def _get_db():
        async with session_factory() as session:
            yield session
            await session.commit()

    application = create_app(enable_security_middleware=False)
    application.dependency_overrides[get_current_user] = current_user
    application.dependency_overrides[get_break_glass_engine] = lambda: live_engine
    application.dependency_overrides[get_db] = _get_db
    return application


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


class TestAuthentication:

    @pytest.mark.asyncio
    async def test_no_session_is_401(self, session_factory):
        async def _get_db():
            async with session_factory() as session:
                yield session

        application = create_app(enable_security_middleware=False)
        application.dependency_overrides[get_db] = _get_db

        async with AsyncClient(transport=ASGITransport(app=application), base_url="http://test") as http:
            response = await http.get("/api/break-glass/status")

        assert response.status_code == 401
        assert response.json()["kind"] == "Unauthenticated"


class TestActivateRoutes:

    @pytest.mark.asyncio
    async def test_admin_activates_and_status_reports_active(self, client, current_user, users):
        current_user.user = users["A1"]

        response = await client.post(
            "/api/break-glass/activate",
            json={"userId": str(users["F1"].id), "reason": "system outage"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert len(body["promotionCode"]) == 32
        assert body["session"]["isActive"] is True

        status = await client.get("/api/break-glass/status", params={"userId": str(users["F1"].id)})
        assert status.json()["isActive"] is True

    @pytest.mark.asyncio
    async def test_repeat_activation_has_no_new_code(self, client, current_user, users):
        current_user.user = users["A1"]
        payload = {"userId": str(users["F1"].id), "reason": "r1"}

        await client.post("/api/break-glass/activate", json=payload)
        second = await client.post("/api/break-glass/activate", json={**payload, "reason": "r2"})

        assert second.status_code == 200
        assert "promotionCode" not in second.json()
        assert second.json()["session"]["reason"] == "r1"

    @pytest.mark.asyncio
    async def test_faculty_forbidden(self, client, current_user, users):
        current_user.user = users["F2"]

        response = await client.post(
            "/api/break-glass/activate",
            json={"userId": str(users["F2"].id), "reason": "x"},
        )

        assert response.status_code == 403
        assert response.json() == {
            "error": "Only Admin and Academic Head can activate break-glass",
            "kind": "Forbidden",
        }

    @pytest.mark.asyncio
    async def test_missing_user_id_is_400(self, client, current_user, users):
        current_user.user = users["A1"]

        response = await client.post("/api/break-glass/activate", json={"reason": "x"})

        assert response.status_code == 400
        assert response.json()["kind"] == "ValidationFailed"

    @pytest.mark.asyncio
    async def test_oversized_reason_is_400(self, client, current_user, users):
        current_user.user = users["A1"]

        response = await client.post(
            "/api/break-glass/activate",
            json={"userId": str(users["F1"].id), "reason": "x" * 2001},
        )

        assert response.status_code == 400
        assert response.json()["kind"] == "ValidationFailed"

    @pytest.mark.asyncio
    async def test_unknown_user_is_404(self, client, current_user, users):
        current_user.user = users["A1"]

        response = await client.post(
            "/api/break-glass/activate",
            json={"userId": "00000000-0000-0000-0000-000000000000", "reason": "x"},
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_delegated_self_promotion_forbidden(self, client, current_user, users):
        current_user.user = users["H1"]

        response = await client.post(
            "/api/break-glass/promote",
            json={"facultyUserId": str(users["H1"].id), "reason": "anything"},
        )

        assert response.status_code == 403
        assert "cannot promote themselves" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_delegated_non_faculty_is_400(self, client, current_user, users):
        current_user.user = users["A1"]

        response = await client.post(
            "/api/break-glass/promote",
            json={"facultyUserId": str(users["H1"].id), "reason": "anything"},
        )

        assert response.status_code == 400
        assert response.json()["kind"] == "PreconditionFailed"


class TestDeactivateAndPromoteRoutes:

    @pytest.mark.asyncio
    async def test_deactivate_defaults_to_caller(self, client, current_user, users):
        current_user.user = users["H1"]
        await client.post("/api/break-glass/activate", json={"userId": str(users["H1"].id), "reason": "self"})

        response = await client.post("/api/break-glass/deactivate", json={})

        assert response.status_code == 200
        assert response.json()["message"] == "Break-glass override deactivated"

        status = await client.get("/api/break-glass/status", params={"userId": str(users["H1"].id)})
        assert status.json()["isActive"] is False

    @pytest.mark.asyncio
    async def test_deactivate_noop(self, client, current_user, users):
        current_user.user = users["A1"]

        response = await client.post("/api/break-glass/deactivate", json={"userId": str(users["F1"].id)})

        assert response.status_code == 200
        assert response.json()["message"] == "Break-glass override was not active"

    @pytest.mark.asyncio
    async def test_self_promote_with_code(self, client, current_user, users):
        current_user.user = users["A1"]
        activation = await client.post(
            "/api/break-glass/activate",
            json={"userId": str(users["F1"].id), "reason": "outage"},
        )
        code = activation.json()["promotionCode"]

        current_user.user = users["F1"]
        response = await client.post("/api/break-glass/self-promote", json={"promotionCode": code})

        assert response.status_code == 200
        assert response.json()["session"]["endReason"] == "promoted"

    @pytest.mark.asyncio
    async def test_promote_permanent_wrong_code(self, client, current_user, users):
        current_user.user = users["A1"]
        await client.post(
            "/api/break-glass/activate",
            json={"userId": str(users["F1"].id), "reason": "outage"},
        )

        response = await client.post(
            "/api/break-glass/promote-permanent",
            json={"userId": str(users["F1"].id), "promotionCode": "guess"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid promotion code"


class TestAuditLogRoutes:

    @pytest.mark.asyncio
    async def test_admin_reads_security_entries(self, client, current_user, users):
        current_user.user = users["A1"]
        await client.post("/api/break-glass/activate", json={"userId": str(users["F1"].id), "reason": "outage"})

        response = await client.get("/api/logs", params={"modules": "Security"})

        assert response.status_code == 200
        body = response.json()
        assert body["totalCount"] == 1
        assert body["logs"][0]["action"] == "BREAK_GLASS_ACTIVATE"
        assert body["currentPage"] == 1

    @pytest.mark.asyncio
    async def test_academic_head_cannot_see_security_module(self, client, current_user, users, audit_sink):
        await audit_sink.record(action="BREAK_GLASS_ACTIVATE", module="Security")
        await audit_sink.record(action="COURSE_UPDATED", module="Course Management")
        current_user.user = users["H1"]

        response = await client.get("/api/logs")

        assert response.status_code == 200
        assert [log["module"] for log in response.json()["logs"]] == ["Course Management"]

    @pytest.mark.asyncio
    async def test_temporary_admin_reads_everything(self, client, current_user, users, audit_sink):
        await audit_sink.record(action="BREAK_GLASS_ACTIVATE", module="Security")
        current_user.user = users["A1"]
        await client.post("/api/break-glass/activate", json={"userId": str(users["F1"].id), "reason": "outage"})

        current_user.user = users["F1"]
        response = await client.get("/api/logs", params={"module": "security"})

        assert response.status_code == 200
        assert response.json()["totalCount"] == 2

    @pytest.mark.asyncio
    async def test_faculty_forbidden(self, client, current_user, users):
        current_user.user = users["F1"]

        response = await client.get("/api/logs")
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_invalid_date_is_400(self, client, current_user, users):
        current_user.user = users["A1"]

        response = await client.get("/api/logs", params={"startDate": "last tuesday"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_csv_export(self, client, current_user, users, audit_sink):
        await audit_sink.record(action="USER_CREATED", module="User Management", reason="hello")
        current_user.user = users["A1"]

        response = await client.get("/api/logs/export")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        lines = response.text.strip().splitlines()
        assert lines[0].startswith("id,created_at,actor_user_id,action")
        assert "USER_CREATED" in lines[1]


class TestUserRoutes:

    @pytest.mark.asyncio
    async def test_conflicting_roles_rejected(self, client, current_user, users):
        current_user.user = users["A1"]

        response = await client.put(
            f"/api/users/{users['H1'].id}/roles",
            json={"roles": ["ADMIN", "ACADEMIC_HEAD"]},
        )

        assert response.status_code == 400
        assert response.json()["kind"] == "ValidationFailed"

    @pytest.mark.asyncio
    async def test_admin_updates_roles(self, client, current_user, users, fetch_user):
        current_user.user = users["A1"]

        response = await client.put(f"/api/users/{users['F1'].id}/roles", json={"roles": ["ADMIN", "FACULTY"]})

        assert response.status_code == 200
        assert (await fetch_user(users["F1"].id)).roles == ["ADMIN", "FACULTY"]

    @pytest.mark.asyncio
    async def test_faculty_cannot_create_users(self, client, current_user, users):
        current_user.user = users["F1"]

        response = await client.post("/api/users", json={"email": "n@college.test", "name": "N"})

        assert response.status_code == 403
        assert response.json()["error"] == "Access denied. Required role: ADMIN or ACADEMIC_HEAD"


class TestSecurityHeaders:

    @pytest.mark.asyncio
    async def test_headers_on_error_responses(self, client, current_user, users):
        current_user.user = users["F1"]

        response = await client.get("/api/logs")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Cache-Control"] == "no-store"
        assert "Strict-Transport-Security" not in response.headers

    def test_hsts_only_in_production(self):
        assert "Strict-Transport-Security" in security_headers(production=True)
        assert "Strict-Transport-Security" not in security_headers(production=False)
