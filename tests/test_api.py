# tests/test_api.py
"""
Tests for the JSON HTTP API: identity headers, error mapping, and a few
end-to-end command paths.
"""
from contextlib import asynccontextmanager

import pytest
from aiohttp import test_utils

from api.engine_api import EngineAPI
from core.identity import ROLE_ADMIN, ROLE_USER, sign_identity

SECRET = "api_test_secret"


@asynccontextmanager
async def api_client(delivery):
    api = EngineAPI(delivery, secret_key=SECRET)
    async with test_utils.TestClient(test_utils.TestServer(api.app)) as client:
        yield client


def headers_for(user_id: int, role: str = ROLE_USER, secret: str = SECRET) -> dict:
    return {
        "X-User-ID": str(user_id),
        "X-User-Role": role,
        "X-Identity-Signature": sign_identity(user_id, role, secret),
    }


class TestPublicRoutes:

    @pytest.mark.asyncio
    async def test_health(self, engine, delivery):
        async with api_client(delivery) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            data = await resp.json()

        assert data["status"] == "ok"

    @pytest.mark.asyncio
    async def test_register_and_sponsor_lookup(self, engine, delivery):
        async with api_client(delivery) as client:
            resp = await client.post("/register", json={"email": "root@example.com", "fullName": "Root"})
            assert resp.status == 201
            root = await resp.json()

            resp = await client.post(
                "/register", json={"email": "kid@example.com", "sponsorCode": root["referralCode"]}
            )
            assert resp.status == 201
            kid = await resp.json()

            resp = await client.get(f"/sponsor/{root['referralCode']}")
            sponsor = await resp.json()

        assert root["parentId"] is None
        assert kid["sponsorId"] == root["userId"]
        assert kid["parentId"] == root["userId"]
        assert kid["position"] == "LEFT"
        assert sponsor["fullName"] == "Root"

    @pytest.mark.asyncio
    async def test_unknown_sponsor(self, engine, delivery):
        async with api_client(delivery) as client:
            resp = await client.get("/sponsor/NOPE000000")
            data = await resp.json()

        assert resp.status == 404
        assert data["error"] == "unknown_sponsor"

    @pytest.mark.asyncio
    async def test_register_requires_email(self, engine, delivery):
        async with api_client(delivery) as client:
            resp = await client.post("/register", json={"fullName": "Nobody"})

        assert resp.status == 400


class TestIdentity:

    @pytest.mark.asyncio
    async def test_missing_identity(self, engine, delivery):
        async with api_client(delivery) as client:
            resp = await client.get("/wallet")

        assert resp.status == 401

    @pytest.mark.asyncio
    async def test_bad_signature(self, engine, delivery):
        async with api_client(delivery) as client:
            resp = await client.get("/wallet", headers=headers_for(1, secret="wrong"))

        assert resp.status == 401

    @pytest.mark.asyncio
    async def test_role_is_part_of_signature(self, engine, delivery):
        headers = headers_for(1)
        headers["X-User-Role"] = ROLE_ADMIN

        async with api_client(delivery) as client:
            resp = await client.get("/admin/requests", headers=headers)

        assert resp.status == 401

    @pytest.mark.asyncio
    async def test_signed_wallet(self, session, make_user, delivery):
        a = await make_user("a")

        async with api_client(delivery) as client:
            resp = await client.get("/wallet", headers=headers_for(a.userID))
            data = await resp.json()

        assert resp.status == 200
        assert data["userId"] == a.userID
        assert set(data["wallets"]) == {"package", "investment"}


class TestCommands:

    @pytest.mark.asyncio
    async def test_invalid_deposit_amount(self, session, make_user, delivery):
        a = await make_user("a")

        async with api_client(delivery) as client:
            resp = await client.post("/deposits", json={"amount": "155"}, headers=headers_for(a.userID))
            data = await resp.json()

        assert resp.status == 400
        assert data["error"] == "invalid_amount"
        assert data["minimum"] == "100"

    @pytest.mark.asyncio
    async def test_deposit_flow_and_admin_only_approve(self, session, make_user, delivery):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)

        async with api_client(delivery) as client:
            resp = await client.post("/deposits", json={"amount": "500"}, headers=headers_for(b.userID))
            assert resp.status == 201
            request_id = (await resp.json())["requestId"]

            resp = await client.post(
                f"/requests/{request_id}/otp", json={"code": delivery.last_code}, headers=headers_for(b.userID)
            )
            assert resp.status == 200

            resp = await client.post(f"/requests/{request_id}/submit", json={}, headers=headers_for(b.userID))
            assert resp.status == 200

            resp = await client.post(f"/admin/requests/{request_id}/approve", headers=headers_for(b.userID))
            assert resp.status == 403

            resp = await client.post(
                f"/admin/requests/{request_id}/approve", headers=headers_for(a.userID, ROLE_ADMIN)
            )
            approved = await resp.json()

            resp = await client.get("/wallet", headers=headers_for(a.userID))
            sponsor_wallet = await resp.json()

        assert approved["state"] == "COMPLETED"
        assert approved["status"] == "COMPLETED"
        assert sponsor_wallet["wallets"]["investment"]["balance"] == "50.00"

    @pytest.mark.asyncio
    async def test_unknown_request(self, session, make_user, delivery):
        a = await make_user("a")

        async with api_client(delivery) as client:
            resp = await client.post("/admin/requests/999/approve", headers=headers_for(a.userID, ROLE_ADMIN))

        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_transfer_insufficient_balance(self, session, make_user, delivery):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)

        async with api_client(delivery) as client:
            resp = await client.post(
                "/transfers",
                json={"recipientCode": b.referralCode, "amount": "50"},
                headers=headers_for(a.userID),
            )
            data = await resp.json()

        assert resp.status == 409
        assert data["error"] == "insufficient_balance"

    @pytest.mark.asyncio
    async def test_resend_otp_then_confirm(self, session, make_user, delivery):
        a = await make_user("a")

        async with api_client(delivery) as client:
            resp = await client.post("/deposits", json={"amount": "100"}, headers=headers_for(a.userID))
            request_id = (await resp.json())["requestId"]

            resp = await client.post(f"/requests/{request_id}/otp/resend", headers=headers_for(a.userID))
            assert resp.status == 200

            resp = await client.post(
                f"/requests/{request_id}/otp", json={"code": delivery.last_code}, headers=headers_for(a.userID)
            )
            confirmed = await resp.json()

        assert len(delivery.sent) == 2
        assert confirmed["state"] == "OTP_VERIFIED"

    @pytest.mark.asyncio
    async def test_resend_otp_for_someone_else(self, session, make_user, delivery):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)

        async with api_client(delivery) as client:
            resp = await client.post("/deposits", json={"amount": "100"}, headers=headers_for(a.userID))
            request_id = (await resp.json())["requestId"]

            resp = await client.post(f"/requests/{request_id}/otp/resend", headers=headers_for(b.userID))

        assert resp.status == 404
        assert len(delivery.sent) == 1

    @pytest.mark.asyncio
    async def test_my_requests_open_filter(self, session, make_user, delivery):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)

        async with api_client(delivery) as client:
            resp = await client.post("/deposits", json={"amount": "100"}, headers=headers_for(b.userID))
            first = (await resp.json())["requestId"]
            resp = await client.post("/deposits", json={"amount": "200"}, headers=headers_for(b.userID))
            second = (await resp.json())["requestId"]

            resp = await client.post(
                f"/admin/requests/{first}/reject", json={"reason": "no"}, headers=headers_for(a.userID, ROLE_ADMIN)
            )
            assert resp.status == 200

            resp = await client.get("/requests", headers=headers_for(b.userID))
            everything = await resp.json()
            resp = await client.get("/requests?open=true", headers=headers_for(b.userID))
            still_open = await resp.json()
            resp = await client.get("/requests", headers=headers_for(a.userID))
            sponsor_view = await resp.json()

        assert [r["requestId"] for r in everything["requests"]] == [second, first]
        assert [r["requestId"] for r in still_open["requests"]] == [second]
        assert sponsor_view["requests"] == []
