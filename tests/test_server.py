"""
HTTP API: verify, cron and admin endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from tokengate.config import Config
from tokengate.gate_types import (
    AddressType, JoinRequestStatus, Member, MemberState, VerificationMethod, VerificationResult,
)
from tokengate.messages import expected_message
from tokengate.policy import make_policy
from tokengate.rate_limiter import RateLimiter

from conftest import CHAT_ID, NOW, Clock, run

CRON = {"Authorization": "Bearer cron-secret"}
ADMIN = {"Authorization": "Bearer admin-secret"}
ADDRESS = "bc1qhmfed7sgtc25m4p4md5eyvqnel6pf09wwsvx2r"


@pytest.fixture
def config():
    return Config(cron_secret="cron-secret", admin_secret="admin-secret")


@pytest.fixture
def client(engine, config):
    from tokengate.server import create_app
    return TestClient(create_app(engine, config, RateLimiter(max_requests=100)))


@pytest.fixture
def verified(monkeypatch):
    result = VerificationResult.ok(VerificationMethod.BIP137, AddressType.P2WPKH)
    monkeypatch.setattr("tokengate.compliance.verify_message", lambda *a, **kw: result)


def _verify_body(user_id=5, **overrides):
    body = {
        "chatId": CHAT_ID,
        "userId": user_id,
        "address": ADDRESS,
        "message": expected_message(user_id, CHAT_ID),
        "signature": "c2ln",
    }
    body.update(overrides)
    return body


class TestStatus:

    def test_status(self, client):
        response = client.get("/api/status")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["members"] == 0


class TestVerify:

    def test_admitted(self, client, engine, chat, verified):
        run(engine.on_join_request(CHAT_ID, 5))
        response = client.post("/api/verify", json=_verify_body())
        assert response.status_code == 200
        assert response.json() == {"ok": True, "reason": "ok", "method": "bip137 (p2wpkh)"}
        assert chat.actions("approve") == [5]

    def test_admitted_with_wallet_signature(self, client, engine, chat, wallet):
        run(engine.on_join_request(CHAT_ID, 5))
        message = expected_message(5, CHAT_ID)
        response = client.post("/api/verify", json=_verify_body(
            address=wallet.address(AddressType.P2WPKH),
            signature=wallet.sign_bip137(message, AddressType.P2WPKH)))
        assert response.status_code == 200
        assert response.json()["method"] == "bip137 (p2wpkh)"
        assert chat.actions("approve") == [5]

    def test_snake_case_fields(self, client, verified):
        body = _verify_body()
        body["chat_id"] = body.pop("chatId")
        body["user_id"] = body.pop("userId")
        assert client.post("/api/verify", json=body).status_code == 200

    def test_bad_signature(self, client):
        response = client.post("/api/verify", json=_verify_body())
        assert response.status_code == 400
        assert response.json()["reason"] == "signature_invalid"

    def test_wrong_message(self, client, verified):
        response = client.post("/api/verify", json=_verify_body(message="hello"))
        assert response.status_code == 400
        assert response.json()["reason"] == "invalid_message"

    def test_empty_address(self, client, verified):
        response = client.post("/api/verify", json=_verify_body(address="  "))
        assert response.status_code == 400
        assert response.json()["reason"] == "invalid_request"

    def test_insufficient_balance(self, client, engine, verified):
        engine.set_policy(make_policy(CHAT_ID, "token", asset="XCP", min_amount="1"))
        response = client.post("/api/verify", json=_verify_body())
        assert response.status_code == 403
        assert response.json()["reason"] == "balance_insufficient"

    def test_missing_fields(self, client):
        assert client.post("/api/verify", json={"chatId": CHAT_ID}).status_code == 422

    def test_rate_limited(self, engine, config, verified):
        from tokengate.server import create_app
        limited = TestClient(create_app(engine, config, RateLimiter(max_requests=2, clock=Clock())))
        statuses = [limited.post("/api/verify", json=_verify_body()).status_code
                    for _ in range(3)]
        assert statuses == [200, 200, 429]

    def test_report(self, client):
        response = client.post("/api/verify/report", json={
            "address": "1F3sAm6ZtwLAUnj7d38pGFxtP3RVEvtsbV",
            "message": "This is an example of a signed message.",
            "signature": "H9L5yLFjti0QTHhPyFrZCT1V/MMnBtXKmoiKDZ78NDBjERki6ZTQZdSMCtkgoNmp17By9ItJr8o7ChX0XxY91nk=",
        })
        assert response.status_code == 200
        assert response.json()["standard_compliant"] is True


class TestCron:

    def test_recheck_requires_secret(self, client):
        assert client.get("/api/cron/recheck").status_code == 401
        response = client.get("/api/cron/recheck", headers={"Authorization": "Bearer wrong"})
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_recheck(self, client, engine, store, balances):
        current = engine.set_policy(make_policy(CHAT_ID, "token", asset="XCP", min_amount="1"))
        store.upsert_member(Member(CHAT_ID, 1, address=ADDRESS, state=MemberState.VERIFIED,
                                   policy_hash=current))
        response = client.get("/api/cron/recheck", headers=CRON)
        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["chats"][0]["restricted"] == 1

    def test_cleanup_header_or_query(self, client, engine, store, clock):
        run(engine.on_join_request(CHAT_ID, 5))
        clock.advance(49 * 3600)
        assert client.get("/api/cron/cleanup").status_code == 401
        response = client.get("/api/cron/cleanup", headers={"x-cron-secret": "cron-secret"})
        assert response.json()["expired"] == 1
        assert store.get_join_request(CHAT_ID, 5).status == JoinRequestStatus.EXPIRED
        assert client.get("/api/cron/cleanup?secret=cron-secret").status_code == 200

    def test_unset_secret_rejects_everything(self, engine):
        from tokengate.server import create_app
        open_client = TestClient(create_app(engine, Config()))
        assert open_client.get("/api/cron/recheck",
                               headers={"Authorization": "Bearer "}).status_code == 401


class TestAdmin:

    def test_requires_admin_secret(self, client):
        assert client.get("/api/admin/stats", headers=CRON).status_code == 401

    def test_stats(self, client):
        response = client.get("/api/admin/stats", headers=ADMIN)
        assert response.status_code == 200
        assert "pending_join_requests" in response.json()

    def test_set_policy(self, client, store):
        response = client.put(f"/api/admin/chats/{CHAT_ID}/policy", headers=ADMIN, json={
            "type": "token", "asset": "xcp", "minAmount": "1.0", "onFail": "soft_kick",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["policy"]["asset"] == "XCP"
        assert data["policy"]["min_amount"] == "1"
        assert len(data["policy_hash"]) == 16
        assert store.get_policy(CHAT_ID).on_fail.value == "soft_kick"

    def test_set_invalid_policy(self, client):
        response = client.put(f"/api/admin/chats/{CHAT_ID}/policy", headers=ADMIN,
                              json={"type": "token", "minAmount": "1"})
        assert response.status_code == 400
        assert response.json()["code"] == "policy_invalid"

    def test_set_policy_not_json(self, client):
        response = client.put(f"/api/admin/chats/{CHAT_ID}/policy", content=b"{nope",
                              headers={**ADMIN, "Content-Type": "application/json"})
        assert response.status_code == 400

    def test_recheck_and_enforce(self, client, engine, store, chat):
        engine.set_policy(make_policy(CHAT_ID, "token", asset="XCP", min_amount="1"))
        store.upsert_member(Member(CHAT_ID, 1, address=ADDRESS, state=MemberState.VERIFIED,
                                   policy_hash="older", joined_at=NOW))

        report = client.get(f"/api/admin/chats/{CHAT_ID}/recheck", headers=ADMIN).json()
        assert report["grandfathered"] == 1
        assert report["noncompliant_users"] == []
        assert chat.actions("restrict") == []

        report = client.post(f"/api/admin/chats/{CHAT_ID}/enforce", headers=ADMIN).json()
        assert report["restricted"] == 1
        assert chat.actions("restrict") == [1]
