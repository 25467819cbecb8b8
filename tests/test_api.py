"""
HTTP API tests.

Drives the FastAPI app in-process with TestClient against an in-memory
ledger and read model.
"""

from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from conftest import login, make_container

from certregistry.config import LedgerConfig
from certregistry.core.errors import ConsistencyViolation
from certregistry.core.sessions import LoginRateLimiter
from certregistry.core.signature import sign_message
from certregistry.main import create_app


@pytest.fixture
def client(container):
    app = create_app(container, start_workers=False)
    with TestClient(app) as test_client:
        yield test_client


ISSUE_BODY = {
    "subject_id": "S1",
    "subject_name": "Ada Lovelace",
    "program": "BSc Mathematics",
    "credential_value": "3.85",
    "issuing_authority": "Example University",
}


class TestSystem:

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_health_detailed(self, client):
        response = client.get("/health/detailed")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_request_id_header(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    def test_api_info(self, client):
        info = client.get("/api").json()
        assert info["storage_backend"] == "InMemoryReadModelStore"


class TestAuthFlow:

    def test_login_and_me(self, client, admin):
        headers = login(client, admin)
        me = client.get("/auth/me", headers=headers)
        assert me.status_code == 200
        assert me.json()["address"] == admin.address
        assert me.json()["is_admin"] is True

    def test_logout(self, client, admin):
        headers = login(client, admin)
        assert client.post("/auth/logout", headers=headers).json() == {"success": True}
        response = client.get("/auth/me", headers=headers)
        assert response.status_code == 401
        assert response.json()["error"] == "AuthenticationError"

    def test_missing_token(self, client):
        assert client.get("/auth/me").status_code == 401

    def test_challenge_bad_address(self, client):
        assert client.post("/auth/challenge", json={"address": "0x123"}).status_code == 400

    def test_no_challenge(self, client, admin):
        response = client.post("/auth/login", json={
            "address": admin.address,
            "signature": sign_message("hello", admin.key),
        })
        assert response.status_code == 404
        assert response.json()["error"] == "NoSuchChallenge"

    def test_wrong_signature(self, client, admin, outsider):
        message = client.post("/auth/challenge", json={"address": admin.address}).json()["message"]
        response = client.post("/auth/login", json={
            "address": admin.address,
            "signature": sign_message(message, outsider.key),
        })
        assert response.status_code == 401
        assert response.json()["error"] == "SignatureMismatch"

    def test_replay(self, client, admin):
        message = client.post("/auth/challenge", json={"address": admin.address}).json()["message"]
        body = {"address": admin.address, "signature": sign_message(message, admin.key)}
        assert client.post("/auth/login", json=body).status_code == 200
        response = client.post("/auth/login", json=body)
        assert response.status_code == 409
        assert response.json()["error"] == "AlreadyConsumed"

    def test_expired_challenge(self, client, container, admin):
        message = client.post("/auth/challenge", json={"address": admin.address}).json()["message"]
        stored = container.challenges.store.get(admin.address)
        container.challenges.store.replace(replace(stored, expires_at=stored.issued_at))
        response = client.post("/auth/login", json={
            "address": admin.address,
            "signature": sign_message(message, admin.key),
        })
        assert response.status_code == 410
        assert response.json()["error"] == "ExpiredChallenge"

    def test_unregistered_wallet(self, client, outsider):
        message = client.post("/auth/challenge", json={"address": outsider.address}).json()["message"]
        response = client.post("/auth/login", json={
            "address": outsider.address,
            "signature": sign_message(message, outsider.key),
        })
        assert response.status_code == 404
        assert response.json()["error"] == "AccountNotFound"

    def test_rate_limit(self, client, container, admin):
        container.rate_limiter = LoginRateLimiter(max_attempts=2)
        body = {"address": admin.address, "signature": "0x" + "00" * 65}
        client.post("/auth/login", json=body)
        client.post("/auth/login", json=body)
        response = client.post("/auth/login", json=body)
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0


class TestCertificateFlow:

    @pytest.fixture
    def issuer_headers(self, client, registered_issuer):
        return login(client, registered_issuer)

    def test_issue_revoke_reactivate(self, client, issuer_headers):
        issued = client.post("/certificates", json=ISSUE_BODY, headers=issuer_headers)
        assert issued.status_code == 201, issued.text
        cert_hash = issued.json()["cert_hash"]
        assert issued.json()["version"] == 1

        revoked = client.post(
            f"/certificates/{cert_hash}/revoke", json={"reason": "fraud"}, headers=issuer_headers
        )
        assert revoked.json()["status"] == "revoked"

        verify = client.get(f"/certificates/{cert_hash}/verify").json()
        assert verify["valid"] is False
        assert verify["hash_valid"] is True
        assert verify["revocation_reason"] == "fraud"

        again = client.post(
            f"/certificates/{cert_hash}/revoke", json={"reason": "again"}, headers=issuer_headers
        )
        assert again.status_code == 409
        assert again.json()["error"] == "InvalidTransition"

        reactivated = client.post(f"/certificates/{cert_hash}/reactivate", headers=issuer_headers)
        assert reactivated.status_code == 200

        detail = client.get(f"/certificates/{cert_hash}").json()
        assert detail["status"] == "active"
        assert detail["credential_value"] == "3.85"
        assert [h["action"] for h in detail["history"]] == ["ISSUED", "REVOKED", "REACTIVATED"]

    def test_versions(self, client, issuer_headers):
        client.post("/certificates", json=ISSUE_BODY, headers=issuer_headers)
        v2 = client.post(
            "/certificates", json={**ISSUE_BODY, "credential_value": "3.90"}, headers=issuer_headers
        ).json()
        assert v2["version"] == 2

        current = client.get("/certificates/subject/S1").json()
        assert current["cert_hash"] == v2["cert_hash"]
        history = client.get("/certificates/subject/S1/history").json()
        assert [v["version"] for v in history["versions"]] == [1, 2]

    def test_reason_too_long(self, client, issuer_headers):
        cert_hash = client.post("/certificates", json=ISSUE_BODY, headers=issuer_headers).json()["cert_hash"]
        response = client.post(
            f"/certificates/{cert_hash}/revoke", json={"reason": "x" * 501}, headers=issuer_headers
        )
        assert response.status_code == 400

    def test_bad_credential_value(self, client, issuer_headers):
        response = client.post(
            "/certificates", json={**ISSUE_BODY, "credential_value": "3.855"}, headers=issuer_headers
        )
        assert response.status_code == 400

    def test_issue_requires_login(self, client):
        assert client.post("/certificates", json=ISSUE_BODY).status_code == 401

    def test_unknown_certificate(self, client):
        response = client.get(f"/certificates/0x{'ab' * 32}")
        assert response.status_code == 404
        assert response.json()["error"] == "CertificateNotFound"

    def test_export(self, client, issuer_headers):
        cert_hash = client.post("/certificates", json=ISSUE_BODY, headers=issuer_headers).json()["cert_hash"]
        response = client.get(f"/certificates/{cert_hash}/export.md")
        assert response.status_code == 200
        assert "S1" in response.headers["Content-Disposition"]
        assert cert_hash in response.text

    def test_list_with_page_size_alias(self, client, issuer_headers):
        for i in range(3):
            client.post("/certificates", json={**ISSUE_BODY, "subject_id": f"S{i}"}, headers=issuer_headers)
        body = client.get("/certificates", params={"pageSize": 2}).json()
        assert len(body["data"]) == 2
        assert body["meta"] == {
            "current_page": 1, "total_pages": 2, "total_count": 3, "has_more": True
        }
        assert client.get("/certificates", params={"pageSize": 101}).status_code == 422

    def test_search(self, client, issuer_headers):
        client.post("/certificates", json=ISSUE_BODY, headers=issuer_headers)
        results = client.get("/search", params={"q": "S1"}).json()
        assert [s["subject_id"] for s in results["subjects"]] == ["S1"]


class TestAccountsAndAudit:

    def test_admin_registers_account(self, client, admin, issuer):
        headers = login(client, admin)
        response = client.post("/users", json={
            "address": issuer.address,
            "display_name": "Registrar",
            "email": "registrar@example.edu",
        }, headers=headers)
        assert response.status_code == 201
        assert response.json()["action"] == "REGISTER_USER"
        assert client.get(f"/users/{issuer.address}", headers=headers).json()["is_authorized"]

    def test_non_admin_forbidden(self, client, registered_issuer, outsider):
        headers = login(client, registered_issuer)
        response = client.post("/users", json={
            "address": outsider.address, "display_name": "X", "email": "x@y.z",
        }, headers=headers)
        assert response.status_code == 403
        assert client.get("/audit", headers=headers).status_code == 403
        assert client.get("/indexer/status", headers=headers).status_code == 403

    def test_revoked_account_loses_session(self, client, admin, registered_issuer):
        issuer_headers = login(client, registered_issuer)
        admin_headers = login(client, admin)
        client.post(f"/users/{registered_issuer.address}/revoke", headers=admin_headers)
        assert client.get("/auth/me", headers=issuer_headers).status_code == 401

    def test_last_admin(self, client, admin):
        headers = login(client, admin)
        response = client.post(f"/users/{admin.address}/revoke-admin", headers=headers)
        assert response.status_code == 409

    def test_audit_routes(self, client, admin, registered_issuer):
        issuer_headers = login(client, registered_issuer)
        cert_hash = client.post("/certificates", json=ISSUE_BODY, headers=issuer_headers).json()["cert_hash"]
        client.post(f"/certificates/{cert_hash}/revoke", json={"reason": "fraud"}, headers=issuer_headers)

        public = client.get(f"/audit/certificate/{cert_hash}", params={"pageSize": 1}).json()
        assert public["meta"]["total_count"] == 2
        assert public["meta"]["has_more"] is True
        assert public["data"][0]["action"] == "ISSUED"

        own = client.get(f"/audit/user/{registered_issuer.address}", headers=issuer_headers)
        assert own.json()["meta"]["total_count"] == 2

        others = client.get(f"/audit/user/{admin.address}", headers=issuer_headers)
        assert others.status_code == 403

        admin_headers = login(client, admin)
        everything = client.get("/audit", headers=admin_headers).json()
        assert everything["meta"]["total_count"] == 2

    def test_indexer_status(self, client, container, admin):
        headers = login(client, admin)
        status = client.get("/indexer/status", headers=headers).json()
        assert status["state"] == "idle"
        assert status["cursor"] == status["head_cursor"] == container.ledger.head_cursor()

    def test_dashboard(self, client, admin):
        headers = login(client, admin)
        summary = client.get("/dashboard", headers=headers).json()
        assert summary["accounts"]["admins"] == 1
        assert client.get("/dashboard").status_code == 401


class TestCertificateRequests:

    @pytest.fixture
    def issuer_headers(self, client, registered_issuer):
        return login(client, registered_issuer)

    @pytest.fixture
    def cert_hash(self, client, issuer_headers):
        return client.post("/certificates", json=ISSUE_BODY, headers=issuer_headers).json()["cert_hash"]

    def test_request_take_complete(self, client, admin, issuer_headers, cert_hash):
        created = client.post(
            "/certificate-requests",
            json={"cert_hash": cert_hash, "action": "revoke", "reason": "Wrong program"},
            headers=issuer_headers,
        )
        assert created.status_code == 201, created.text
        request_id = created.json()["id"]
        assert client.get("/certificate-requests/my/open/count", headers=issuer_headers).json() == {"count": 1}

        admin_headers = login(client, admin)
        assert client.get("/certificate-requests/pending/count", headers=admin_headers).json() == {"count": 1}
        taken = client.post(f"/certificate-requests/{request_id}/take", headers=admin_headers)
        assert taken.json()["status"] == "processing"

        done = client.post(f"/certificate-requests/{request_id}/complete", headers=admin_headers)
        assert done.status_code == 200, done.text
        assert done.json()["status"] == "completed"
        assert client.get(f"/certificates/{cert_hash}").json()["status"] == "revoked"

        history = client.get(f"/certificate-requests/certificate/{cert_hash}", headers=issuer_headers).json()
        assert [r["id"] for r in history] == [request_id]

    def test_duplicate_request_conflicts(self, client, issuer_headers, cert_hash):
        body = {"cert_hash": cert_hash, "action": "revoke", "reason": "Wrong program"}
        assert client.post("/certificate-requests", json=body, headers=issuer_headers).status_code == 201
        again = client.post("/certificate-requests", json=body, headers=issuer_headers)
        assert again.status_code == 409
        assert again.json()["error"] == "DuplicateActionRequest"

    def test_non_admin_cannot_take(self, client, issuer_headers, cert_hash):
        created = client.post(
            "/certificate-requests",
            json={"cert_hash": cert_hash, "action": "revoke", "reason": "Wrong program"},
            headers=issuer_headers,
        ).json()
        response = client.post(f"/certificate-requests/{created['id']}/take", headers=issuer_headers)
        assert response.status_code == 403

    def test_cancel(self, client, issuer_headers, cert_hash):
        created = client.post(
            "/certificate-requests",
            json={"cert_hash": cert_hash, "action": "revoke", "reason": "Wrong program"},
            headers=issuer_headers,
        ).json()
        assert client.post(f"/certificate-requests/{created['id']}/cancel", headers=issuer_headers).status_code == 204
        missing = client.get(f"/certificate-requests/{created['id']}", headers=issuer_headers)
        assert missing.status_code == 404

    def test_unknown_action(self, client, issuer_headers, cert_hash):
        response = client.post(
            "/certificate-requests",
            json={"cert_hash": cert_hash, "action": "delete", "reason": "x"},
            headers=issuer_headers,
        )
        assert response.status_code == 422


class TestLedgerFailures:

    def test_timeout_maps_to_503(self, store, ledger, admin, issuer):
        container = make_container(
            store, ledger, ledger_config=LedgerConfig(submit_timeout_seconds=0.1)
        )
        with TestClient(create_app(container, start_workers=False)) as client:
            headers = login(client, admin)
            ledger.confirmation_delay = 0.5
            response = client.post("/users", json={
                "address": issuer.address, "display_name": "Registrar", "email": "r@example.edu",
            }, headers=headers)
        assert response.status_code == 503
        assert response.json()["retryable"] is True
        assert response.headers["Retry-After"] == "5"

    def test_halted_indexer_reports_unhealthy(self, client, container, ledger, registered_issuer):
        headers = login(client, registered_issuer)
        client.post("/certificates", json=ISSUE_BODY, headers=headers)
        issued = ledger.events()[-1]
        ledger.append_raw(issued.model_copy(update={"payload": {**issued.payload, "program": "Forged"}}))
        with pytest.raises(ConsistencyViolation):
            container.indexer.run_once()

        response = client.get("/health/detailed")
        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"
