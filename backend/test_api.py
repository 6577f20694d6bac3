"""
Test suite for the IRMA connector API
"""

import time

import httpx
import pytest
from fastapi.testclient import TestClient

import api
from irma_connector import ConnectorSettings, HttpClaimStore, IrmaClient


TOKEN = "apiSessionToken00001"


class FakeIrmaServer:
    """Minimal IRMA server, statuses served in order with the last one repeating"""

    def __init__(self, statuses=("DONE",), start_status=200):
        self.statuses = list(statuses)
        self.start_status = start_status
        self.deleted = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path == "/session":
            if self.start_status != 200:
                return httpx.Response(self.start_status, text="rejected")
            return httpx.Response(200, json={"token": TOKEN, "sessionPtr": {"u": "https://irma.test/s", "irmaqr": "issuing"}})
        if request.method == "GET" and path == f"/session/{TOKEN}/status":
            status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            return httpx.Response(200, json=status)
        if request.method == "GET" and path == f"/session/{TOKEN}/result":
            return httpx.Response(200, json={"token": TOKEN, "status": "DONE", "type": "issuing", "proofStatus": "VALID"})
        if request.method == "DELETE" and path == f"/session/{TOKEN}":
            self.deleted = True
            return httpx.Response(204)
        return httpx.Response(404)


class TestClaimEndpoints:
    """Test claim endpoints"""

    def setup_method(self):
        api.settings = ConnectorSettings(STORE_ENDPOINT="memory://")
        api.sessions.clear()

    def test_info(self):
        with TestClient(api.app) as client:
            response = client.get("/api/info")

            assert response.status_code == 200
            assert response.json()["name"] == "IRMA"

    def test_claim_and_read(self):
        """Test a claim can be made, read and resolved"""
        with TestClient(api.app) as client:
            key = api.connector.key_manager.generate_ed25519()

            response = client.post("/api/claims", json={"did": key.did, "privkey": key.private_key, "data": {"need": "beer"}})
            assert response.status_code == 200
            link = response.json()["link"]
            assert link.startswith("link:discipl:irma:")

            read = client.post("/api/claims/read", json={"link": link})
            assert read.json() == {"data": {"need": "beer"}, "previous": None}

            owner = client.get(f"/api/claims/{link}/did")
            assert owner.json()["did"] == key.did

            latest = client.get(f"/api/dids/{key.did}/latest")
            assert latest.json()["link"] == link

            print(f"✅ Claim via API: {link}")

    def test_claim_errors(self):
        with TestClient(api.app) as client:
            key = api.connector.key_manager.generate_ed25519()
            other = api.connector.key_manager.generate_ed25519()

            bad_did = client.post("/api/claims", json={"did": "did:web:example", "privkey": "x", "data": 1})
            assert bad_did.status_code == 400

            wrong_key = client.post("/api/claims", json={"did": key.did, "privkey": other.private_key, "data": 1})
            assert wrong_key.status_code == 403

    def test_lookup_errors(self):
        with TestClient(api.app) as client:
            key = api.connector.key_manager.generate_ed25519()

            assert client.get(f"/api/dids/{key.did}/latest").status_code == 404
            assert client.get("/api/claims/link:discipl:irma:AAAA/did").status_code == 404
            assert client.get("/api/claims/link:discipl:other:AAAA/did").status_code == 400
            assert client.post("/api/claims/read", json={"link": "garbage"}).status_code == 400

    def test_store_failure_is_bad_gateway(self):
        """Test store failures map to 502 on every lookup"""
        def handler(request):
            return httpx.Response(500)

        with TestClient(api.app) as client:
            key = api.connector.key_manager.generate_ed25519()
            api.connector.configure(HttpClaimStore("http://store.test", transport=httpx.MockTransport(handler)))

            assert client.get(f"/api/dids/{key.did}/latest").status_code == 502
            assert client.get("/api/claims/link:discipl:irma:AAAA/did").status_code == 502
            assert client.post("/api/claims/read", json={"link": "link:discipl:irma:AAAA"}).status_code == 502


class TestSessionEndpoints:
    """Test IRMA session endpoints"""

    def setup_method(self):
        api.settings = ConnectorSettings(
            STORE_ENDPOINT="memory://",
            POLL_INTERVAL=0.01,
            PENDING_TIMEOUT=2,
            CONNECTED_TIMEOUT=2
        )
        api.sessions.clear()

    def use_server(self, server: FakeIrmaServer):
        api.irma_client = IrmaClient("https://irma.test", transport=httpx.MockTransport(server.handler))

    def wait_for(self, client, token, predicate):
        for _ in range(200):
            body = client.get(f"/api/sessions/{token}").json()
            if predicate(body):
                return body
            time.sleep(0.02)
        pytest.fail(f"Session {token} never settled: {body}")

    def test_issue_and_claim(self):
        """Test a Done issuance session is recorded as a claim"""
        server = FakeIrmaServer(statuses=["INITIALIZED", "CONNECTED", "DONE"])
        with TestClient(api.app) as client:
            self.use_server(server)
            key = api.connector.key_manager.generate_ed25519()

            response = client.post("/api/sessions/issue", json={
                "credential": "irma-demo.discipl.demoBVV",
                "attributes": {"a": 1, "b": 2},
                "claim_as": {"did": key.did, "privkey": key.private_key}
            })
            assert response.status_code == 200
            assert response.json()["token"] == TOKEN
            assert response.json()["status"] == "Pending"

            body = self.wait_for(client, TOKEN, lambda b: b["link"] or b["error"])

            assert body["status"] == "Done"
            assert body["error"] is None
            assert body["attributes"] == {"a": 1, "b": 2}
            assert body["history"] == ["Initialized", "Pending", "Connected", "Done"]

            read = client.post("/api/claims/read", json={"link": body["link"]})
            assert read.json()["data"] == {"a": 1, "b": 2}

    def test_demo_issuance(self):
        server = FakeIrmaServer(statuses=["DONE"])
        with TestClient(api.app) as client:
            self.use_server(server)

            response = client.post("/api/sessions/demo")
            assert response.status_code == 200

            body = self.wait_for(client, TOKEN, lambda b: b["status"] == "Done")
            assert body["attributes"]["debtCollector"] == "Sanne Voorspoed"
            assert body["link"] is None

    def test_cancel_session(self):
        """Test aborting a running session"""
        server = FakeIrmaServer(statuses=["INITIALIZED"])
        with TestClient(api.app) as client:
            self.use_server(server)

            client.post("/api/sessions/issue", json={"credential": "irma-demo.discipl.demoBVV", "attributes": {"a": 1}})
            response = client.delete(f"/api/sessions/{TOKEN}")

            assert response.status_code == 200
            assert response.json()["status"] == "Cancelled"
            assert server.deleted == True

            body = self.wait_for(client, TOKEN, lambda b: b["error"] is not None)
            assert body["status"] == "Cancelled"

    def test_registration_failure(self):
        server = FakeIrmaServer(start_status=401)
        with TestClient(api.app) as client:
            self.use_server(server)

            response = client.post("/api/sessions/disclose", json={"attributes": ["pbdf.gemeente.personalData.fullname"]})

            assert response.status_code == 502
            assert api.sessions == {}

    def test_claim_as_checked_before_session(self):
        server = FakeIrmaServer()
        with TestClient(api.app) as client:
            self.use_server(server)
            key = api.connector.key_manager.generate_ed25519()
            other = api.connector.key_manager.generate_ed25519()

            response = client.post("/api/sessions/issue", json={
                "credential": "irma-demo.discipl.demoBVV",
                "attributes": {"a": 1},
                "claim_as": {"did": key.did, "privkey": other.private_key}
            })

            assert response.status_code == 403
            assert api.sessions == {}

    def test_unknown_session(self):
        with TestClient(api.app) as client:
            assert client.get("/api/sessions/nope").status_code == 404
            assert client.delete("/api/sessions/nope").status_code == 404

    def test_finished_session_is_discarded(self):
        """Test a terminal session leaves the registry after the retention period"""
        api.settings = ConnectorSettings(
            STORE_ENDPOINT="memory://",
            POLL_INTERVAL=0.01,
            PENDING_TIMEOUT=2,
            CONNECTED_TIMEOUT=2,
            SESSION_RETENTION=0
        )
        server = FakeIrmaServer(statuses=["CANCELLED"])
        with TestClient(api.app) as client:
            self.use_server(server)

            assert client.post("/api/sessions/demo").status_code == 200

            for _ in range(200):
                if client.get(f"/api/sessions/{TOKEN}").status_code == 404:
                    break
                time.sleep(0.02)

            assert client.get(f"/api/sessions/{TOKEN}").status_code == 404
            assert api.sessions == {}
            assert server.deleted == True
