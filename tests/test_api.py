"""
Tests for the HTTP API

Every response uses the {"success", "data" | "error"} envelope.
"""

import pytest
from fastapi.testclient import TestClient

from credregistry.core import SyncPolicy
from credregistry.core.service import RegistryService
from credregistry.db import InMemoryAccumulatorStore
from credregistry.main import create_app

AUTHORITY = "0x" + "a" * 40
STRANGER = "0x" + "b" * 40
ALICE = "0x" + "1" * 40
BOB = "0x" + "2" * 40

AS_AUTHORITY = {"X-Caller-Address": AUTHORITY}
AS_STRANGER = {"X-Caller-Address": STRANGER}


@pytest.fixture
def client(service):
    return TestClient(create_app(service=service))


@pytest.fixture
def seeded(client):
    client.post("/api/createCredentialType", json={"credentialTypeName": "Gold"}, headers=AS_AUTHORITY)
    client.post("/api/createCredentialType", json={"credentialTypeName": "Silver"}, headers=AS_AUTHORITY)
    return client


def assign(client, user, credential_type_id, headers=AS_AUTHORITY):
    return client.post(
        "/api/assignCredential",
        json={"userAddress": user, "credentialTypeId": credential_type_id},
        headers=headers,
    )


class TestCredentialTypeEndpoints:

    def test_create(self, client):
        response = client.post(
            "/api/createCredentialType",
            json={"credentialTypeName": "Gold"},
            headers=AS_AUTHORITY,
        )
        assert response.status_code == 201
        assert response.json() == {
            "success": True,
            "data": {"credentialTypeName": "Gold", "credentialTypeId": 0},
        }

    def test_create_requires_authority(self, client):
        response = client.post(
            "/api/createCredentialType",
            json={"credentialTypeName": "Gold"},
            headers=AS_STRANGER,
        )
        assert response.status_code == 403
        assert response.json()["success"] is False

    def test_create_without_caller(self, client):
        response = client.post("/api/createCredentialType", json={"credentialTypeName": "Gold"})
        assert response.status_code == 403

    def test_create_invalid_name(self, client):
        response = client.post(
            "/api/createCredentialType",
            json={"credentialTypeName": ""},
            headers=AS_AUTHORITY,
        )
        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Credential name cannot be empty"}

    def test_create_duplicate_name(self, seeded):
        response = seeded.post(
            "/api/createCredentialType",
            json={"credentialTypeName": "Gold"},
            headers=AS_AUTHORITY,
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Credential name must be unique"

    def test_create_missing_field(self, client):
        response = client.post("/api/createCredentialType", json={}, headers=AS_AUTHORITY)
        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert "credentialTypeName" in body["error"]

    def test_list_and_count(self, seeded):
        count = seeded.get("/api/getNumberOfCredentialTypes").json()
        assert count["data"]["numberOfCredentialTypes"] == 2

        types = seeded.get("/api/getCredentialTypes").json()
        assert types["data"]["credentialTypes"] == [
            {"id": 0, "name": "Gold"},
            {"id": 1, "name": "Silver"},
        ]

    def test_get_one(self, seeded):
        response = seeded.get("/api/getCredentialType/1")
        assert response.status_code == 200
        assert response.json()["data"]["credentialType"] == {"id": 1, "name": "Silver"}

    def test_get_unknown(self, seeded):
        response = seeded.get("/api/getCredentialType/5")
        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Invalid credential type ID: 5"}

    def test_get_non_integer_id(self, seeded):
        response = seeded.get("/api/getCredentialType/gold")
        assert response.status_code == 422
        assert response.json()["success"] is False


class TestAssignmentEndpoints:

    def test_assign(self, seeded):
        response = assign(seeded, ALICE, 0)
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["userAddress"] == ALICE
        assert data["credentialTypeId"] == 0
        assert data["merkleRoot"] == seeded.get("/api/getMerkleRoot").json()["data"]["merkleRoot"]

    def test_assign_normalizes_address(self, seeded):
        mixed = "0x" + "AbCdEf0123" * 4
        response = assign(seeded, mixed, 0)
        assert response.json()["data"]["userAddress"] == mixed.lower()

    def test_assign_requires_authority(self, seeded):
        assert assign(seeded, ALICE, 0, headers=AS_STRANGER).status_code == 403

    def test_assign_unknown_type(self, seeded):
        assert assign(seeded, ALICE, 9).status_code == 404

    def test_assign_duplicate(self, seeded):
        assign(seeded, ALICE, 0)
        response = assign(seeded, ALICE, 0)
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_assign_malformed_address(self, seeded):
        response = assign(seeded, "0x1234", 0)
        assert response.status_code == 422
        assert "userAddress" in response.json()["error"]

    def test_assign_negative_id(self, seeded):
        assert assign(seeded, ALICE, -1).status_code == 422

    def test_user_credential_types(self, seeded):
        assign(seeded, ALICE, 1)
        assign(seeded, ALICE, 0)
        response = seeded.get(f"/api/getUserCredentialsTypes/{ALICE}")
        assert response.json()["data"]["userCredentialTypes"] == [
            {"id": 1, "name": "Silver"},
            {"id": 0, "name": "Gold"},
        ]

    def test_user_without_credentials(self, seeded):
        response = seeded.get(f"/api/getUserCredentialsTypes/{BOB}")
        assert response.status_code == 200
        assert response.json()["data"]["userCredentialTypes"] == []


class TestVerificationEndpoints:

    def test_proof_round_trip(self, seeded):
        assign(seeded, ALICE, 0)
        assign(seeded, BOB, 1)

        proof = seeded.get(f"/api/getProof/{ALICE}/0").json()["data"]
        assert proof["userAddress"] == ALICE
        assert proof["merkleRoot"] == seeded.get("/api/getMerkleRoot").json()["data"]["merkleRoot"]

        response = seeded.post(
            "/api/verifyCredential",
            json={
                "userAddress": ALICE,
                "credentialTypeId": 0,
                "merkleProof": proof["merkleProof"],
            },
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "data": {"verificationStatus": True}}

    def test_verify_unassigned(self, seeded):
        assign(seeded, ALICE, 0)
        response = seeded.post(
            "/api/verifyCredential",
            json={"userAddress": BOB, "credentialTypeId": 0, "merkleProof": []},
        )
        assert response.status_code == 200
        assert response.json()["data"]["verificationStatus"] is False

    def test_verify_garbage_proof(self, seeded):
        assign(seeded, ALICE, 0)
        response = seeded.post(
            "/api/verifyCredential",
            json={"userAddress": ALICE, "credentialTypeId": 0, "merkleProof": ["nonsense"]},
        )
        assert response.json()["data"]["verificationStatus"] is False

    def test_proof_for_unassigned(self, seeded):
        response = seeded.get(f"/api/getProof/{ALICE}/0")
        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_merkle_root_before_assignments(self, seeded):
        assert seeded.get("/api/getMerkleRoot").json() == {
            "success": True,
            "data": {"merkleRoot": None},
        }

    def test_owner_address(self, client):
        response = client.get("/api/getOwnerAddress")
        assert response.json()["data"]["ownerAddress"] == AUTHORITY


class TestReconcileEndpoint:

    def test_reconcile(self, seeded):
        assign(seeded, ALICE, 0)
        root = seeded.get("/api/getMerkleRoot").json()["data"]["merkleRoot"]

        response = seeded.post("/api/reconcile", headers=AS_AUTHORITY)
        assert response.status_code == 200
        assert response.json()["data"] == {"merkleRoot": root, "leafCount": 1}

    def test_reconcile_requires_authority(self, seeded):
        assert seeded.post("/api/reconcile", headers=AS_STRANGER).status_code == 403


class TestSyncPendingResponses:
    """A recorded assignment whose root could not be published."""

    @pytest.fixture
    def flaky_client(self, metrics, flaky_accumulator_store, flaky_ledger_store):
        store = flaky_ledger_store()
        accumulator_store = flaky_accumulator_store()
        service = RegistryService(
            store,
            AUTHORITY,
            accumulator_store=accumulator_store,
            sync_policy=SyncPolicy(max_attempts=2),
            metrics=metrics,
        )
        service.create_credential_type(AUTHORITY, "Gold")
        client = TestClient(create_app(service=service))
        return client, store, accumulator_store

    def test_assign_returns_accepted(self, flaky_client):
        client, _, accumulator_store = flaky_client
        accumulator_store.failures = 2

        response = assign(client, ALICE, 0)
        assert response.status_code == 202
        body = response.json()
        assert body["success"] is True
        assert body["data"]["verificationPending"] is True
        assert body["data"]["userAddress"] == ALICE

        types = client.get(f"/api/getUserCredentialsTypes/{ALICE}").json()["data"]
        assert types["userCredentialTypes"] == [{"id": 0, "name": "Gold"}]

    def test_reconcile_failure_is_unavailable(self, flaky_client):
        client, store, _ = flaky_client
        assign(client, ALICE, 0)
        store.publish_failures = 2

        response = client.post("/api/reconcile", headers=AS_AUTHORITY)
        assert response.status_code == 503
        assert response.json()["success"] is False

    def test_reconcile_restores_verification(self, flaky_client):
        client, store, _ = flaky_client
        store.publish_failures = 2
        assert assign(client, ALICE, 0).status_code == 202

        assert client.post("/api/reconcile", headers=AS_AUTHORITY).status_code == 200
        proof = client.get(f"/api/getProof/{ALICE}/0").json()["data"]["merkleProof"]
        response = client.post(
            "/api/verifyCredential",
            json={"userAddress": ALICE, "credentialTypeId": 0, "merkleProof": proof},
        )
        assert response.json()["data"]["verificationStatus"] is True


class TestSystemEndpoints:

    def test_health(self, seeded):
        assign(seeded, ALICE, 0)
        response = seeded.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["accumulator"]["in_sync"] is True

    def test_metrics(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "credentials_assigned" in response.json()

    def test_request_id_header(self, client):
        response = client.get("/api/getOwnerAddress", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"
