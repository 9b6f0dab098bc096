"""
Tests for the operator tools

The standalone verifier must agree with the service bit for bit, and the
management CLI must work against the same files the server uses.
"""

import json

import pytest

from credregistry.core.merkle import hash_pair as core_hash_pair
from credregistry.core.merkle import leaf_hash
from credregistry.core.service import RegistryService
from credregistry.db import FileAccumulatorStore, FileLedgerStore
from credregistry.observability import MetricsCollector
from tools import manage
from tools import verify as verify_tool
from tools.verify import ProofVerifier, TreeVerifier, VerificationResult

AUTHORITY = "0x" + "a" * 40
ALICE = "0x" + "1" * 40
BOB = "0x" + "2" * 40
CAROL = "0x" + "3" * 40


@pytest.fixture
def populated(service):
    service.create_credential_type(AUTHORITY, "Gold")
    service.create_credential_type(AUTHORITY, "Silver")
    for user, credential_type_id in ((ALICE, 0), (BOB, 1), (CAROL, 0)):
        service.assign_credential(AUTHORITY, user, credential_type_id)
    return service


def bundle_for(service, user, credential_type_id):
    return {
        "userAddress": user,
        "credentialTypeId": credential_type_id,
        "merkleProof": service.get_proof(user, credential_type_id),
        "merkleRoot": service.get_merkle_root(),
    }


class TestStandaloneHashing:
    """The verifier reimplements hashing without importing the package."""

    def test_leaf_matches_service(self):
        assert verify_tool.compute_leaf(ALICE, 5) == leaf_hash(ALICE, 5)

    def test_hash_pair_matches_service(self):
        a, b = leaf_hash(ALICE, 0), leaf_hash(BOB, 0)
        assert verify_tool.hash_pair(a, b) == core_hash_pair(a, b)


class TestProofVerifier:

    def test_valid_bundle(self, populated):
        report = ProofVerifier(bundle_for(populated, BOB, 1)).verify()
        assert report.result == VerificationResult.VERIFIED

    def test_wrong_root(self, populated):
        report = ProofVerifier(bundle_for(populated, BOB, 1), root="0x" + "0" * 64).verify()
        assert report.result == VerificationResult.REJECTED
        assert report.warnings

    def test_wrong_credential_type(self, populated):
        bundle = bundle_for(populated, BOB, 1)
        bundle["credentialTypeId"] = 0
        assert ProofVerifier(bundle).verify().result == VerificationResult.REJECTED

    def test_missing_keys(self):
        report = ProofVerifier({"userAddress": ALICE}).verify()
        assert report.result == VerificationResult.INVALID_FORMAT

    def test_missing_root(self, populated):
        bundle = bundle_for(populated, BOB, 1)
        del bundle["merkleRoot"]
        assert ProofVerifier(bundle).verify().result == VerificationResult.INVALID_FORMAT

    def test_malformed_proof(self, populated):
        bundle = bundle_for(populated, BOB, 1)
        bundle["merkleProof"] = ["0x1234"]
        assert ProofVerifier(bundle).verify().result == VerificationResult.INVALID_FORMAT


class TestTreeVerifier:

    def test_valid_tree(self, populated):
        report = TreeVerifier(populated.accumulator.dump()).verify()
        assert report.result == VerificationResult.VERIFIED
        assert report.details["root"] == populated.get_merkle_root()
        assert report.details["leaf_count"] == 3

    def test_empty_tree(self, service):
        report = TreeVerifier(service.accumulator.dump()).verify()
        assert report.result == VerificationResult.VERIFIED
        assert report.details["root"] is None

    def test_tampered_value(self, populated):
        dump = populated.accumulator.dump()
        dump["values"][0]["value"][1] = "1"
        assert TreeVerifier(dump).verify().result == VerificationResult.REJECTED

    def test_tampered_node(self, populated):
        dump = populated.accumulator.dump()
        dump["tree"][1] = "0x" + "0" * 64
        assert TreeVerifier(dump).verify().result == VerificationResult.REJECTED

    def test_unknown_format(self):
        report = TreeVerifier({"format": "v0"}).verify()
        assert report.result == VerificationResult.INVALID_FORMAT


class TestVerifyCli:

    def write(self, path, data):
        path.write_text(json.dumps(data), encoding="utf-8")
        return str(path)

    def test_bundle_verifies(self, populated, tmp_path, capsys):
        bundle = self.write(tmp_path / "proof.json", bundle_for(populated, ALICE, 0))
        assert verify_tool.main([bundle]) == 0
        assert "VERIFIED" in capsys.readouterr().out

    def test_api_envelope_accepted(self, populated, tmp_path):
        envelope = {"success": True, "data": bundle_for(populated, ALICE, 0)}
        assert verify_tool.main([self.write(tmp_path / "proof.json", envelope)]) == 0

    def test_bundle_against_tree(self, populated, tmp_path):
        bundle = bundle_for(populated, CAROL, 0)
        del bundle["merkleRoot"]
        bundle_path = self.write(tmp_path / "proof.json", bundle)
        tree_path = self.write(tmp_path / "merkleTree.json", populated.accumulator.dump())
        assert verify_tool.main([bundle_path, "--tree", tree_path]) == 0

    def test_rejected_exit_code(self, populated, tmp_path):
        bundle = self.write(tmp_path / "proof.json", bundle_for(populated, ALICE, 0))
        assert verify_tool.main([bundle, "--root", "0x" + "f" * 64]) == 1

    def test_json_output(self, populated, tmp_path, capsys):
        bundle = self.write(tmp_path / "proof.json", bundle_for(populated, ALICE, 0))
        verify_tool.main([bundle, "--json"])
        assert json.loads(capsys.readouterr().out)["result"] == "VERIFIED"

    def test_missing_file(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            verify_tool.main([str(tmp_path / "absent.json")])
        assert exc_info.value.code == 3

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "proof.json"
        path.write_text("{oops", encoding="utf-8")
        with pytest.raises(SystemExit) as exc_info:
            verify_tool.main([str(path)])
        assert exc_info.value.code == 3

    def test_no_arguments(self):
        assert verify_tool.main([]) == 3


class TestManageCli:
    """Management commands against file-backed stores."""

    @pytest.fixture
    def env(self, tmp_path, monkeypatch):
        ledger_path = tmp_path / "ledger.jsonl"
        tree_path = tmp_path / "merkleTree.json"
        monkeypatch.setenv("CREDREGISTRY_AUTHORITY", AUTHORITY)
        monkeypatch.setenv("CREDREGISTRY_LEDGER_PATH", str(ledger_path))
        monkeypatch.setenv("CREDREGISTRY_ACCUMULATOR_PATH", str(tree_path))
        monkeypatch.delenv("CREDREGISTRY_LEDGER_DRIVER", raising=False)
        monkeypatch.delenv("CREDREGISTRY_ACCUMULATOR_DRIVER", raising=False)

        service = RegistryService.load(
            FileLedgerStore(AUTHORITY, ledger_path),
            AUTHORITY,
            accumulator_store=FileAccumulatorStore(tree_path),
            metrics=MetricsCollector(),
        )
        service.create_credential_type(AUTHORITY, "Gold")
        service.assign_credential(AUTHORITY, ALICE, 0)
        service.assign_credential(AUTHORITY, BOB, 0)
        return {"service": service, "ledger": ledger_path, "tree": tree_path, "dir": tmp_path}

    def test_no_command(self, env):
        assert manage.main([]) == 1

    def test_verify_chain(self, env, capsys):
        assert manage.main(["verify-chain"]) == 0
        assert "Chain integrity verified" in capsys.readouterr().out

    def test_verify_chain_detects_tampering(self, env):
        lines = env["ledger"].read_text(encoding="utf-8").splitlines()
        event = json.loads(lines[1])
        event["payload"]["user"] = CAROL
        lines[1] = json.dumps(event)
        env["ledger"].write_text("\n".join(lines) + "\n", encoding="utf-8")

        assert manage.main(["verify-chain"]) == 1

    def test_show_root(self, env, capsys):
        assert manage.main(["show-root"]) == 0
        assert env["service"].get_merkle_root() in capsys.readouterr().out

    def test_reconcile(self, env):
        count = env["service"].store.get_event_count()
        assert manage.main(["reconcile"]) == 0
        reopened = FileLedgerStore(AUTHORITY, env["ledger"])
        assert reopened.get_event_count() == count + 1
        assert reopened.get_published_root() == env["service"].get_merkle_root()

    def test_export_proof_then_verify(self, env):
        output = env["dir"] / "proof.json"
        assert manage.main([
            "export-proof", "--user", BOB, "--credential-type-id", "0", "-o", str(output),
        ]) == 0
        assert verify_tool.main([str(output)]) == 0

    def test_export_proof_unknown(self, env):
        assert manage.main(["export-proof", "--user", BOB, "--credential-type-id", "7"]) == 1

    def test_export_tree(self, env):
        output = env["dir"] / "tree.json"
        assert manage.main(["export-tree", "-o", str(output)]) == 0
        assert verify_tool.main(["--tree", str(output)]) == 0

    def test_export_events(self, env):
        output = env["dir"] / "events.json"
        assert manage.main(["export-events", "-o", str(output)]) == 0
        events = json.loads(output.read_text(encoding="utf-8"))
        assert [e["event_type"] for e in events][:2] == [
            "CREDENTIAL_TYPE_CREATED",
            "CREDENTIAL_ASSIGNED",
        ]

    def test_health_check(self, env):
        assert manage.main(["health-check"]) == 0

    def test_health_check_without_authority(self, env, monkeypatch):
        monkeypatch.delenv("CREDREGISTRY_AUTHORITY")
        assert manage.main(["health-check"]) == 1
