#!/usr/bin/env python3
"""
Credential Registry Proof Verifier

A standalone tool to verify credential proofs and tree dumps independently.
No server connection required - verification is cryptographic.

Inputs:
    proof bundle  - the data object returned by GET /api/getProof:
                    {"userAddress", "credentialTypeId", "merkleProof", "merkleRoot"}
    tree dump     - a standard-v1 Merkle tree file (merkleTree.json)

Usage:
    python verify.py proof.json
    python verify.py proof.json --root 0x...
    python verify.py --tree merkleTree.json
    python verify.py proof.json --tree merkleTree.json --json

Exit codes:
    0 - VERIFIED: All checks passed
    1 - REJECTED: Proof does not reach the root, or the tree is inconsistent
    3 - INVALID_FORMAT: Input structure invalid
"""

import argparse
import hashlib
import hmac
import json
import re
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional


# ============================================================
# Result Types
# ============================================================

class VerificationResult(Enum):
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    INVALID_FORMAT = "INVALID_FORMAT"


@dataclass
class VerificationReport:
    result: VerificationResult
    checks_passed: list[str] = field(default_factory=list)
    checks_failed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)


# ============================================================
# Leaf and Node Hashing
# ============================================================
#
# MUST match credregistry/core/merkle.py exactly for proofs to verify:
# - leaf = SHA256(SHA256(word(address) ++ word(credential_type_id)))
# - word(address): 12 zero bytes then the 20 address bytes
# - word(id): 32-byte big-endian
# - node = SHA256(min(a, b) ++ max(a, b))

TREE_FORMAT = "standard-v1"
LEAF_ENCODING = ["address", "uint256"]

_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")
_HASH = re.compile(r"^0x[0-9a-fA-F]{64}$")


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def _parse_hash(value: Any) -> bytes:
    if not isinstance(value, str) or not _HASH.match(value):
        raise ValueError(f"Not a 32-byte 0x-hex hash: {value!r}")
    return bytes.fromhex(value[2:])


def compute_leaf(user: str, credential_type_id: int) -> bytes:
    if not isinstance(user, str) or not _ADDRESS.match(user):
        raise ValueError(f"Not an address: {user!r}")
    if not isinstance(credential_type_id, int) or not 0 <= credential_type_id < 2**256:
        raise ValueError(f"Not a uint256: {credential_type_id!r}")
    encoded = bytes.fromhex(user[2:]).rjust(32, b"\x00") + credential_type_id.to_bytes(32, "big")
    return _sha256(_sha256(encoded))


def hash_pair(a: bytes, b: bytes) -> bytes:
    return _sha256(a + b) if a <= b else _sha256(b + a)


def process_proof(leaf: bytes, proof: list[bytes]) -> bytes:
    current = leaf
    for sibling in proof:
        current = hash_pair(current, sibling)
    return current


# ============================================================
# Verifiers
# ============================================================

class ProofVerifier:
    """Checks a proof bundle against a root."""

    def __init__(self, bundle: dict, root: Optional[str] = None, verbose: bool = False):
        self.bundle = bundle
        self.root = root
        self.verbose = verbose
        self.report = VerificationReport(result=VerificationResult.VERIFIED)

    def log(self, msg: str):
        if self.verbose:
            print(f"  {msg}")

    def verify(self) -> VerificationReport:
        report = self.report

        self.log("Checking proof bundle structure...")
        required = ["userAddress", "credentialTypeId", "merkleProof"]
        missing = [k for k in required if k not in self.bundle]
        if missing:
            report.checks_failed.append(f"Missing required keys: {missing}")
            report.result = VerificationResult.INVALID_FORMAT
            return report

        root = self.root or self.bundle.get("merkleRoot")
        if not root:
            report.checks_failed.append("No root given and none in the bundle")
            report.result = VerificationResult.INVALID_FORMAT
            return report
        if self.root and self.bundle.get("merkleRoot") and self.bundle["merkleRoot"] != self.root:
            report.warnings.append("Bundle was issued against a different root")

        try:
            leaf = compute_leaf(self.bundle["userAddress"], self.bundle["credentialTypeId"])
            proof = [_parse_hash(p) for p in self.bundle["merkleProof"]]
            expected = _parse_hash(root)
        except (TypeError, ValueError) as e:
            report.checks_failed.append(f"Malformed bundle: {e}")
            report.result = VerificationResult.INVALID_FORMAT
            return report
        report.checks_passed.append("Proof bundle structure valid")

        report.details.update({
            "user": self.bundle["userAddress"].lower(),
            "credential_type_id": self.bundle["credentialTypeId"],
            "leaf": "0x" + leaf.hex(),
            "proof_length": len(proof),
            "root": root.lower(),
        })

        self.log("Folding proof...")
        computed = process_proof(leaf, proof)
        if hmac.compare_digest(computed, expected):
            report.checks_passed.append("Proof reaches the root")
        else:
            report.checks_failed.append(
                f"Proof reaches 0x{computed.hex()[:16]}..., not {root[:18]}..."
            )
            report.result = VerificationResult.REJECTED
        return report


class TreeVerifier:
    """Checks a standard-v1 tree dump for internal consistency."""

    def __init__(self, dump: dict, verbose: bool = False):
        self.dump = dump
        self.verbose = verbose
        self.report = VerificationReport(result=VerificationResult.VERIFIED)

    def log(self, msg: str):
        if self.verbose:
            print(f"  {msg}")

    def verify(self) -> VerificationReport:
        report = self.report

        self.log("Checking tree structure...")
        if self.dump.get("format") != TREE_FORMAT:
            report.checks_failed.append(f"Unknown format: {self.dump.get('format')!r}")
            report.result = VerificationResult.INVALID_FORMAT
            return report
        if self.dump.get("leafEncoding") != LEAF_ENCODING:
            report.checks_failed.append(f"Unexpected leaf encoding: {self.dump.get('leafEncoding')!r}")
            report.result = VerificationResult.INVALID_FORMAT
            return report

        try:
            nodes = [_parse_hash(n) for n in self.dump.get("tree", [])]
            values = [
                (v["value"][0], int(v["value"][1]), int(v["treeIndex"]))
                for v in self.dump.get("values", [])
            ]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            report.checks_failed.append(f"Malformed tree: {e}")
            report.result = VerificationResult.INVALID_FORMAT
            return report

        if not nodes and not values:
            report.checks_passed.append("Empty tree")
            report.details.update({"root": None, "leaf_count": 0})
            return report

        if len(nodes) != 2 * len(values) - 1:
            report.checks_failed.append(
                f"{len(nodes)} nodes cannot hold {len(values)} leaves"
            )
            report.result = VerificationResult.REJECTED
            return report
        report.checks_passed.append("Tree structure valid")

        self.log("Recomputing internal nodes...")
        first_leaf = len(nodes) - len(values)
        for i in range(first_leaf):
            if nodes[i] != hash_pair(nodes[2 * i + 1], nodes[2 * i + 2]):
                report.checks_failed.append(f"Node {i} does not match its children")
        if not report.checks_failed:
            report.checks_passed.append(f"All {first_leaf} internal nodes verified")

        self.log("Recomputing leaves...")
        seen = set()
        for user, credential_type_id, tree_index in values:
            if not first_leaf <= tree_index < len(nodes) or tree_index in seen:
                report.checks_failed.append(f"Bad tree index {tree_index} for {user}/{credential_type_id}")
                continue
            seen.add(tree_index)
            try:
                leaf = compute_leaf(user, credential_type_id)
            except ValueError as e:
                report.checks_failed.append(f"Bad value at tree index {tree_index}: {e}")
                continue
            if leaf != nodes[tree_index]:
                report.checks_failed.append(f"Leaf for {user}/{credential_type_id} does not match")
            else:
                self.log(f"  {user} / {credential_type_id}: leaf verified [OK]")

        if report.checks_failed:
            report.result = VerificationResult.REJECTED
        else:
            report.checks_passed.append(f"All {len(values)} leaves verified")

        report.details.update({"root": "0x" + nodes[0].hex(), "leaf_count": len(values)})
        return report


def combine(reports: list[VerificationReport]) -> VerificationReport:
    """Merge reports. The worst result wins."""
    order = [
        VerificationResult.VERIFIED,
        VerificationResult.REJECTED,
        VerificationResult.INVALID_FORMAT,
    ]
    combined = VerificationReport(result=VerificationResult.VERIFIED)
    for report in reports:
        if order.index(report.result) > order.index(combined.result):
            combined.result = report.result
        combined.checks_passed.extend(report.checks_passed)
        combined.checks_failed.extend(report.checks_failed)
        combined.warnings.extend(report.warnings)
        combined.details.update(report.details)
    return combined


# ============================================================
# CLI
# ============================================================

def print_report(report: VerificationReport, json_output: bool = False):
    """Print verification report."""

    if json_output:
        output = {
            "result": report.result.value,
            "checks_passed": report.checks_passed,
            "checks_failed": report.checks_failed,
            "warnings": report.warnings,
            "details": report.details,
        }
        print(json.dumps(output, indent=2))
        return

    banners = {
        VerificationResult.VERIFIED: "[VERIFIED] - All checks passed",
        VerificationResult.REJECTED: "[REJECTED] - Proof or tree does not verify",
        VerificationResult.INVALID_FORMAT: "[INVALID_FORMAT] - Input structure invalid",
    }
    print("\n" + "=" * 60)
    print(f"  {banners[report.result]}")
    print("=" * 60)

    for key, value in report.details.items():
        print(f"{key + ':':20} {value}")

    if report.checks_passed:
        print("\nPassed:")
        for check in report.checks_passed:
            print(f"  + {check}")

    if report.checks_failed:
        print("\nFailed:")
        for check in report.checks_failed:
            print(f"  - {check}")

    if report.warnings:
        print("\nWarnings:")
        for warning in report.warnings:
            print(f"  ! {warning}")

    print()


def _load_json(path: str) -> dict:
    file_path = Path(path)
    if not file_path.exists():
        print(f"ERROR: File not found: {file_path}")
        sys.exit(3)
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        print(f"ERROR: Invalid JSON: {e}")
        sys.exit(3)
    except OSError as e:
        print(f"ERROR: Failed to read file: {e}")
        sys.exit(3)
    if not isinstance(data, dict):
        print("ERROR: Expected a JSON object")
        sys.exit(3)
    # Accept a whole API response as well as its data object
    if data.get("success") is True and isinstance(data.get("data"), dict):
        data = data["data"]
    return data


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Verify a credential registry proof bundle or tree dump",
        epilog="Exit codes: 0=VERIFIED, 1=REJECTED, 3=INVALID_FORMAT"
    )
    parser.add_argument(
        "bundle",
        nargs="?",
        help="Path to a proof bundle JSON file"
    )
    parser.add_argument(
        "--root",
        help="Root to verify against (default: the bundle's merkleRoot, or the tree's root)"
    )
    parser.add_argument(
        "--tree",
        help="Path to a standard-v1 tree dump"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show detailed verification progress"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output result as JSON"
    )

    args = parser.parse_args(argv)

    if not args.bundle and not args.tree:
        parser.print_help()
        return 3

    reports = []
    root = args.root

    if args.tree:
        tree_report = TreeVerifier(_load_json(args.tree), verbose=args.verbose).verify()
        reports.append(tree_report)
        if root is None:
            root = tree_report.details.get("root")

    if args.bundle:
        reports.append(
            ProofVerifier(_load_json(args.bundle), root=root, verbose=args.verbose).verify()
        )

    report = combine(reports)
    print_report(report, json_output=args.json)

    exit_codes = {
        VerificationResult.VERIFIED: 0,
        VerificationResult.REJECTED: 1,
        VerificationResult.INVALID_FORMAT: 3,
    }
    return exit_codes[report.result]


if __name__ == "__main__":
    sys.exit(main())
