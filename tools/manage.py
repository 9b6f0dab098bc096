#!/usr/bin/env python3
"""
Credential Registry Management CLI

Commands for operating the registry:
- reconcile: Rebuild the accumulator from the ledger and republish the root
- show-root: Print the published root and the accumulator root
- verify-chain: Verify ledger chain integrity
- export-tree: Write the Merkle tree dump (standard-v1) to a file
- export-proof: Write a proof bundle for one assignment
- export-events: Export ledger events to JSON
- health-check: Run health checks

Configuration comes from the CREDREGISTRY_* environment variables.

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage verify-chain
    python -m tools.manage reconcile
    python -m tools.manage export-proof --user 0x... --credential-type-id 0
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _load_service(reconcile_on_start: bool = False):
    from credregistry.core.service import RegistryService
    from credregistry.db.config import RegistryConfig

    config = RegistryConfig.from_env()
    return RegistryService.load(
        config.create_ledger_store(),
        config.require_authority(),
        accumulator_store=config.create_accumulator_store(),
        max_name_length=config.max_name_length,
        sync_policy=config.sync_policy(),
        reconcile_on_start=reconcile_on_start,
    )


def cmd_reconcile(args):
    """Rebuild the accumulator from the ledger and republish its root."""
    from credregistry.core.errors import SyncPendingError

    service = _load_service()
    print(f"Ledger records: {service.assignments.count()}")

    try:
        root = service.reconcile(service.get_authority())
    except SyncPendingError as e:
        print(f"[FAIL] Reconcile failed after {e.attempts} attempts: {e.last_error}")
        return 1

    print("[OK] Reconciled")
    print(f"  Merkle root: {root}")
    print(f"  Leaves: {service.accumulator.leaf_count}")
    return 0


def cmd_show_root(args):
    """Print published and local roots."""
    service = _load_service()
    published = service.get_merkle_root()
    local = service.accumulator.root

    print(f"Published root:   {published}")
    print(f"Accumulator root: {local}")
    print(f"Leaves:           {service.accumulator.leaf_count}")

    if service.is_in_sync():
        print("[OK] In sync")
        return 0
    print("[WARN] Out of sync. Run: python -m tools.manage reconcile")
    return 1


def cmd_verify_chain(args):
    """Verify the integrity of the ledger chain."""
    from credregistry.db.config import RegistryConfig
    from credregistry.db.store import LedgerStoreError

    print("Loading ledger...")
    try:
        store = RegistryConfig.from_env().create_ledger_store()
        store.verify_chain()
    except LedgerStoreError as e:
        print(f"[FAIL] Chain integrity verification FAILED: {e}")
        return 1

    head = store.get_head()
    print(f"Ledger loaded: {store.get_event_count()} events")
    print("[OK] Chain integrity verified OK")
    if head.last_event_hash:
        print(f"  Chain head: {head.last_event_hash[:16]}...")
    return 0


def cmd_export_tree(args):
    """Write the Merkle tree dump to a file."""
    service = _load_service()
    dump = service.accumulator.dump()

    output_file = args.output or "merkleTree.export.json"
    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(dump, f, indent=2)

    print(f"[OK] Exported tree with {service.accumulator.leaf_count} leaves to {output_file}")
    print(f"  Root: {service.accumulator.root}")
    return 0


def cmd_export_proof(args):
    """Write a proof bundle that tools/verify.py can check offline."""
    from credregistry.core.errors import UnknownLeaf

    service = _load_service()
    try:
        proof = service.get_proof(args.user, args.credential_type_id)
    except UnknownLeaf as e:
        print(f"[FAIL] {e}")
        return 1

    bundle = {
        "userAddress": args.user.lower(),
        "credentialTypeId": args.credential_type_id,
        "merkleProof": proof,
        "merkleRoot": service.get_merkle_root(),
    }

    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(bundle, f, indent=2)
        print(f"[OK] Wrote proof bundle to {args.output}")
    else:
        print(json.dumps(bundle, indent=2))
    return 0


def cmd_export_events(args):
    """Export all ledger events to a JSON file."""
    from credregistry.db.config import RegistryConfig

    print("Loading events...")
    store = RegistryConfig.from_env().create_ledger_store()
    events = store.list_all()

    print(f"Found {len(events)} events")

    export_data = [event.model_dump(mode="json") for event in events]

    output_file = args.output or "ledger_export.json"
    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(export_data, f, indent=2)

    print(f"[OK] Exported {len(events)} events to {output_file}")
    return 0


def cmd_health_check(args):
    """Run comprehensive health checks."""
    from credregistry.db.config import RegistryConfig
    from credregistry.observability import check_health

    config = RegistryConfig.from_env()

    print("=== Credential Registry Health Check ===\n")

    print("Configuration:")
    print(f"  Authority: {config.authority or '[FAIL] not set'}")
    print(f"  Ledger: {config.ledger_driver.value} ({config.ledger_path})")
    print(f"  Accumulator: {config.accumulator_driver.value} ({config.accumulator_path})")
    if not config.authority:
        return 1

    status = check_health(_load_service())
    for name, check in status.checks.items():
        print(f"\n{name}:")
        for key, value in check.items():
            print(f"  {key}: {value}")

    print("\n=== Health Check Complete ===")
    return 0 if status.healthy else 1


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Credential Registry Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser(
        "reconcile",
        help="Rebuild the accumulator and republish the root"
    )

    subparsers.add_parser(
        "show-root",
        help="Show published and accumulator roots"
    )

    subparsers.add_parser(
        "verify-chain",
        help="Verify ledger chain integrity"
    )

    p_tree = subparsers.add_parser(
        "export-tree",
        help="Export the Merkle tree dump"
    )
    p_tree.add_argument("--output", "-o", help="Output file (default: merkleTree.export.json)")

    p_proof = subparsers.add_parser(
        "export-proof",
        help="Export a proof bundle for one assignment"
    )
    p_proof.add_argument("--user", required=True, help="User address")
    p_proof.add_argument("--credential-type-id", type=int, required=True, help="Credential type id")
    p_proof.add_argument("--output", "-o", help="Output file (default: stdout)")

    p_export = subparsers.add_parser(
        "export-events",
        help="Export all events to JSON"
    )
    p_export.add_argument("--output", "-o", help="Output file (default: ledger_export.json)")

    subparsers.add_parser(
        "health-check",
        help="Run comprehensive health checks"
    )

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "reconcile": cmd_reconcile,
        "show-root": cmd_show_root,
        "verify-chain": cmd_verify_chain,
        "export-tree": cmd_export_tree,
        "export-proof": cmd_export_proof,
        "export-events": cmd_export_events,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
