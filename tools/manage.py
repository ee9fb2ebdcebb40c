#!/usr/bin/env python3
"""
audittrail Management CLI

Commands for operating the audit trail:
- init-schema: Create the PostgreSQL table and append-only trigger
- verify-chain: Verify chain integrity (whole chain or a seeded suffix)
- export-entries: Export a verification bundle to JSON
- checkpoint: Verify the chain and record a checkpoint
- purge: Delete entries before a checkpoint
- generate-keys: Generate an Ed25519 keypair for signing exports
- health-check: Run health checks

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init-schema
    python -m tools.manage verify-chain
    python -m tools.manage verify-chain --from 1200 --seed 9f86d0...
    python -m tools.manage export-entries -o bundle.json
    python -m tools.manage purge --before 1200
"""

import argparse
import json
import os
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def cmd_init_schema(args):
    """Create the audit_entries table."""
    from audittrail.db.store import PostgresAuditStore
    from audittrail.shared_trail import create_store

    store = create_store()
    if not isinstance(store, PostgresAuditStore):
        print("[FAIL] No PostgreSQL database configured (set DATABASE_URL)")
        return 1

    store.create_schema()
    print("[OK] Schema created")
    return 0


def _report_broken_chain(broken_at, failure, reason) -> int:
    print("[FAIL] Chain integrity verification FAILED!")
    print(f"  Broken at: {broken_at}")
    print(f"  Failure: {failure}")
    print(f"  Reason: {reason}")
    return 1


def cmd_verify_chain(args):
    """Verify the integrity of the audit chain, read-only."""
    from audittrail import shared_trail
    from audittrail.core import ChainVerifier, IntegrityError

    verifier = ChainVerifier(shared_trail.open_store())

    try:
        result = verifier.verify(from_index=args.from_index, expected_seed_hash=args.seed)
    except ValueError as e:
        print(f"[FAIL] {e}")
        return 2
    except IntegrityError as e:
        # store.latest() found more than one entry at the maximal index
        return _report_broken_chain(e.sequence_index, e.kind, str(e))

    if result.valid:
        print(f"[OK] Chain integrity verified ({result.entries_checked} entries)")
        if result.checkpoint_index is not None:
            print(f"  Anchored at checkpoint: {result.checkpoint_index}")
        if result.last_hash:
            print(f"  Last verified: {result.last_sequence_index} {result.last_hash}")
        return 0

    return _report_broken_chain(result.broken_at, result.failure, result.reason)


def cmd_export_entries(args):
    """Export a verification bundle to a JSON file."""
    from audittrail.shared_trail import get_trail

    trail = get_trail()
    bundle = trail.export_bundle(from_index=args.from_index)

    output_file = args.output or "audit_export.json"
    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(bundle, f, indent=2)

    signed = "signed" if bundle["signature"] else "unsigned"
    print(f"[OK] Exported {bundle['manifest']['entry_count']} entries to {output_file} ({signed})")
    return 0


def cmd_checkpoint(args):
    """Verify the chain and record a checkpoint."""
    from audittrail.core import IntegrityError
    from audittrail.shared_trail import get_trail

    trail = get_trail()

    try:
        entry = trail.checkpoint(actor_id=args.actor)
    except IntegrityError as e:
        print(f"[FAIL] Chain does not verify, no checkpoint recorded: {e}")
        return 1
    except ValueError as e:
        print(f"[FAIL] {e}")
        return 1

    print(f"[OK] Checkpoint recorded at sequence {entry.sequence_index}")
    print(f"  Summarizes: {entry.entity_id}")
    return 0


def cmd_purge(args):
    """Delete every entry before a checkpoint."""
    from audittrail.core import IntegrityError
    from audittrail.shared_trail import get_trail

    trail = get_trail()

    if not args.yes:
        answer = input(f"Permanently delete all entries before {args.before}? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted.")
            return 1

    try:
        entry = trail.purge_before(args.before, actor_id=args.actor)
    except IntegrityError as e:
        print(f"[FAIL] Checkpoint range does not verify, nothing purged: {e}")
        return 1
    except ValueError as e:
        print(f"[FAIL] {e}")
        return 1

    print(f"[OK] Purged {entry.entity_id} entries before {args.before}")
    print(f"  Purge recorded at sequence {entry.sequence_index}")
    return 0


def cmd_generate_keys(args):
    """Generate an Ed25519 keypair for signing exports."""
    from audittrail.core import Signer

    private_key, public_key = Signer.generate_keypair()

    print("\n  Public key (publish for bundle verification):")
    print(f"  {public_key}")
    print("\n  Private key (KEEP SECRET!):")
    print(f"  {private_key}")
    print("\n  Set these environment variables:")
    print(f"  AUDITTRAIL_EXPORT_PRIVATE_KEY={private_key}")
    print(f"  AUDITTRAIL_EXPORT_PUBLIC_KEY={public_key}")
    return 0


def cmd_health_check(args):
    """Run comprehensive health checks."""
    from audittrail import shared_trail
    from audittrail.db.config import AuditStoreDriver, get_store_driver
    from audittrail.observability import check_health

    driver = get_store_driver()

    print("=== audittrail Health Check ===\n")

    print("Store:")
    if driver == AuditStoreDriver.MEMORY:
        print("  Type: In-Memory")
    else:
        config = shared_trail.database_config()
        print(f"  Type: PostgreSQL ({driver.value})")
        print(f"  Host: {config.host}:{config.port}")
        print(f"  Database: {config.database}")

    status = check_health(store=shared_trail.open_store(), verify_chain=True)

    for name, check in status.checks.items():
        marker = "[OK]" if check.get("status") == "healthy" else "[FAIL]"
        print(f"  {name}: {marker}")
        if "error" in check:
            print(f"    {check['error']}")

    print("\nEnvironment:")
    if os.environ.get("AUDITTRAIL_EXPORT_PRIVATE_KEY"):
        print("  Export signing key: [OK] Set")
    else:
        print("  Export signing key: [WARN] Not set (bundles are unsigned)")

    print("\n=== Health Check Complete ===")
    return 0 if status.healthy else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="audittrail Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser(
        "init-schema",
        help="Create the PostgreSQL schema"
    )

    p_verify = subparsers.add_parser(
        "verify-chain",
        help="Verify chain integrity"
    )
    p_verify.add_argument("--from", dest="from_index", type=int, default=0,
                          help="First sequence index to check")
    p_verify.add_argument("--seed", help="Verified hash of the entry before --from")

    p_export = subparsers.add_parser(
        "export-entries",
        help="Export a verification bundle to JSON"
    )
    p_export.add_argument("--output", "-o", help="Output file (default: audit_export.json)")
    p_export.add_argument("--from", dest="from_index", type=int, default=0,
                          help="First sequence index to export")

    p_checkpoint = subparsers.add_parser(
        "checkpoint",
        help="Verify the chain and record a checkpoint"
    )
    p_checkpoint.add_argument("--actor", default="system", help="Actor recorded on the checkpoint")

    p_purge = subparsers.add_parser(
        "purge",
        help="Delete entries before a checkpoint"
    )
    p_purge.add_argument("--before", type=int, required=True,
                         help="Sequence index of the checkpoint to keep")
    p_purge.add_argument("--actor", default="system", help="Actor recorded on the purge")
    p_purge.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    subparsers.add_parser(
        "generate-keys",
        help="Generate an Ed25519 keypair for signing exports"
    )

    subparsers.add_parser(
        "health-check",
        help="Run comprehensive health checks"
    )

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "init-schema": cmd_init_schema,
        "verify-chain": cmd_verify_chain,
        "export-entries": cmd_export_entries,
        "checkpoint": cmd_checkpoint,
        "purge": cmd_purge,
        "generate-keys": cmd_generate_keys,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
