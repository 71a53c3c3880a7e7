#!/usr/bin/env python3
"""
Hive Signer Command Line Interface

Usage:
    hive-signer derive --account <name> [--seed <seed>] [--show-private]
    hive-signer verify-seed --account <name> --seed <seed> --pubkeys <file>
    hive-signer recovery [--dir <path>] list [--include-keys]
    hive-signer recovery [--dir <path>] show <account>
    hive-signer recovery [--dir <path>] mark-delivered <account> <correlation_id>

Recovery commands read the cache directly from disk; access is governed by
the file permissions of the recovery directory.
"""

import argparse
import json
import os
import sys
import time


def load_json(path: str) -> dict:
    """Load JSON from file."""
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def _recovery_cache(args):
    """
    Open the recovery directory named on the command line.

    Raises:
        ValueError: RECOVERY_SEALING_KEY is set but malformed
    """
    from hive_signer.recovery import FileRecoveryCache, RETENTION_HOURS, decode_sealing_key

    return FileRecoveryCache(
        args.dir,
        retention_hours=float(os.getenv("RECOVERY_RETENTION_HOURS", str(RETENTION_HOURS))),
        sealing_key=decode_sealing_key(os.getenv("RECOVERY_SEALING_KEY", "")),
    )


def cmd_derive(args):
    """Derive the four role keys for an account."""
    from hive_signer.keys import derive
    from hive_signer.errors import InvalidInputError

    try:
        bundle = derive(args.account, args.seed)
    except InvalidInputError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 2

    out = {"account": bundle.subject_name, "version": bundle.version, "pubkeys": bundle.public_keys}
    if args.show_private:
        out["keys"] = bundle.private_keys
        out["master_password"] = bundle.seed
        print("⚠️  Output contains private keys", file=sys.stderr)
    print(json.dumps(out, indent=2))
    return 0


def cmd_verify_seed(args):
    """Check that a seed derives the expected public keys."""
    from hive_signer.keys import validate

    expected = load_json(args.pubkeys)
    if validate(args.account, args.seed, expected):
        print("✓ Seed derives the expected public keys", file=sys.stderr)
        return 0
    print("✗ Seed does NOT derive the expected public keys", file=sys.stderr)
    return 1


def cmd_recovery_list(args):
    cache = _recovery_cache(args)
    records = cache.list(include_keys=args.include_keys)
    print(json.dumps({"count": len(records), "accounts": records}, indent=2))
    return 0


def cmd_recovery_show(args):
    from hive_signer.logging_config import audit_log

    cache = _recovery_cache(args)
    record = cache.retrieve(args.account)
    if record is None:
        print(f"✗ No emergency keys found for account: {args.account}", file=sys.stderr)
        return 1
    audit_log.recovery_retrieved(record.subject_name, record.correlation_id)
    print(json.dumps(record.summary(time.time(), cache.retention_hours, include_keys=True), indent=2))
    print("⚠️  SENSITIVE: These are private keys. Handle with extreme care.", file=sys.stderr)
    return 0


def cmd_recovery_mark_delivered(args):
    cache = _recovery_cache(args)
    if cache.mark_delivered(args.account, args.correlation_id):
        print(f"✓ Keys for {args.account} marked as delivered", file=sys.stderr)
        print("  Remember to manually clean up the key file when no longer needed", file=sys.stderr)
        return 0
    print(f"✗ No record for {args.account} with id {args.correlation_id}", file=sys.stderr)
    return 1


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Hive Signup Signer CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  hive-signer derive --account skateuser --seed P0a1b...
  hive-signer verify-seed --account skateuser --seed P0a1b... --pubkeys pubkeys.json
  hive-signer recovery list
  hive-signer recovery show skateuser
  hive-signer recovery mark-delivered skateuser session-4f2c...
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # derive
    derive_parser = subparsers.add_parser("derive", help="Derive account keys")
    derive_parser.add_argument("-a", "--account", required=True, help="Account name")
    derive_parser.add_argument("-s", "--seed", help="Master password (random when omitted)")
    derive_parser.add_argument("--show-private", action="store_true", help="Also print private keys")

    # verify-seed
    verify_parser = subparsers.add_parser("verify-seed", help="Check a master password")
    verify_parser.add_argument("-a", "--account", required=True, help="Account name")
    verify_parser.add_argument("-s", "--seed", required=True, help="Master password")
    verify_parser.add_argument("-p", "--pubkeys", required=True, help="JSON file of role -> public key")

    # recovery
    recovery_parser = subparsers.add_parser("recovery", help="Emergency recovery cache")
    recovery_parser.add_argument("-d", "--dir", default=os.getenv("RECOVERY_DIR", "emergency-recovery"),
                                 help="Recovery directory")
    recovery_sub = recovery_parser.add_subparsers(dest="recovery_command", help="Recovery commands")

    list_parser = recovery_sub.add_parser("list", help="List stored records")
    list_parser.add_argument("--include-keys", action="store_true", help="Include private keys")

    show_parser = recovery_sub.add_parser("show", help="Show the newest record for an account")
    show_parser.add_argument("account", help="Account name")

    mark_parser = recovery_sub.add_parser("mark-delivered", help="Mark a record delivered")
    mark_parser.add_argument("account", help="Account name")
    mark_parser.add_argument("correlation_id", help="session-<id> or transaction id")

    args = parser.parse_args(argv)

    if args.command == "derive":
        return cmd_derive(args)
    elif args.command == "verify-seed":
        return cmd_verify_seed(args)
    elif args.command == "recovery":
        commands = {
            "list": cmd_recovery_list,
            "show": cmd_recovery_show,
            "mark-delivered": cmd_recovery_mark_delivered,
        }
        if args.recovery_command not in commands:
            recovery_parser.print_help()
            return 2
        try:
            return commands[args.recovery_command](args)
        except ValueError as e:
            print(f"✗ {e}", file=sys.stderr)
            return 2
    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(main())
