#!/usr/bin/env python3
"""
Certificate Registry Management CLI

Commands:
- generate-wallet: Create a new address and private key
- sign-message: Sign a login challenge (EIP-191) with a private key
- verify-signature: Check that a signature recovers to an address
- hash-certificate: Compute a certificate hash offline
- init-db: Create the read model tables in PostgreSQL
- health-check: Check configuration and database connectivity
- demo: Run a full lifecycle against an in-process ledger

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage generate-wallet
    python -m tools.manage sign-message --key 0x... --message-file challenge.txt
    python -m tools.manage hash-certificate --subject-id S-1 --version 1 ...
"""

import argparse
import json
import os
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _read_message(args) -> str:
    if args.message_file:
        return Path(args.message_file).read_text(encoding="utf-8")
    if args.message is not None:
        return args.message
    return sys.stdin.read()


def cmd_generate_wallet(args):
    """Generate a new address and private key."""
    from certregistry.core.signature import generate_account

    address, private_key = generate_account()
    print("\n[OK] Wallet generated")
    print(f"  Address: {address}")
    print("\n  Private key (KEEP SECRET!):")
    print(f"  {private_key}")
    print("\n  To make this address the first admin, set:")
    print(f"  CERTREGISTRY_GENESIS_ADMIN={address}")


def cmd_sign_message(args):
    """Sign a challenge message."""
    from certregistry.core.signature import sign_message

    key = args.key or os.environ.get("CERTREGISTRY_PRIVATE_KEY", "")
    if not key:
        print("Error: pass --key or set CERTREGISTRY_PRIVATE_KEY")
        return 1
    print(sign_message(_read_message(args), key))


def cmd_verify_signature(args):
    """Verify a signature against an address."""
    from certregistry.core.signature import SignatureVerifier

    verifier = SignatureVerifier()
    message = _read_message(args)
    if verifier.verify(args.address, message, args.signature):
        print("[OK] Signature matches address")
        return 0
    recovered = verifier.recover(message, args.signature)
    print("[FAIL] Signature does not match address")
    print(f"  Recovered: {recovered or 'nothing (malformed signature)'}")
    return 1


def cmd_hash_certificate(args):
    """Compute the content hash a certificate will be issued under."""
    from certregistry.core.hasher import Hasher
    from certregistry.schemas import CertificateAttributes, scale_credential_value

    issued_at = datetime.fromisoformat(args.issued_at)
    if issued_at.tzinfo is None:
        print("Error: --issued-at must include a timezone offset")
        return 1

    attributes = CertificateAttributes(
        subject_name=args.subject_name,
        program=args.program,
        credential_value=scale_credential_value(args.credential_value),
        issuing_authority=args.authority,
    )
    payload = Hasher.certificate_payload(
        args.subject_id, args.version, attributes, args.issuer, issued_at
    )
    if args.show_payload:
        print(json.dumps(payload, indent=2, default=str))
    print(Hasher.certificate_hash(args.subject_id, args.version, attributes, args.issuer, issued_at))


def cmd_init_db(args):
    """Create read model tables."""
    from certregistry.db.config import ReadModelSettings
    from certregistry.db.postgres import PostgresReadModelStore

    settings = ReadModelSettings.from_env()
    if not settings.url:
        print("Error: set DATABASE_URL")
        return 1

    print(f"Creating schema on {settings.redacted_url()}")
    PostgresReadModelStore.from_settings(settings).ensure_schema()
    print("[OK] Schema ready")


def cmd_health_check(args):
    """Run configuration and connectivity checks."""
    import psycopg2

    from certregistry.config import LedgerConfig, is_production
    from certregistry.db.config import ReadModelSettings

    print("=== Certificate Registry Health Check ===\n")
    status = 0

    print("Read model:")
    settings = ReadModelSettings.from_env()
    if settings.uses_postgres:
        print(f"  Type: PostgreSQL ({settings.driver.value})")
        print(f"  URL: {settings.redacted_url()}")
        try:
            conn = psycopg2.connect(settings.url, connect_timeout=settings.connect_timeout)
            conn.close()
            print("  Status: [OK] Connected")
        except psycopg2.Error as e:
            print(f"  Status: [FAIL] {e}")
            status = 1
    else:
        print("  Type: In-Memory")
        print("  Status: [OK]")

    print("\nEnvironment:")
    print(f"  Production mode: {'yes' if is_production() else 'no'}")
    if os.environ.get("CERTREGISTRY_SESSION_SECRET"):
        print("  Session secret: [OK] Set")
    elif is_production():
        print("  Session secret: [FAIL] Missing (required in production)")
        status = 1
    else:
        print("  Session secret: [WARN] Ephemeral (sessions lost on restart)")

    genesis = LedgerConfig.from_env().genesis_admin
    if genesis:
        print(f"  Genesis admin: [OK] {genesis}")
    else:
        print("  Genesis admin: [WARN] Not set; nobody can log in")

    print("\n=== Health Check Complete ===")
    return status


def cmd_demo(args):
    """Issue, revoke, reactivate and re-issue against an in-process ledger."""
    from decimal import Decimal

    from certregistry.config import AuthConfig, IndexerConfig, LedgerConfig, SchedulerConfig
    from certregistry.container import build_container
    from certregistry.core.ledger_client import InMemoryLedger
    from certregistry.core.signature import generate_account
    from certregistry.db.store import InMemoryReadModelStore
    from certregistry.observability import setup_logging
    from certregistry.schemas import CertificateAttributes, scale_credential_value

    setup_logging()
    admin, _ = generate_account()
    issuer, _ = generate_account()

    container = build_container(
        store=InMemoryReadModelStore(),
        ledger=InMemoryLedger(genesis_admin=admin),
        auth_config=AuthConfig(),
        ledger_config=LedgerConfig(genesis_admin=admin),
        indexer_config=IndexerConfig(enabled=False),
        scheduler_config=SchedulerConfig(enabled=False),
    )
    container.indexer.run_once()

    print("=" * 60)
    print("Certificate Registry - Lifecycle Demonstration")
    print("=" * 60)

    container.accounts.register(admin, issuer, "Registrar's Office", "registrar@example.edu")
    print(f"\nRegistered issuer {issuer}")

    attributes = CertificateAttributes(
        subject_name="Ada Lovelace",
        program="BSc Mathematics",
        credential_value=scale_credential_value(Decimal("3.85")),
        issuing_authority="Example University",
    )
    v1 = container.certificates.issue(issuer, "STU-1815", attributes)
    print(f"Issued v{v1.version}: {v1.cert_hash}")

    container.certificates.revoke(issuer, v1.cert_hash, "Transcript correction pending")
    print("Revoked v1")
    container.certificates.reactivate(issuer, v1.cert_hash)
    print("Reactivated v1")

    corrected = attributes.model_copy(update={"credential_value": scale_credential_value("3.90")})
    v2 = container.certificates.issue(issuer, "STU-1815", corrected)
    print(f"Issued v{v2.version}: {v2.cert_hash}")

    print("\nHistory:")
    for cert in container.queries.get_history("STU-1815"):
        print(f"  v{cert.version} {cert.status.value:8} {cert.credential_display} {cert.cert_hash[:18]}...")

    print("\nAudit log for v1:")
    for entry in container.queries.audit_for_certificate(v1.cert_hash):
        print(f"  {entry.timestamp.isoformat()} {entry.action.value:12} {entry.reason or ''}")

    before = container.store.snapshot()
    container.indexer.rebuild()
    same = before == container.store.snapshot()
    print(f"\nReplay from genesis reproduces the read model: {'[OK]' if same else '[FAIL]'}")

    container.stop()
    return 0 if same else 1


def main():
    parser = argparse.ArgumentParser(
        description="Certificate Registry Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("generate-wallet", help="Generate an address and private key")

    p_sign = subparsers.add_parser("sign-message", help="Sign a login challenge")
    p_sign.add_argument("--key", help="Private key (or CERTREGISTRY_PRIVATE_KEY)")
    p_sign.add_argument("--message", help="Message text (reads stdin if omitted)")
    p_sign.add_argument("--message-file", help="Read the message from a file")

    p_verify = subparsers.add_parser("verify-signature", help="Verify a signature")
    p_verify.add_argument("--address", required=True)
    p_verify.add_argument("--signature", required=True)
    p_verify.add_argument("--message", help="Message text (reads stdin if omitted)")
    p_verify.add_argument("--message-file", help="Read the message from a file")

    p_hash = subparsers.add_parser("hash-certificate", help="Compute a certificate hash")
    p_hash.add_argument("--subject-id", required=True)
    p_hash.add_argument("--version", type=int, required=True)
    p_hash.add_argument("--subject-name", required=True)
    p_hash.add_argument("--program", required=True)
    p_hash.add_argument("--credential-value", required=True, help='Decimal, e.g. "3.85"')
    p_hash.add_argument("--authority", required=True)
    p_hash.add_argument("--issuer", required=True, help="Issuer address")
    p_hash.add_argument("--issued-at", required=True, help="ISO-8601 with offset")
    p_hash.add_argument("--show-payload", action="store_true", help="Print the canonical payload")

    subparsers.add_parser("init-db", help="Create read model tables")
    subparsers.add_parser("health-check", help="Run configuration and connectivity checks")
    subparsers.add_parser("demo", help="Run a lifecycle demo in-process")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "generate-wallet": cmd_generate_wallet,
        "sign-message": cmd_sign_message,
        "verify-signature": cmd_verify_signature,
        "hash-certificate": cmd_hash_certificate,
        "init-db": cmd_init_db,
        "health-check": cmd_health_check,
        "demo": cmd_demo,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
