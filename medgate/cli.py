#!/usr/bin/env python3
"""
MedGate Command Line Interface

Usage:
    medgate keygen [--output <file>]
    medgate sign --key <file> --kind nonce --nonce <hex>
    medgate sign --key <file> --kind grant --payload <file>
    medgate verify-export --export <file> --public-key <b64>
    medgate hash --file <file>
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional


def load_json(path: str) -> Any:
    """Load JSON from file."""
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def save_json(data: Any, path: str) -> None:
    """Save JSON to file."""
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)


def _upload(payload: Dict[str, Any]) -> bytes:
    from medgate.hashing import sha256_hash
    from medgate.messages import upload_message

    content_hash = payload.get("content_hash")
    if not content_hash:
        content_hash = sha256_hash(Path(payload["blob_path"]).read_bytes())
    return upload_message(payload["patient_id"], payload["provider_id"], content_hash,
                          payload["resource_type"])


def _message_builders() -> Dict[str, Callable[[Dict[str, Any]], bytes]]:
    from medgate import messages

    return {
        "grant": lambda p: messages.grant_message(
            p["patient_id"], p["provider_id"], p["permissions"], p.get("expiration_time"),
            request_nonce=p["request_nonce"], issued_at=p["issued_at"]),
        "revoke": lambda p: messages.revocation_message(p["consent_token_id"]),
        "upload": _upload,
        "export": lambda p: messages.export_message(p["format"], p.get("filters") or {}),
        "compliance": lambda p: messages.compliance_report_message(
            p["report_type"], p["start_date"], p["end_date"]),
        "decision": lambda p: messages.registration_decision_message(p["user_id"], p["decision"]),
        "deactivate": lambda p: messages.deactivation_message(p["user_id"]),
    }


SIGN_KINDS = ("nonce", "grant", "revoke", "upload", "export", "compliance", "decision", "deactivate")


def build_message(kind: str, payload: Optional[Dict[str, Any]] = None, nonce: Optional[str] = None) -> bytes:
    """Bytes a client signs for ``kind``."""
    from medgate.messages import nonce_message

    if kind == "nonce":
        if not nonce:
            raise ValueError("--nonce is required for kind 'nonce'")
        return nonce_message(nonce)
    if payload is None:
        raise ValueError(f"--payload is required for kind '{kind}'")
    return _message_builders()[kind](payload)


def cmd_keygen(args) -> int:
    """Generate identity key material."""
    from medgate.signing import generate_identity_keys

    keys = generate_identity_keys()
    if args.user_id:
        keys["user_id"] = args.user_id
    if args.output:
        save_json(keys, args.output)
        print(f"Keys saved to: {args.output}")
    else:
        print(json.dumps(keys, indent=2))
    print("Register with public_keys.signing_key and public_keys.encryption_key; "
          "keep the private keys client-side.", file=sys.stderr)
    return 0


def cmd_sign(args) -> int:
    """Sign a MedGate payload."""
    from medgate.signing import sign_message

    keys = load_json(args.key)
    private_key = keys.get("signing_private_key")
    if not private_key:
        print("Key file has no signing_private_key", file=sys.stderr)
        return 2
    payload = load_json(args.payload) if args.payload else None
    try:
        message = build_message(args.kind, payload, args.nonce)
    except (KeyError, ValueError) as e:
        print(f"Cannot build {args.kind} payload: {e}", file=sys.stderr)
        return 2
    print(sign_message(private_key, message))
    return 0


def cmd_verify_export(args) -> int:
    """Verify the hash chain and signatures of a JSON audit export."""
    from medgate.audit import verify_entry_dicts

    raw = load_json(args.export)
    entries: List[Dict[str, Any]] = json.loads(raw["data"]) if isinstance(raw, dict) and "data" in raw else raw
    if not isinstance(entries, list):
        print("Export must be a JSON list of audit entries", file=sys.stderr)
        return 2

    report = verify_entry_dicts(entries, args.public_key)
    if args.partial:
        # A filtered export is not one contiguous chain; only hashes and signatures apply.
        report_ok = not (report.hash_mismatches or report.invalid_signatures)
    else:
        report_ok = report.verified
    print(json.dumps(report.to_dict(), indent=2))
    if report_ok:
        print(f"✓ {report.total_entries} entries verified", file=sys.stderr)
        return 0
    print("✗ audit export failed verification", file=sys.stderr)
    return 1


def cmd_hash(args) -> int:
    """Compute the canonical SHA-256 of a JSON document, or of raw bytes."""
    from medgate.canonicalization import canonicalize
    from medgate.hashing import sha256_hash

    if args.raw:
        print(sha256_hash(Path(args.file).read_bytes()))
    else:
        print(sha256_hash(canonicalize(load_json(args.file))))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="MedGate CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  medgate keygen -u doc1 -o doc1_keys.json
  medgate sign -k doc1_keys.json --kind nonce --nonce 3f9a...
  medgate sign -k p1_keys.json --kind grant -p grant.json
  medgate verify-export -e export.json --public-key <audit key b64>
  medgate hash -f record.bin --raw
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    keygen_parser = subparsers.add_parser("keygen", help="Generate identity key material")
    keygen_parser.add_argument("-u", "--user-id", help="User id to record in the key file")
    keygen_parser.add_argument("-o", "--output", help="Output file")

    sign_parser = subparsers.add_parser("sign", help="Sign a nonce or request payload")
    sign_parser.add_argument("-k", "--key", required=True, help="Key file from 'keygen'")
    sign_parser.add_argument("--kind", required=True, choices=SIGN_KINDS, help="Payload kind")
    sign_parser.add_argument("-n", "--nonce", help="Nonce to sign (kind 'nonce')")
    sign_parser.add_argument("-p", "--payload", help="Request payload JSON file")

    verify_parser = subparsers.add_parser("verify-export", help="Verify a JSON audit export")
    verify_parser.add_argument("-e", "--export", required=True, help="Export JSON file")
    verify_parser.add_argument("--public-key", required=True, help="Audit public key (base64)")
    verify_parser.add_argument("--partial", action="store_true",
                               help="Export was filtered; skip chain continuity")

    hash_parser = subparsers.add_parser("hash", help="Compute SHA-256 hash")
    hash_parser.add_argument("-f", "--file", required=True, help="File to hash")
    hash_parser.add_argument("--raw", action="store_true", help="Hash raw bytes instead of canonical JSON")

    args = parser.parse_args(argv)

    if args.command == "keygen":
        return cmd_keygen(args)
    elif args.command == "sign":
        return cmd_sign(args)
    elif args.command == "verify-export":
        return cmd_verify_export(args)
    elif args.command == "hash":
        return cmd_hash(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
