#!/usr/bin/env python3
"""
OpenTruth Command Line Interface

Usage:
    opentruth hash <file>...
    opentruth merkle root <file>...
    opentruth merkle prove --index <i> <file>...
    opentruth merkle verify --proof <file>
    opentruth keygen --output <file> [--scheme ED25519|SECP256K1]
    opentruth address --key <file>
    opentruth issue --key <file> --file <file> --output <file>
    opentruth verify --certificate <file> --file <file>
"""

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional


def load_json(path: str) -> dict:
    """Load JSON from file."""
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def save_json(data: dict, path: str):
    """Save JSON to file."""
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, sort_keys=True)


def cmd_hash(args):
    """Print the SHA-256 digest of each file."""
    from opentruth.hashing import digest_files

    for path, h in zip(args.files, digest_files(args.files, max_workers=args.workers)):
        print(f"{h}  {path}")
    return 0


def cmd_merkle(args):
    """Merkle roots and membership proofs over files."""
    from opentruth.hashing import digest_files
    from opentruth.merkle import MerkleProof, MerkleTree, verify_proof

    if args.merkle_command == "verify":
        data = load_json(args.proof)
        proof = MerkleProof.from_list(data.get("proof", []), leaf_index=data.get("index", -1))
        if verify_proof(data.get("leaf"), proof, data.get("root")):
            print("✓ Proof verifies against root")
            return 0
        print("✗ Proof does not verify")
        return 1

    tree = MerkleTree.build(digest_files(args.files, max_workers=args.workers))
    if args.merkle_command == "root":
        print(tree.root_hex)
        return 0

    proof = tree.prove(args.index)
    output = {
        "index": args.index,
        "leaf": tree.leaves[args.index].root_hex,
        "proof": proof.to_list(),
        "root": tree.root_hex,
    }
    if args.output:
        save_json(output, args.output)
        print(f"Proof saved to: {args.output}")
    else:
        print(json.dumps(output, indent=2))
    return 0


def cmd_keygen(args):
    """Generate a local signing key."""
    from opentruth.signing import generate_signer, save_signer

    signer = generate_signer(args.scheme)
    save_signer(signer, args.output)
    print(f"Key saved to: {args.output}", file=sys.stderr)
    print(signer.address)
    return 0


def cmd_address(args):
    """Print the identity bound to a key file."""
    from opentruth.signing import load_signer

    print(load_signer(args.key).address)
    return 0


def cmd_issue(args):
    """Issue a signed certificate for a file."""
    import mimetypes

    from opentruth.config import ProtocolConfig
    from opentruth.issuer import CertificateIssuer
    from opentruth.signing import load_signer
    from opentruth.storage import InMemoryBlobStore

    signer = load_signer(args.key)
    data = Path(args.file).read_bytes()
    mime_type = args.mime_type or mimetypes.guess_type(args.file)[0] or "application/octet-stream"

    issuer = CertificateIssuer(signer, InMemoryBlobStore(), config=ProtocolConfig.from_env())
    result = issuer.issue(
        data,
        mime_type=mime_type,
        filename=Path(args.file).name,
        model_name=args.model_name,
        model_version=args.model_version,
        prompt=args.prompt,
    )

    certificate = result.certificate.to_dict()
    if args.output:
        save_json(certificate, args.output)
        print(f"Certificate saved to: {args.output}", file=sys.stderr)
    else:
        print(json.dumps(certificate, indent=2, sort_keys=True))
    print(f"✓ Signed by {signer.address}", file=sys.stderr)
    return 0


def cmd_verify(args):
    """Verify a certificate against a file."""
    from opentruth.verifier import CertificateVerifier

    raw = Path(args.certificate).read_bytes()
    file_bytes = Path(args.file).read_bytes() if args.file else None
    report = CertificateVerifier().verify(raw, file_bytes)

    for name in ("structure", "hash", "signature"):
        check = getattr(report, name)
        mark = "✓" if check.status.value == "PASSED" else "✗"
        line = f"{mark} {name}: {check.status.value}"
        if check.reason:
            line += f" ({check.reason})"
        print(line)
    for warning in report.warnings:
        print(f"! {warning}")

    if report.valid:
        print("✓ VALID")
        return 0
    print("✗ INVALID")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opentruth",
        description="OpenTruth provenance certificate CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  opentruth hash image.png
  opentruth merkle root data/*.csv
  opentruth keygen -o key.json
  opentruth issue -k key.json -f image.png -o cert.json
  opentruth verify -c cert.json -f image.png
        """
    )
    parser.add_argument("--log-level", help="Log level (default: OPENTRUTH_LOG_LEVEL, or DEBUG with OPENTRUTH_DEBUG)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # hash
    hash_parser = subparsers.add_parser("hash", help="Hash files")
    hash_parser.add_argument("files", nargs="+", help="Files to hash")
    hash_parser.add_argument("-w", "--workers", type=int, default=4, help="Hash worker threads")

    # merkle
    merkle_parser = subparsers.add_parser("merkle", help="Merkle roots and proofs")
    merkle_sub = merkle_parser.add_subparsers(dest="merkle_command", required=True)
    root_parser = merkle_sub.add_parser("root", help="Merkle root over files, in order")
    root_parser.add_argument("files", nargs="+")
    root_parser.add_argument("-w", "--workers", type=int, default=4)
    prove_parser = merkle_sub.add_parser("prove", help="Membership proof for one file")
    prove_parser.add_argument("-i", "--index", type=int, required=True, help="Leaf index")
    prove_parser.add_argument("files", nargs="+")
    prove_parser.add_argument("-w", "--workers", type=int, default=4)
    prove_parser.add_argument("-o", "--output", help="Output file for proof")
    mverify_parser = merkle_sub.add_parser("verify", help="Verify a proof file")
    mverify_parser.add_argument("-p", "--proof", required=True, help="Proof JSON from 'merkle prove'")

    # keygen
    keygen_parser = subparsers.add_parser("keygen", help="Generate a signing key")
    keygen_parser.add_argument("-o", "--output", required=True, help="Output key file")
    keygen_parser.add_argument("-s", "--scheme", default="ED25519", choices=["ED25519", "SECP256K1"])

    # address
    address_parser = subparsers.add_parser("address", help="Show a key's identity")
    address_parser.add_argument("-k", "--key", required=True, help="Key file")

    # issue
    issue_parser = subparsers.add_parser("issue", help="Issue a certificate")
    issue_parser.add_argument("-k", "--key", required=True, help="Key file")
    issue_parser.add_argument("-f", "--file", required=True, help="File to certify")
    issue_parser.add_argument("-o", "--output", help="Output certificate file")
    issue_parser.add_argument("-m", "--mime-type", help="Media type (guessed if omitted)")
    issue_parser.add_argument("--model-name", help="AI model name")
    issue_parser.add_argument("--model-version", help="AI model version")
    issue_parser.add_argument("--prompt", help="Generation prompt (only its hash is stored)")

    # verify
    verify_parser = subparsers.add_parser("verify", help="Verify a certificate")
    verify_parser.add_argument("-c", "--certificate", required=True, help="Certificate JSON file")
    verify_parser.add_argument("-f", "--file", help="Candidate file")

    return parser


COMMANDS = {
    "hash": cmd_hash,
    "merkle": cmd_merkle,
    "keygen": cmd_keygen,
    "address": cmd_address,
    "issue": cmd_issue,
    "verify": cmd_verify,
}


def main(argv: Optional[List[str]] = None) -> int:
    from opentruth.config import LOG_LEVEL, is_debug
    from opentruth.errors import OpenTruthError
    from opentruth.logging_config import configure_logging

    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level or ("DEBUG" if is_debug() else LOG_LEVEL), json_format=False)

    if args.command not in COMMANDS:
        parser.print_help()
        return 2
    try:
        return COMMANDS[args.command](args)
    except (OpenTruthError, OSError, ValueError) as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
