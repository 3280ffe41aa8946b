#!/usr/bin/env python3
"""
OpenTruth Example - Issue, Encrypt and Verify

Walks through the full certificate lifecycle:
1. An artist certifies an AI-generated image and encrypts the stored copy
2. A third party verifies the certificate against the file
3. A tampered file and a tampered certificate are rejected
4. The artist recovers the image through the key servers; a stranger cannot

Run with: python examples/issue_and_verify.py
"""

import copy

from opentruth import (
    AccessDeniedError,
    CertificateIssuer,
    CertificateVerifier,
    Ed25519Signer,
    InMemoryBlobStore,
    LocalKeyServer,
    ProtocolConfig,
    ThresholdEncryption,
    digest,
)

PACKAGE_ID = "0x" + "42" * 32


def print_report(report):
    for name in ("structure", "hash", "signature"):
        check = getattr(report, name)
        print(f"  {name:<10} {check.status.value}" + (f" ({check.reason})" if check.reason else ""))
    for warning in report.warnings:
        print(f"  ! {warning}")
    print(f"  => {'VALID' if report.valid else 'INVALID'}")


def main():
    print("=" * 70)
    print("OpenTruth Provenance - End-to-End Example")
    print("=" * 70)

    # ------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------
    print("\n[SETUP] Key servers, blob store and author wallet...")
    config = ProtocolConfig(package_id=PACKAGE_ID, threshold=2)
    key_servers = [LocalKeyServer(f"ks-{i}", package_id=PACKAGE_ID) for i in range(3)]
    protocol = ThresholdEncryption(config, key_servers)
    store = InMemoryBlobStore()
    artist = Ed25519Signer()
    print(f"  Author: {artist.address}")
    print(f"  Key servers: {[s.server_id for s in key_servers]} (threshold {config.threshold})")

    # ------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------
    print("\n" + "-" * 70)
    print("STEP 1: Issue an encrypted certificate")
    print("-" * 70)
    image = bytes(i % 256 for i in range(4096))
    issuer = CertificateIssuer(artist, store, config, encryption=protocol)
    result = issuer.issue(
        image,
        mime_type="image/png",
        filename="lighthouse.png",
        model_name="diffuser",
        model_version="2.1",
        prompt="a lighthouse at dusk",
        encrypt=True,
    )
    cert = result.certificate
    print(f"  Artifact hash:   {cert.artifact.hash}")
    print(f"  Certificate at:  {result.certificate_locator}")
    print(f"  Ciphertext at:   {result.blob_id}")
    print(f"  Key id:          {cert.encryption.key_id}")

    # ------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------
    print("\n" + "-" * 70)
    print("STEP 2: Third-party verification")
    print("-" * 70)
    verifier = CertificateVerifier(store)
    print_report(verifier.fetch_and_verify(result.certificate_locator, image))

    print("\n[TAMPERED FILE] one bit flipped")
    flipped = bytearray(image)
    flipped[0] ^= 0x01
    print_report(verifier.verify(cert, bytes(flipped)))

    print("\n[TAMPERED CERTIFICATE] model name rewritten")
    forged = copy.deepcopy(cert.to_dict())
    forged["model"]["name"] = "human-painted"
    print_report(verifier.verify(forged, image))

    # ------------------------------------------------------------
    # Decrypt
    # ------------------------------------------------------------
    print("\n" + "-" * 70)
    print("STEP 3: Authorized decryption")
    print("-" * 70)
    ciphertext = store.get(cert.encryption.encrypted_blob_id)
    plaintext = protocol.decrypt(ciphertext, cert.encryption.key_id, artist.address, artist)
    print(f"  Owner recovered {len(plaintext)} bytes, hash matches: "
          f"{digest(plaintext) == cert.artifact.hash}")

    stranger = Ed25519Signer()
    try:
        protocol.decrypt(ciphertext, cert.encryption.key_id, stranger.address, stranger)
    except AccessDeniedError as e:
        print(f"  Stranger denied: {e}")


if __name__ == "__main__":
    main()
