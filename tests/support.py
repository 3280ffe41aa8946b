"""Shared builders for the test suite."""

from opentruth import (
    Network,
    Storage,
    build_signature_proof,
    complete_certificate,
    generate_certificate,
    sign_certificate,
)

TIMESTAMP = 1_700_000_000_000


def signed_certificate(signer, data=b"hello world", **kwargs):
    """Generate, sign and complete a certificate for `data`."""
    base = generate_certificate(data, signer.address, timestamp=TIMESTAMP, **kwargs)
    sig, pk = sign_certificate(base, signer)
    storage = Storage(blob_id="BLOB:test", network=Network.TESTNET, uploaded_at=TIMESTAMP + 1)
    return complete_certificate(base, build_signature_proof(signer.scheme, sig, pk), storage)
