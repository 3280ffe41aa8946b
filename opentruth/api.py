"""
OpenTruth HTTP verification API.

Public, stateless endpoints for hashing, Merkle proofs and certificate
verification. Nothing here signs or decrypts; those need the author's or
requester's wallet and stay client-side.

Run with:
    uvicorn opentruth.api:app
"""

import base64
import binascii
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from . import __version__
from .config import is_production
from .errors import EmptyInputError, IndexOutOfRangeError
from .hashing import digest
from .logging_config import set_request_id
from .merkle import MerkleTree, verify_proof
from .verifier import CertificateVerifier

app = FastAPI(
    title="OpenTruth Verification API",
    version=__version__,
    docs_url=None if is_production() else "/docs",
    redoc_url=None if is_production() else "/redoc",
)

verifier = CertificateVerifier()


class HashRequest(BaseModel):
    data_b64: str


class MerkleRootRequest(BaseModel):
    leaves: List[str] = Field(default_factory=list)


class MerkleProveRequest(BaseModel):
    leaves: List[str] = Field(default_factory=list)
    index: int


class MerkleVerifyRequest(BaseModel):
    leaf: str
    proof: List[str] = Field(default_factory=list)
    root: str


class VerifyRequest(BaseModel):
    certificate: Dict[str, Any]
    file_b64: Optional[str] = None


def _b64(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(400, "INVALID_BASE64")


def _tree(leaves: List[str]) -> MerkleTree:
    try:
        return MerkleTree.build(leaves)
    except EmptyInputError:
        raise HTTPException(400, "EMPTY_INPUT")
    except ValueError:
        raise HTTPException(400, "INVALID_DIGEST")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = set_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.get("/health")
def health():
    return {"status": "ok", "version": __version__}


@app.post("/hash")
def hash_data(req: HashRequest):
    data = _b64(req.data_b64)
    return {"hash": str(digest(data)), "size": len(data)}


@app.post("/merkle/root")
def merkle_root(req: MerkleRootRequest):
    tree = _tree(req.leaves)
    return {"root": tree.root_hex, "leafCount": len(tree)}


@app.post("/merkle/prove")
def merkle_prove(req: MerkleProveRequest):
    tree = _tree(req.leaves)
    try:
        proof = tree.prove(req.index)
    except IndexOutOfRangeError:
        raise HTTPException(400, "INDEX_OUT_OF_RANGE")
    return {"index": req.index, "proof": proof.to_list(), "root": tree.root_hex}


@app.post("/merkle/verify")
def merkle_verify(req: MerkleVerifyRequest):
    return {"valid": verify_proof(req.leaf, req.proof, req.root)}


@app.post("/verify")
def verify_certificate(req: VerifyRequest):
    file_bytes = _b64(req.file_b64) if req.file_b64 is not None else None
    report = verifier.verify(req.certificate, file_bytes)
    return report.to_dict()
