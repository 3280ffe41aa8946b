import pytest
from fastapi.testclient import TestClient

from opentruth import Ed25519Signer
from opentruth.api import app


@pytest.fixture
def signer():
    return Ed25519Signer.from_seed(b"\x01" * 32)


@pytest.fixture
def client():
    return TestClient(app)
