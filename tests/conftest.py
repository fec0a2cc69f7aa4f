"""Shared fixtures: an in-memory HTTP session and generated signing keys."""

import json
import threading
from typing import Any, Dict, List, Optional

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from generate_jwks import build_key_stores


class FakeResponse:
    def __init__(self, status_code: int = 200, json_body: Any = None, text: Optional[str] = None,
                 headers: Optional[Dict[str, str]] = None, lines: Optional[List[bytes]] = None):
        self.status_code = status_code
        self._json_body = json_body
        self.headers = headers or {}
        self._lines = lines or []
        if text is None:
            text = json.dumps(json_body) if json_body is not None else ""
        self.text = text
        self.closed = False

    def json(self):
        if self._json_body is None:
            return json.loads(self.text)
        return self._json_body

    def iter_lines(self, chunk_size=512, decode_unicode=False, delimiter=None):
        yield from self._lines

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True


class FakeSession:
    """Answers requests from a per-URL queue of responses and records every call."""

    def __init__(self):
        self.routes: Dict[str, List[FakeResponse]] = {}
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()
        self.closed = False

    def add(self, url: str, *responses: FakeResponse):
        self.routes.setdefault(url, []).extend(responses)

    def _respond(self, method: str, url: str, **kwargs) -> FakeResponse:
        with self._lock:
            self.calls.append({"method": method, "url": url, **kwargs})
            queue = self.routes.get(url)
            if not queue:
                raise AssertionError(f"Unexpected {method} {url}")
            # The last queued response repeats
            return queue.pop(0) if len(queue) > 1 else queue[0]

    def get(self, url, **kwargs):
        return self._respond("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._respond("POST", url, **kwargs)

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def calls_to(self, url: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["url"] == url]


def ndjson(*resources: Dict[str, Any]) -> List[bytes]:
    return [json.dumps(resource).encode("utf-8") for resource in resources]


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_key_pem(rsa_private_key) -> bytes:
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


@pytest.fixture
def pem_key_file(tmp_path, private_key_pem):
    path = tmp_path / "private_key.pem"
    path.write_bytes(private_key_pem)
    return path


@pytest.fixture
def key_store_file(tmp_path, private_key_pem):
    key_store, _ = build_key_stores(private_key_pem, "test-kid")
    path = tmp_path / "keys.json"
    path.write_text(json.dumps(key_store))
    return path
