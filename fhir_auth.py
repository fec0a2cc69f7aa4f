"""
SMART Backend Services authentication.
Signs a JWT client assertion with the pre-provisioned private key and exchanges it
for a bearer access token at the OAuth2 token endpoint (client_credentials grant).
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import jwt
import requests
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from lab_alert_errors import AuthError, KeyLoadError, SigningError

logger = logging.getLogger(__name__)

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
ASSERTION_LIFETIME_SECONDS = 240
DEFAULT_ALGORITHM = "RS384"


@dataclass(frozen=True)
class SigningKey:
    """Parsed private key plus the kid/alg that go into the JWS header."""
    key: Any
    key_id: Optional[str]
    algorithm: str


@dataclass(frozen=True)
class AccessToken:
    value: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    scope: Optional[str] = None

    @property
    def authorization(self) -> str:
        return f"Bearer {self.value}"


class AssertionSigner:
    """Signs client assertions with a single signing key read from disk."""

    def __init__(self, key_path: Union[str, Path], key_id: Optional[str] = None,
                 algorithm: str = DEFAULT_ALGORITHM):
        """
        Args:
            key_path: PEM private key, or a JSON key store ({"keys": [...]}) holding
                a private JWK with use "sig"
            key_id: kid for the JWS header when the key file is PEM (a key store
                supplies its own kid)
            algorithm: JWS algorithm used when the key does not declare one
        """
        self.key_path = Path(key_path)
        self.key_id = key_id
        self.algorithm = algorithm
        self._signing_key: Optional[SigningKey] = None

    def _load_signing_key(self) -> SigningKey:
        """Load and cache the private key; it does not change for the process lifetime."""
        if self._signing_key is not None:
            return self._signing_key

        try:
            raw = self.key_path.read_bytes()
        except OSError as e:
            raise KeyLoadError(f"Cannot read key file {self.key_path}: {e}") from e

        if raw.lstrip().startswith(b"{"):
            signing_key = self._load_key_store(raw)
        else:
            signing_key = self._load_pem(raw)

        logger.info(f"Signing key loaded from {self.key_path} (kid={signing_key.key_id}, alg={signing_key.algorithm})")
        self._signing_key = signing_key
        return signing_key

    def _load_pem(self, raw: bytes) -> SigningKey:
        try:
            private_key = serialization.load_pem_private_key(raw, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise KeyLoadError(f"{self.key_path} is not a usable PEM private key: {e}") from e

        if not isinstance(private_key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
            raise KeyLoadError(f"{self.key_path} does not contain an RSA or EC signing key")
        return SigningKey(key=private_key, key_id=self.key_id, algorithm=self.algorithm)

    def _load_key_store(self, raw: bytes) -> SigningKey:
        try:
            key_store = json.loads(raw)
        except ValueError as e:
            raise KeyLoadError(f"{self.key_path} is not valid JSON: {e}") from e

        keys = key_store.get("keys", []) if isinstance(key_store, dict) else []
        for jwk in keys:
            # Only private signing keys are usable; public entries have no "d"
            if not isinstance(jwk, dict) or jwk.get("use", "sig") != "sig" or "d" not in jwk:
                continue
            try:
                parsed = jwt.PyJWK(jwk)
            except (jwt.PyJWKError, jwt.InvalidKeyError, KeyError, ValueError) as e:
                logger.warning(f"Skipping unusable key {jwk.get('kid')} in {self.key_path}: {e}")
                continue
            return SigningKey(
                key=parsed.key,
                key_id=jwk.get("kid", self.key_id),
                algorithm=jwk.get("alg", self.algorithm),
            )

        raise KeyLoadError(f"No signing-capable private key in {self.key_path}")

    def sign(self, claims: Dict[str, Any]) -> str:
        """
        Sign claims into a compact JWS.

        Raises:
            KeyLoadError: key material missing or unusable
            SigningError: the cryptographic operation failed
        """
        signing_key = self._load_signing_key()

        headers = {"typ": "JWT"}
        if signing_key.key_id:
            headers["kid"] = signing_key.key_id

        try:
            token = jwt.encode(
                payload=claims,
                key=signing_key.key,
                algorithm=signing_key.algorithm,
                headers=headers
            )
        except (jwt.PyJWTError, ValueError, TypeError, NotImplementedError) as e:
            raise SigningError(f"Failed to sign client assertion with {signing_key.algorithm}: {e}") from e

        logger.debug(f"Client assertion JWT created with kid={signing_key.key_id}")
        return token


def build_assertion_claims(client_id: str, token_url: str, now: Optional[int] = None) -> Dict[str, Any]:
    """Claims for one token request. jti is fresh on every call so assertions are never replayed."""
    if now is None:
        now = int(time.time())
    return {
        "iss": client_id,
        "sub": client_id,
        "aud": token_url,
        "jti": str(uuid.uuid4()),
        "exp": now + ASSERTION_LIFETIME_SECONDS
    }


class TokenClient:
    """Exchanges signed assertions for access tokens at the OAuth2 token endpoint."""

    def __init__(self, session: requests.Session, client_id: str, token_url: str,
                 scope: Optional[str] = None, timeout: float = 30):
        self.session = session
        self.client_id = client_id
        self.token_url = token_url
        self.scope = scope
        self.timeout = timeout

    def acquire_token(self, signer: AssertionSigner) -> AccessToken:
        """
        Request an access token using the client_credentials grant.

        Not retried: a rejected assertion does not become valid on a second attempt.

        Raises:
            AuthError: non-2xx response, transport failure, or no access_token in the body
        """
        client_assertion = signer.sign(build_assertion_claims(self.client_id, self.token_url))

        data = {
            "grant_type": "client_credentials",
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
            "client_assertion": client_assertion
        }
        if self.scope:
            data["scope"] = self.scope

        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json"
        }

        try:
            response = self.session.post(self.token_url, data=data, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise AuthError(f"Token request to {self.token_url} failed: {e}") from e

        if not 200 <= response.status_code < 300:
            logger.error(f"Authentication failed: {response.status_code} - {response.text}")
            raise AuthError(f"Token endpoint returned {response.status_code}", status=response.status_code)

        try:
            token_data = response.json()
        except ValueError as e:
            raise AuthError("Token response is not JSON", status=response.status_code) from e

        access_token = token_data.get("access_token") if isinstance(token_data, dict) else None
        if not access_token:
            raise AuthError("Token response has no access_token", status=response.status_code)

        logger.info("Authentication successful")
        return AccessToken(
            value=access_token,
            token_type=token_data.get("token_type", "Bearer"),
            expires_in=token_data.get("expires_in"),
            scope=token_data.get("scope")
        )
