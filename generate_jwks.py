"""
Builds the key files for backend authentication from an RSA private key (PEM):
- keys.json: private key store read by AssertionSigner
- the public JWKS printed to stdout, to register with the authorization server
"""

import base64
import json
import sys
from typing import Any, Dict, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

# --- CONFIGURATION ---
KEY_FILE = 'private_key.pem'   # Your private key file
KEY_ID = 'lab-alerts-key-1'    # This MUST match fhir.key_id in config.json
KEY_STORE_FILE = 'keys.json'
ALGORITHM = 'RS384'
# ---------------------


def int_to_base64(value: int) -> str:
    """Convert an integer to a Base64URL-encoded string."""
    value_hex = format(value, 'x')
    # Ensure even length
    if len(value_hex) % 2 == 1:
        value_hex = '0' + value_hex
    value_bytes = bytes.fromhex(value_hex)
    encoded = base64.urlsafe_b64encode(value_bytes).rstrip(b'=')
    return encoded.decode('utf-8')


def public_jwk(private_key: rsa.RSAPrivateKey, key_id: str, algorithm: str = ALGORITHM) -> Dict[str, Any]:
    public_numbers = private_key.public_key().public_numbers()
    return {
        "kty": "RSA",
        "use": "sig",
        "kid": key_id,
        "alg": algorithm,
        "n": int_to_base64(public_numbers.n),
        "e": int_to_base64(public_numbers.e)
    }


def private_jwk(private_key: rsa.RSAPrivateKey, key_id: str, algorithm: str = ALGORITHM) -> Dict[str, Any]:
    numbers = private_key.private_numbers()
    jwk = public_jwk(private_key, key_id, algorithm)
    jwk.update({
        "d": int_to_base64(numbers.d),
        "p": int_to_base64(numbers.p),
        "q": int_to_base64(numbers.q),
        "dp": int_to_base64(numbers.dmp1),
        "dq": int_to_base64(numbers.dmq1),
        "qi": int_to_base64(numbers.iqmp)
    })
    return jwk


def build_key_stores(private_key_pem: bytes, key_id: str,
                     algorithm: str = ALGORITHM) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Returns:
        (private key store, public JWKS)
    """
    private_key = serialization.load_pem_private_key(private_key_pem, password=None)
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise ValueError("Only RSA private keys are supported")

    key_store = {"keys": [private_jwk(private_key, key_id, algorithm)]}
    jwks = {"keys": [public_jwk(private_key, key_id, algorithm)]}
    return key_store, jwks


def main(key_file: str = KEY_FILE, key_id: str = KEY_ID, key_store_file: str = KEY_STORE_FILE) -> int:
    try:
        with open(key_file, "rb") as f:
            key_store, jwks = build_key_stores(f.read(), key_id)
    except FileNotFoundError:
        print(f"Error: Could not find '{key_file}'. Make sure you generated it with OpenSSL first.")
        return 1
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    with open(key_store_file, "w") as f:
        json.dump(key_store, f, indent=2)
    print(f"Private key store written to {key_store_file} (keep it secret).")

    print("\nSUCCESS! Register the public JWKS below with the authorization server:\n")
    print(json.dumps(jwks, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main(*sys.argv[1:4]))
