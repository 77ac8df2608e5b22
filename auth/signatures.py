"""
auth/signatures.py -- RSA-PSS signature verification for the CLI challenge-response login.

Canonical payload encoding (frozen -- clients must produce exactly these bytes):

    json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    encoded as UTF-8

Keys are sorted so the encoding does not depend on the order in which the
client or the JSON parser happened to build the object. A client that signs
any other byte sequence for the same object will fail verification.

Signature scheme: RSA-PSS, MGF1(SHA-256), SHA-256 digest. Signers use the
maximum salt length; the verifier auto-detects the salt length so clients
built on other libraries (e.g. Node's crypto defaults) also verify.

verify_signature() returns Result.success(False) on a cryptographic mismatch
and a VERIFICATION_ERROR result only for malformed input: invalid base64, an
unparsable or non-RSA key, or a payload that cannot be encoded.

Public key fingerprint: SHA-256 hex digest of the DER SubjectPublicKeyInfo
encoding. Independent of PEM line wrapping or trailing whitespace.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from typing import Any

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from auth.result import ErrorKind, Result


def canonical_payload(payload: Any) -> bytes:
    """Return the deterministic byte encoding that signatures are computed over."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def load_rsa_public_key(public_key_pem: str) -> rsa.RSAPublicKey:
    """Parse a PEM public key. Raises ValueError for malformed or non-RSA material."""
    try:
        key = serialization.load_pem_public_key(public_key_pem.strip().encode("utf-8"))
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise ValueError("unparsable public key") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("public key is not an RSA key")
    return key


def public_key_fingerprint(public_key_pem: str) -> str:
    """Return the SHA-256 hex fingerprint of a PEM public key."""
    key = load_rsa_public_key(public_key_pem)
    der = key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(der).hexdigest()


def verify_signature(payload: Any, signature_b64: str, public_key_pem: str) -> Result[bool]:
    """Verify a base64 RSA-PSS/SHA-256 signature over the canonical payload encoding."""
    try:
        message = canonical_payload(payload)
    except (TypeError, ValueError) as exc:
        return Result.fail(ErrorKind.VERIFICATION_ERROR, f"Payload cannot be encoded: {exc}")

    try:
        signature = base64.b64decode(signature_b64, validate=True)
    except (binascii.Error, ValueError):
        return Result.fail(ErrorKind.VERIFICATION_ERROR, "Signature is not valid base64.")

    try:
        public_key = load_rsa_public_key(public_key_pem)
    except ValueError as exc:
        return Result.fail(ErrorKind.VERIFICATION_ERROR, f"Invalid public key: {exc}")

    try:
        public_key.verify(
            signature,
            message,
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.AUTO),
            hashes.SHA256(),
        )
    except InvalidSignature:
        return Result.success(False)
    return Result.success(True)


def sign_payload(payload: Any, private_key_pem: str, password: bytes | None = None) -> str:
    """Sign the canonical payload encoding and return the signature as standard base64.

    Client-side counterpart of verify_signature(), used by the CLI client.
    """
    private_key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=password)
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise ValueError("private key is not an RSA key")
    signature = private_key.sign(
        canonical_payload(payload),
        padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH),
        hashes.SHA256(),
    )
    return base64.b64encode(signature).decode("ascii")
