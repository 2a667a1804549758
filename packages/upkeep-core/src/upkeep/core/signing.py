"""Manifest signatures.

The signed input is always the canonical manifest serialization with the
signature attribute left out (see `upkeep.core.codec.canonical_bytes`).
RSA keys use PKCS#1 v1.5 over SHA-256, EC keys ECDSA over SHA-256, and
Ed25519 keys sign the bytes directly.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Tuple, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from upkeep.core.exception import SignatureError

log = logging.getLogger("upkeep.core.signing")

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey]
PublicKey = Union[rsa.RSAPublicKey, ec.EllipticCurvePublicKey, ed25519.Ed25519PublicKey]


def sign(data: bytes, private_key: PrivateKey) -> bytes:
    if isinstance(private_key, rsa.RSAPrivateKey):
        return private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        return private_key.sign(data, ec.ECDSA(hashes.SHA256()))
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        return private_key.sign(data)
    raise SignatureError(f"unsupported private key type: {type(private_key).__name__}")


def verify(data: bytes, signature: bytes, public_key: PublicKey) -> bool:
    """Return True when `signature` is valid for `data` under `public_key`.

    A bad signature returns False; a key type that cannot verify at all
    raises SignatureError.
    """
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
        elif isinstance(public_key, ed25519.Ed25519PublicKey):
            public_key.verify(signature, data)
        else:
            raise SignatureError(f"unsupported public key type: {type(public_key).__name__}")
    except InvalidSignature:
        log.debug("signature mismatch (%d bytes signed)", len(data))
        return False
    return True


def _pem_bytes(pem_or_path: Union[bytes, str, Path]) -> bytes:
    if isinstance(pem_or_path, bytes):
        return pem_or_path
    text = str(pem_or_path)
    if text.lstrip().startswith("-----BEGIN"):
        return text.encode("utf-8")
    return Path(text).expanduser().read_bytes()


def load_private_key(pem_or_path: Union[bytes, str, Path], password: bytes | None = None) -> PrivateKey:
    try:
        return serialization.load_pem_private_key(_pem_bytes(pem_or_path), password=password)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise SignatureError(f"cannot load private key: {e}") from e


def load_public_key(pem_or_path: Union[bytes, str, Path]) -> PublicKey:
    try:
        return serialization.load_pem_public_key(_pem_bytes(pem_or_path))
    except (ValueError, UnsupportedAlgorithm) as e:
        raise SignatureError(f"cannot load public key: {e}") from e


def generate_key_pair(bits: int = 2048) -> Tuple[rsa.RSAPrivateKey, rsa.RSAPublicKey]:
    priv = rsa.generate_private_key(public_exponent=65537, key_size=int(bits))
    return priv, priv.public_key()


def dump_private_key(private_key: PrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def dump_public_key(public_key: PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
