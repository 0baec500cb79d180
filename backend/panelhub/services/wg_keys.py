from __future__ import annotations
import base64
from typing import NamedTuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import x25519


class WireGuardKeys(NamedTuple):
    private_key: str
    public_key: str


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _public_of(priv: x25519.X25519PrivateKey) -> str:
    return _b64(priv.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    ))


def generate_keypair() -> WireGuardKeys:
    """Fresh Curve25519 keypair, base64 encoded the way `wg genkey | wg pubkey` prints it."""
    priv = x25519.X25519PrivateKey.generate()
    priv_bytes = priv.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return WireGuardKeys(private_key=_b64(priv_bytes), public_key=_public_of(priv))


def derive_public_key(private_key: str) -> str:
    raw = base64.b64decode(private_key, validate=True)
    if len(raw) != 32:
        raise ValueError("WireGuard private key must be 32 bytes")
    return _public_of(x25519.X25519PrivateKey.from_private_bytes(raw))
