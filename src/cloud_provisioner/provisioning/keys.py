"""OpenSSH public key parsing and fingerprinting."""

from __future__ import annotations

import base64
import binascii
import hashlib
import struct
from dataclasses import dataclass

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

SUPPORTED_KEY_TYPES = frozenset(
    {
        "ssh-rsa",
        "ssh-ed25519",
        "ecdsa-sha2-nistp256",
        "ecdsa-sha2-nistp384",
        "ecdsa-sha2-nistp521",
    }
)


@dataclass(frozen=True)
class PublicKey:
    key_type: str
    blob: bytes
    comment: str = ""

    @property
    def fingerprint(self) -> str:
        """Colon-separated MD5 fingerprint, as reported by most cloud APIs."""
        digest = hashlib.md5(self.blob, usedforsecurity=False).hexdigest()
        return ":".join(digest[i : i + 2] for i in range(0, len(digest), 2))


def parse_public_key(text: str) -> PublicKey:
    """Parse an OpenSSH ``<type> <base64> [comment]`` public key line."""
    parts = text.strip().split(None, 2)
    if len(parts) < 2:
        msg = "bad format, should be: ssh-rsa AAAAB3... [comment]"
        raise ValueError(msg)
    key_type, encoded = parts[0], parts[1]
    if key_type not in SUPPORTED_KEY_TYPES:
        msg = f"unsupported key type '{key_type}', expected one of {sorted(SUPPORTED_KEY_TYPES)}"
        raise ValueError(msg)
    try:
        blob = base64.b64decode(encoded, validate=True)
    except binascii.Error as exc:
        msg = f"public key body is not valid base64: {exc}"
        raise ValueError(msg) from exc

    # The blob starts with the length-prefixed key type; it must agree with
    # the declared type or the key was mangled.
    if len(blob) < 4:
        msg = "public key body is truncated"
        raise ValueError(msg)
    (type_len,) = struct.unpack(">I", blob[:4])
    embedded = blob[4 : 4 + type_len].decode("ascii", errors="replace")
    if embedded != key_type:
        msg = f"public key body declares type '{embedded}' but line says '{key_type}'"
        raise ValueError(msg)
    try:
        serialization.load_ssh_public_key(f"{key_type} {encoded}".encode())
    except (ValueError, UnsupportedAlgorithm) as exc:
        msg = f"public key body is invalid: {exc}"
        raise ValueError(msg) from exc
    return PublicKey(
        key_type=key_type, blob=blob, comment=parts[2] if len(parts) > 2 else ""
    )


def normalize_fingerprint(fingerprint: str) -> str:
    """Lower-case, separator-free form used when comparing fingerprints."""
    return fingerprint.replace(":", "").lower()


def fingerprints_match(a: str, b: str) -> bool:
    return normalize_fingerprint(a) == normalize_fingerprint(b)
