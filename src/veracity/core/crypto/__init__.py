# SPDX-License-Identifier: MPL-2.0
"""Signature primitives for attestation envelopes.

Attestations are DSSE envelopes: the signature covers the pre-authentication
encoding (PAE) of the payload type and payload, never the payload alone.
Issuers publish their public keys as JSON Web Keys; each key may be bound to
a signing identity (``sub``) and a validity window (``nbf``/``exp``).

:class:`KeyPair` is a small Ed25519 wrapper able to produce envelopes in the
same format. It is what the test-suite and local tooling use to mint
attestations.
"""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union, cast

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519

from veracity.core.exceptions import InvalidKeyError

logger = logging.getLogger(__name__)

PAYLOAD_TYPE_INTOTO = "application/vnd.in-toto+json"

PublicKey = Union[ed25519.Ed25519PublicKey, ec.EllipticCurvePublicKey]


def pae(payload_type: str, payload: bytes) -> bytes:
    """Return the DSSE v1 pre-authentication encoding of a payload."""
    encoded_type = payload_type.encode("utf-8")
    return b"DSSEv1 %d %s %d %s" % (len(encoded_type), encoded_type, len(payload), payload)


def b64u_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64u_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def b64_decode(data: str) -> bytes:
    """Decode standard or URL-safe base64, as both appear in DSSE envelopes."""
    padding = "=" * (-len(data) % 4)
    if "-" in data or "_" in data:
        return base64.urlsafe_b64decode(data + padding)
    return base64.b64decode(data + padding, validate=True)


@dataclass
class KeyPair:
    """Represents an Ed25519 public/private key pair."""

    private_key: ed25519.Ed25519PrivateKey
    public_key: ed25519.Ed25519PublicKey
    kid: str = field(default_factory=lambda: f"key-{os.urandom(8).hex()}")

    @classmethod
    def generate(cls, kid: Optional[str] = None) -> KeyPair:
        """Generate a new key pair.

        Args:
            kid: Optional key identifier. If omitted, a random identifier is
                generated.
        """
        private_key = ed25519.Ed25519PrivateKey.generate()
        return cls(
            private_key=private_key,
            public_key=private_key.public_key(),
            kid=kid or f"key-{os.urandom(8).hex()}",
        )

    def sign(self, data: bytes) -> bytes:
        """Sign raw data with the private key."""
        return cast("bytes", self.private_key.sign(data))

    def sign_envelope(self, payload: bytes, payload_type: str = PAYLOAD_TYPE_INTOTO) -> dict:
        """Return a DSSE envelope over ``payload`` signed with this key."""
        signature = self.sign(pae(payload_type, payload))
        return {
            "payloadType": payload_type,
            "payload": base64.b64encode(payload).decode("ascii"),
            "signatures": [
                {"keyid": self.kid, "sig": base64.b64encode(signature).decode("ascii")}
            ],
        }

    def public_bytes(self) -> bytes:
        """Get the public key as bytes."""
        return cast(
            "bytes",
            self.public_key.public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw,
            ),
        )

    def to_jwk(
        self,
        subject: Optional[str] = None,
        not_before: Optional[datetime] = None,
        not_after: Optional[datetime] = None,
    ) -> dict:
        """Return the public half in JSON Web Key format.

        Args:
            subject: Signing identity the issuer binds to this key.
            not_before: Start of the validity window.
            not_after: End of the validity window.
        """
        jwk: dict[str, Any] = {
            "kty": "OKP",
            "crv": "Ed25519",
            "kid": self.kid,
            "x": b64u_encode(self.public_bytes()),
        }
        if subject is not None:
            jwk["sub"] = subject
        if not_before is not None:
            jwk["nbf"] = int(not_before.timestamp())
        if not_after is not None:
            jwk["exp"] = int(not_after.timestamp())
        return jwk


def load_public_jwk(jwk: Mapping[str, Any]) -> PublicKey:
    """Load an Ed25519 (``OKP``) or P-256 (``EC``) public key from a JWK."""
    try:
        kty, crv = jwk["kty"], jwk["crv"]
        if kty == "OKP" and crv == "Ed25519":
            return ed25519.Ed25519PublicKey.from_public_bytes(b64u_decode(jwk["x"]))
        if kty == "EC" and crv == "P-256":
            x = int.from_bytes(b64u_decode(jwk["x"]), "big")
            y = int.from_bytes(b64u_decode(jwk["y"]), "big")
            return ec.EllipticCurvePublicNumbers(x, y, ec.SECP256R1()).public_key()
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidKeyError(f"Malformed JWK: {exc}") from exc
    raise InvalidKeyError(f"Unsupported JWK parameters: kty={kty!r} crv={crv!r}")


def verify_signature(public_key: PublicKey, data: bytes, signature: bytes) -> bool:
    """Verify a signature, returning ``False`` rather than raising on mismatch."""
    try:
        if isinstance(public_key, ed25519.Ed25519PublicKey):
            public_key.verify(signature, data)
        else:
            public_key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature:
        return False
    return True


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidKeyError(f"Invalid JWK timestamp: {value!r}")
    return datetime.fromtimestamp(value, timezone.utc)


@dataclass(frozen=True)
class IssuerKey:
    """A public key published by an issuer and the identity bound to it."""

    kid: str
    issuer: str
    public_key: PublicKey = field(repr=False, compare=False)
    subject: Optional[str] = None
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None

    def is_valid_at(self, moment: Optional[datetime]) -> bool:
        """Whether the key was valid at ``moment`` (now when ``None``)."""
        moment = moment or datetime.now(timezone.utc)
        if self.not_before and moment < self.not_before:
            return False
        if self.not_after and moment > self.not_after:
            return False
        return True


class IssuerKeySet:
    """Public keys published by one issuer, indexed by key id.

    Keys of unsupported types are skipped; they cannot verify anything we
    understand, and an issuer may legitimately publish them alongside keys we
    do support.
    """

    def __init__(self, issuer: str, keys: Optional[list[IssuerKey]] = None) -> None:
        self.issuer = issuer
        self._keys: dict[str, IssuerKey] = {key.kid: key for key in keys or []}

    @classmethod
    def from_jwks(cls, issuer: str, document: Mapping[str, Any]) -> IssuerKeySet:
        """Build a key set from a ``{"keys": [...]}`` JWKS document."""
        raw_keys = document.get("keys") if isinstance(document, Mapping) else None
        if not isinstance(raw_keys, list):
            raise InvalidKeyError(f"Key set for {issuer} has no 'keys' array")
        keys = []
        for raw in raw_keys:
            if not isinstance(raw, Mapping) or not isinstance(raw.get("kid"), str):
                logger.warning(f"Skipping key without kid in key set for {issuer}")
                continue
            try:
                keys.append(
                    IssuerKey(
                        kid=raw["kid"],
                        issuer=issuer,
                        public_key=load_public_jwk(raw),
                        subject=raw.get("sub"),
                        not_before=_timestamp(raw.get("nbf")),
                        not_after=_timestamp(raw.get("exp")),
                    )
                )
            except InvalidKeyError as exc:
                logger.warning(f"Skipping key {raw['kid']} from {issuer}: {exc}")
        return cls(issuer, keys)

    def get(self, kid: str) -> Optional[IssuerKey]:
        return self._keys.get(kid)

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self):
        return iter(self._keys.values())
