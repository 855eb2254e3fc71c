"""
Key pairs and request signing for StakeFlow callers.

Identities are secp256k1 key pairs.  A caller's address is

    "s" + hex(RIPEMD-160(SHA-256(uncompressed_public_key)))

and every POST to the HTTP API carries the public key, a nonce and a
signature over

    METHOD + LF + path + LF + nonce + LF + raw_body

so the server can derive the caller's address without holding any
secret, and a captured request cannot be replayed or sent to another
route.  Nonces are millisecond timestamps that strictly increase per
wallet.
"""

from __future__ import annotations

import hashlib
import time

from Crypto.Hash import RIPEMD160
from ecdsa import BadSignatureError, MalformedPointError, SECP256k1, SigningKey, VerifyingKey
from ecdsa.util import sigdecode_string, sigencode_string

ADDRESS_PREFIX = "s"

# PBKDF2 work factor for seed-derived wallets.
_SEED_ITERATIONS = 100_000
_SEED_SALT = b"StakeFlow/seed/v1"

# Header names used by ``sign_request`` and the API middleware.
PUBLIC_KEY_HEADER = "X-Public-Key"
SIGNATURE_HEADER = "X-Signature"
NONCE_HEADER = "X-Nonce"


def hash160(data: bytes) -> bytes:
    """RIPEMD-160 of SHA-256, as used for address derivation."""
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


def derive_address(public_key: bytes) -> str:
    return ADDRESS_PREFIX + hash160(public_key).hex()


def signing_payload(method: str, path: str, nonce: int, body: bytes) -> bytes:
    """Bytes covered by a request signature."""
    return f"{method.upper()}\n{path}\n{nonce}\n".encode("utf-8") + body


def verify_signature(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """True when *signature* is a valid secp256k1/SHA-256 signature of *message*."""
    try:
        vk = VerifyingKey.from_string(public_key, curve=SECP256k1)
        return vk.verify(signature, message, hashfunc=hashlib.sha256, sigdecode=sigdecode_string)
    except (BadSignatureError, MalformedPointError, ValueError):
        return False


class Wallet:
    """A secp256k1 key pair with its derived address."""

    def __init__(self, private_key: bytes):
        self._sk = SigningKey.from_string(private_key, curve=SECP256k1)
        self.private_key = private_key
        self.public_key: bytes = b"\x04" + self._sk.get_verifying_key().to_string()
        self.address: str = derive_address(self.public_key)
        self._last_nonce = 0

    @classmethod
    def create(cls) -> Wallet:
        """Generate a fresh random key pair."""
        return cls(SigningKey.generate(curve=SECP256k1).to_string())

    @classmethod
    def from_seed(cls, seed: str) -> Wallet:
        """Derive a wallet deterministically from a seed phrase (PBKDF2-HMAC-SHA256)."""
        priv = hashlib.pbkdf2_hmac("sha256", seed.encode("utf-8"), _SEED_SALT, _SEED_ITERATIONS)
        return cls(priv)

    def sign(self, message: bytes) -> bytes:
        """Deterministic (RFC 6979) 64-byte r||s signature over SHA-256(message)."""
        return self._sk.sign_deterministic(
            message, hashfunc=hashlib.sha256, sigencode=sigencode_string,
        )

    def next_nonce(self) -> int:
        """Current time in milliseconds, bumped so it never repeats."""
        self._last_nonce = max(time.time_ns() // 1_000_000, self._last_nonce + 1)
        return self._last_nonce

    def sign_request(
        self, method: str, path: str, body: bytes, nonce: int | None = None,
    ) -> dict[str, str]:
        """Headers authenticating *body* sent to ``method path`` by this wallet."""
        if nonce is None:
            nonce = self.next_nonce()
        return {
            PUBLIC_KEY_HEADER: self.public_key.hex(),
            NONCE_HEADER: str(nonce),
            SIGNATURE_HEADER: self.sign(signing_payload(method, path, nonce, body)).hex(),
        }

    def __repr__(self) -> str:
        return f"Wallet({self.address})"
