"""Entry codec: passphrase key derivation and authenticated encryption.

Blob layout (streaming-capable)::

    magic "INKW" | version (1 byte) | nonce prefix (7 bytes)
    segment 0 | segment 1 | ... | final segment

Each segment holds up to ``SEGMENT_SIZE`` bytes of plaintext sealed with
AES-256-GCM. The 12-byte nonce is ``prefix | counter (4 bytes) | last flag``,
so truncation, reordering and splicing all fail authentication. The caller's
associated data (the entry's relative path) is bound to every segment.
"""

from __future__ import annotations

import hashlib
import io
import secrets
import struct
from dataclasses import dataclass
from typing import BinaryIO

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from inkwell.constants import KDF_N, KDF_P, KDF_R, KDF_SALT_BYTES, KEY_BYTES, SEGMENT_SIZE
from inkwell.errors import AuthenticationError

MAGIC = b"INKW"
VERSION = 1
_PREFIX_BYTES = 7
_NONCE_BYTES = 12
_TAG_BYTES = 16
HEADER_SIZE = len(MAGIC) + 1 + _PREFIX_BYTES


@dataclass(frozen=True)
class KdfParams:
    """scrypt parameters stored alongside a vault."""

    salt: bytes
    n: int = KDF_N
    r: int = KDF_R
    p: int = KDF_P

    @classmethod
    def generate(cls, *, n: int = KDF_N, r: int = KDF_R, p: int = KDF_P) -> KdfParams:
        """Create parameters with a fresh random salt."""
        return cls(salt=secrets.token_bytes(KDF_SALT_BYTES), n=n, r=r, p=p)

    def to_dict(self) -> dict[str, int | str]:
        """Serialize for the index header."""
        return {"kdf": "scrypt", "salt": self.salt.hex(), "n": self.n, "r": self.r, "p": self.p}

    @classmethod
    def from_dict(cls, data: dict[str, int | str]) -> KdfParams:
        """Parse the index header representation."""
        return cls(
            salt=bytes.fromhex(str(data["salt"])),
            n=int(data["n"]),
            r=int(data["r"]),
            p=int(data["p"]),
        )


def derive_key(passphrase: str, params: KdfParams) -> bytearray:
    """Derive a 256-bit key from a passphrase with scrypt.

    Returns a mutable buffer so the caller can zeroize it.
    """
    kdf = Scrypt(salt=params.salt, length=KEY_BYTES, n=params.n, r=params.r, p=params.p)
    return bytearray(kdf.derive(passphrase.encode("utf-8")))


def zeroize(buffer: bytearray) -> None:
    """Overwrite a key buffer in place."""
    buffer[:] = bytes(len(buffer))


def sha256_hex(data: str | bytes) -> str:
    """Content digest used for change detection and integrity checks."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


# --- Single-shot sealing (Metadata Index) ---


def seal(key: bytes | bytearray, plaintext: bytes, aad: bytes | None = None) -> bytes:
    """Encrypt a whole payload: ``nonce | ciphertext+tag``."""
    nonce = secrets.token_bytes(_NONCE_BYTES)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, aad)


def unseal(key: bytes | bytearray, sealed: bytes, aad: bytes | None = None) -> bytes:
    """Decrypt a payload produced by :func:`seal`."""
    if len(sealed) < _NONCE_BYTES + _TAG_BYTES:
        msg = "Sealed payload is truncated"
        raise AuthenticationError(msg)
    nonce, ciphertext = sealed[:_NONCE_BYTES], sealed[_NONCE_BYTES:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, aad)
    except InvalidTag as exc:
        msg = "Payload failed to authenticate (wrong passphrase or tampered data)"
        raise AuthenticationError(msg) from exc


# --- Streaming entry codec ---


def _segment_nonce(prefix: bytes, counter: int, *, last: bool) -> bytes:
    return prefix + struct.pack(">I", counter) + (b"\x01" if last else b"\x00")


def encrypt_stream(
    key: bytes | bytearray,
    src: BinaryIO,
    dst: BinaryIO,
    aad: bytes,
    *,
    segment_size: int = SEGMENT_SIZE,
) -> int:
    """Encrypt ``src`` into ``dst`` segment by segment.

    Returns:
        Number of ciphertext bytes written.

    """
    aead = AESGCM(key)
    prefix = secrets.token_bytes(_PREFIX_BYTES)
    written = dst.write(MAGIC + bytes([VERSION]) + prefix)

    counter = 0
    current = src.read(segment_size)
    while True:
        following = src.read(segment_size)
        last = not following
        nonce = _segment_nonce(prefix, counter, last=last)
        written += dst.write(aead.encrypt(nonce, current, aad))
        if last:
            return written
        counter += 1
        current = following


def decrypt_stream(
    key: bytes | bytearray,
    src: BinaryIO,
    dst: BinaryIO,
    aad: bytes,
    *,
    segment_size: int = SEGMENT_SIZE,
) -> int:
    """Decrypt ``src`` into ``dst``.

    Segments are authenticated one at a time, so on failure ``dst`` may hold a
    verified prefix of the plaintext; callers writing to disk must discard it.

    Returns:
        Number of plaintext bytes written.

    """
    header = src.read(HEADER_SIZE)
    if len(header) < HEADER_SIZE or header[: len(MAGIC)] != MAGIC:
        msg = "Not an inkwell encrypted blob"
        raise AuthenticationError(msg)
    if header[len(MAGIC)] != VERSION:
        msg = f"Unsupported blob version: {header[len(MAGIC)]}"
        raise AuthenticationError(msg)
    prefix = header[len(MAGIC) + 1 :]

    aead = AESGCM(key)
    sealed_size = segment_size + _TAG_BYTES
    counter = 0
    written = 0
    current = src.read(sealed_size)
    while True:
        following = src.read(sealed_size)
        last = not following
        nonce = _segment_nonce(prefix, counter, last=last)
        try:
            written += dst.write(aead.decrypt(nonce, current, aad))
        except InvalidTag as exc:
            msg = "Entry failed to authenticate (wrong key, truncated or tampered)"
            raise AuthenticationError(msg) from exc
        if last:
            return written
        counter += 1
        current = following


def encrypt_bytes(key: bytes | bytearray, plaintext: bytes, aad: bytes) -> bytes:
    """In-memory wrapper around :func:`encrypt_stream`."""
    out = io.BytesIO()
    encrypt_stream(key, io.BytesIO(plaintext), out, aad)
    return out.getvalue()


def decrypt_bytes(key: bytes | bytearray, blob: bytes, aad: bytes) -> bytes:
    """In-memory wrapper around :func:`decrypt_stream`."""
    out = io.BytesIO()
    decrypt_stream(key, io.BytesIO(blob), out, aad)
    return out.getvalue()


def ciphertext_size(plaintext_size: int, segment_size: int = SEGMENT_SIZE) -> int:
    """Size of a blob holding ``plaintext_size`` bytes."""
    segments = max(1, -(-plaintext_size // segment_size))
    return HEADER_SIZE + plaintext_size + segments * _TAG_BYTES
