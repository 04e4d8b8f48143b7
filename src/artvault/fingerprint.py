"""
Content fingerprinting for uploaded images.

Two digests are computed per upload: a SHA-256 content digest used for
exact duplicate detection, and a 64-bit perceptual hash (pHash) used for
near-duplicate detection. The perceptual digest is stored as a signed
64-bit integer so it fits an SQLite INTEGER column; zero means
"not computed".
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import BinaryIO

import imagehash
import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

CHUNK_SIZE = 65536
PHASH_SIZE = 8  # 8x8 -> 64 bits
NO_PERCEPTUAL_DIGEST = 0


class FingerprintError(Exception):
    """Fingerprint computation errors."""


@dataclass(frozen=True)
class Fingerprint:
    """Digests computed once per upload attempt."""

    content_digest: str
    perceptual_digest: int = NO_PERCEPTUAL_DIGEST

    @property
    def has_perceptual_digest(self) -> bool:
        return self.perceptual_digest != NO_PERCEPTUAL_DIGEST


def compute_content_digest(stream: BinaryIO) -> str:
    """
    Calculate SHA-256 hex digest of a byte stream.

    Reads the stream to its end; rewind it before reusing.

    Args:
        stream: Readable binary stream

    Returns:
        64-character hex digest
    """
    assert stream is not None, "Stream is required"

    sha256_hash = hashlib.sha256()
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        sha256_hash.update(chunk)
    return sha256_hash.hexdigest()


def compute_perceptual_digest(stream: BinaryIO) -> int:
    """
    Calculate the 64-bit perceptual hash of an image stream.

    Args:
        stream: Readable binary stream holding an encoded image

    Returns:
        Perceptual hash packed into a signed 64-bit integer

    Raises:
        FingerprintError: If the image cannot be decoded or hashed
    """
    assert stream is not None, "Stream is required"

    try:
        with Image.open(stream) as img:
            img.load()  # Detect truncated images before hashing
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            phash = imagehash.phash(img, hash_size=PHASH_SIZE)
    except Exception as e:
        raise FingerprintError(f"Failed to compute perceptual hash: {e}") from e

    return phash_to_int(phash)


def fingerprint(stream: BinaryIO) -> Fingerprint:
    """
    Compute both digests of a seekable stream.

    A perceptual hash failure is logged and yields NO_PERCEPTUAL_DIGEST.
    """
    stream.seek(0)
    content_digest = compute_content_digest(stream)

    stream.seek(0)
    try:
        perceptual_digest = compute_perceptual_digest(stream)
    except FingerprintError as e:
        logger.warning(f"Perceptual hash skipped: {e}")
        perceptual_digest = NO_PERCEPTUAL_DIGEST

    stream.seek(0)
    return Fingerprint(content_digest, perceptual_digest)


def phash_to_int(phash: imagehash.ImageHash) -> int:
    """Pack an ImageHash bit matrix into a signed 64-bit integer."""
    bits = np.asarray(phash.hash, dtype=bool).flatten()
    if bits.size != PHASH_SIZE * PHASH_SIZE:
        raise FingerprintError(f"Unexpected perceptual hash width: {bits.size}")
    packed = np.packbits(bits).tobytes()
    return int.from_bytes(packed, byteorder="big", signed=True)


__all__ = [
    "Fingerprint",
    "FingerprintError",
    "NO_PERCEPTUAL_DIGEST",
    "compute_content_digest",
    "compute_perceptual_digest",
    "fingerprint",
    "phash_to_int",
]
