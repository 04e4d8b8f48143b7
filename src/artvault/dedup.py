"""
Exact and near-duplicate detection against the catalog.

Exact duplicates are found through the indexed content digest. Near
duplicates are found by a linear scan over every live record carrying a
perceptual digest, comparing Hamming distance between the 64-bit hashes.
The scan is the reference implementation; a bucketed index over the
perceptual digests would replace it once the catalog no longer fits in
memory.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from .fingerprint import NO_PERCEPTUAL_DIGEST
from .models.schemas import Artwork
from .storage import CatalogRepository

logger = logging.getLogger(__name__)

HASH_BITS = 64
_HASH_MASK = (1 << HASH_BITS) - 1


def hamming_distance(hash1: int, hash2: int) -> int:
    """
    Number of differing bits between two 64-bit perceptual hashes.

    Signed values are compared by their two's-complement bit pattern.
    """
    return bin((hash1 ^ hash2) & _HASH_MASK).count("1")


@dataclass(frozen=True)
class SimilarArtwork:
    """Catalog record within the similarity threshold of a query hash."""

    artwork: Artwork
    distance: int


class DuplicateDetector:
    """Looks up catalog records that duplicate an incoming upload."""

    def __init__(self, repository: CatalogRepository):
        assert repository is not None, "Repository is required"
        self.repository = repository

    def check_exact_duplicate(self, digest: str) -> Optional[Artwork]:
        """
        Find the live record with exactly this content digest.

        Args:
            digest: SHA-256 hex digest

        Returns:
            Matching artwork or None

        Raises:
            StorageError: If the lookup fails
        """
        artwork = self.repository.get_by_hash(digest)
        if artwork is not None:
            logger.debug(f"Exact duplicate of artwork {artwork.id}")
        return artwork

    def rank_similar(
        self, perceptual_digest: int, max_distance: int
    ) -> List[SimilarArtwork]:
        """
        Records within max_distance of the query hash, with distances.

        Ordered by ascending distance, ties broken by ascending id.
        Records without a perceptual digest never match, and neither
        does a query without one.
        """
        assert max_distance >= 0, f"Invalid max_distance: {max_distance}"

        if perceptual_digest == NO_PERCEPTUAL_DIGEST:
            return []

        candidates = self.repository.get_all_with_phash()
        logger.debug(f"Comparing perceptual hash against {len(candidates)} records")

        matches = []
        for artwork in candidates:
            if artwork.phash == NO_PERCEPTUAL_DIGEST:
                continue
            distance = hamming_distance(perceptual_digest, artwork.phash)
            if distance <= max_distance:
                matches.append(SimilarArtwork(artwork=artwork, distance=distance))

        matches.sort(key=lambda match: (match.distance, match.artwork.id))
        return matches

    def check_similar(
        self, perceptual_digest: int, max_distance: int
    ) -> List[Artwork]:
        """
        Find records visually similar to the query hash.

        Args:
            perceptual_digest: 64-bit perceptual hash of the upload
            max_distance: Maximum Hamming distance counted as similar

        Returns:
            Matching artworks, nearest first

        Raises:
            StorageError: If the catalog scan fails
        """
        return [
            match.artwork
            for match in self.rank_similar(perceptual_digest, max_distance)
        ]
