"""
ArtVault: artwork gallery backend with duplicate-aware uploads.

This package accepts image uploads, rejects exact and near-duplicate
images, delegates file storage to an external file server and keeps a
catalog of artworks with view, like and bookmark counters.
"""

__version__ = "0.1.0"
