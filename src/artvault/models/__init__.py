"""Pydantic models shared across ArtVault modules."""
