"""
API key authentication for mutating catalog routes.

Keys come from settings plus a key file. When the key file does not
exist on first start, a random key is generated and written there so an
operator can read it back.
"""

import hmac
import logging
import secrets
import threading
from pathlib import Path
from typing import Callable, FrozenSet, Iterable, Optional

from fastapi import Depends, HTTPException
from fastapi.security import APIKeyHeader

from .config import Settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"
GENERATED_KEY_BYTES = 16


class APIKeyPolicy:
    """Set of accepted API keys, replaceable at runtime."""

    def __init__(self, keys: Iterable[str], key_file: Optional[Path] = None):
        self.key_file = Path(key_file) if key_file else None
        self._static_keys = self._clean(keys)
        self._lock = threading.Lock()
        self._keys: FrozenSet[str] = self._static_keys | self._read_key_file()

    @staticmethod
    def _clean(keys: Iterable[str]) -> FrozenSet[str]:
        return frozenset(key.strip() for key in keys if key and key.strip())

    def _read_key_file(self) -> FrozenSet[str]:
        if self.key_file is None or not self.key_file.exists():
            return frozenset()
        return self._clean(self.key_file.read_text(encoding="utf-8").splitlines())

    @classmethod
    def from_settings(cls, settings: Settings) -> "APIKeyPolicy":
        """Build the policy, generating the key file on first run."""
        key_file = Path(settings.api_key_file)
        if not key_file.exists():
            key_file.parent.mkdir(parents=True, exist_ok=True)
            key_file.write_text(secrets.token_hex(GENERATED_KEY_BYTES) + "\n")
            logger.info(f"Generated new API key in {key_file}")
        return cls(settings.api_keys, key_file)

    def is_valid(self, key: Optional[str]) -> bool:
        """Constant-time check of a presented key."""
        if not key:
            return False
        with self._lock:
            keys = self._keys
        candidate = key.encode()
        # Compare against every key so timing does not depend on which matched
        matched = False
        for accepted in keys:
            if hmac.compare_digest(candidate, accepted.encode()):
                matched = True
        return matched

    def rotate(self, keys: Iterable[str]) -> None:
        """Replace the accepted key set atomically."""
        new_keys = self._clean(keys)
        with self._lock:
            self._keys = new_keys
        logger.info(f"API keys rotated ({len(new_keys)} active)")

    def reload(self) -> None:
        """Re-read the key file, keeping keys from settings."""
        new_keys = self._static_keys | self._read_key_file()
        with self._lock:
            self._keys = new_keys
        logger.info(f"API keys reloaded ({len(new_keys)} active)")

    @property
    def key_count(self) -> int:
        with self._lock:
            return len(self._keys)


api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def require_api_key(get_policy: Callable[[], APIKeyPolicy]) -> Callable[..., str]:
    """FastAPI dependency rejecting requests without a valid key."""

    def dependency(
        api_key: Optional[str] = Depends(api_key_header),
        policy: APIKeyPolicy = Depends(get_policy),
    ) -> str:
        if not policy.is_valid(api_key):
            logger.warning("Rejected request with missing or invalid API key")
            raise HTTPException(status_code=401, detail="Invalid or missing API key")
        return api_key

    return dependency
