"""
API key storage for AI providers.

Keys are kept in a single persisted blob keyed by lower-cased provider name.
Format checks here are a convenience for the user; the provider's API is the
only authority on whether a key is actually valid.
"""

import logging
import re
import time
from typing import Callable, Dict, List, Optional

from .errors import validation_error
from ai_quota_guard.storage.models import CredentialRecord
from ai_quota_guard.storage.repository import BlobRepository

logger = logging.getLogger(__name__)

CREDENTIALS_BLOB_KEY = "ai_tools_api_keys"

SUPPORTED_PROVIDERS = ("openai", "anthropic", "google")

KEY_PATTERNS: Dict[str, "re.Pattern[str]"] = {
    "openai": re.compile(r"^sk-[a-zA-Z0-9]{20,}$"),
    "anthropic": re.compile(r"^sk-ant-[a-zA-Z0-9-]{20,}$"),
    "google": re.compile(r"^[a-zA-Z0-9_-]{20,}$"),
}

MASK_CHAR = "*"
VISIBLE_SUFFIX = 4


def _normalize(provider) -> Optional[str]:
    if not isinstance(provider, str) or not provider.strip():
        return None
    return provider.strip().lower()


def _now_ms() -> int:
    return int(time.time() * 1000)


class CredentialStore:
    """Persists, validates and masks per-provider API keys.

    The store is the only writer of the credential blob. Lookups for absent
    or malformed provider names return None/False instead of raising.
    """

    def __init__(self, repository: BlobRepository, clock: Optional[Callable[[], int]] = None):
        """Initialize the store.

        Args:
            repository: Blob repository holding the credential record
            clock: Returns the current time in epoch milliseconds
        """
        self.repository = repository
        self.clock = clock or _now_ms

    def _load(self) -> Dict[str, CredentialRecord]:
        raw = self.repository.get(CREDENTIALS_BLOB_KEY)
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            logger.warning("Ignoring malformed credential record of type %s", type(raw).__name__)
            return {}
        records = {}
        for provider, entry in raw.items():
            record = CredentialRecord.from_dict(entry)
            if record is not None:
                records[provider] = record
        return records

    def set_key(self, provider: str, key: str) -> None:
        """Store an API key for a provider, replacing any existing one.

        Raises:
            AIError: validation error if provider or key is empty
        """
        name = _normalize(provider)
        if name is None:
            raise validation_error("Provider must be a non-empty string")
        if not isinstance(key, str) or not key:
            raise validation_error("Key must be a non-empty string")

        record = CredentialRecord(key=key, added_at=self.clock())

        def mutate(raw):
            keys = raw if isinstance(raw, dict) else {}
            keys[name] = record.to_dict()
            return keys, None

        self.repository.update(CREDENTIALS_BLOB_KEY, mutate)
        if not self.validate_key_format(name, key):
            logger.warning("Stored key for %s does not match the expected format", name)

    def get_key(self, provider: str) -> Optional[str]:
        name = _normalize(provider)
        if name is None:
            return None
        record = self._load().get(name)
        if record is None or not record.key:
            return None
        return record.key

    def has_key(self, provider: str) -> bool:
        return self.get_key(provider) is not None

    def remove_key(self, provider: str) -> None:
        """Remove the key for a provider; no-op if none is stored."""
        name = _normalize(provider)
        if name is None or name not in self._load():
            return

        def mutate(raw):
            keys = raw if isinstance(raw, dict) else {}
            keys.pop(name, None)
            return keys, None

        self.repository.update(CREDENTIALS_BLOB_KEY, mutate)

    def get_masked_key(self, provider: str) -> Optional[str]:
        """Return the key with all but its last four characters masked.

        Keys of four characters or fewer are returned as-is. This is for
        display only and offers no protection.
        """
        key = self.get_key(provider)
        if key is None:
            return None
        if len(key) <= VISIBLE_SUFFIX:
            return key
        return MASK_CHAR * (len(key) - VISIBLE_SUFFIX) + key[-VISIBLE_SUFFIX:]

    def validate_key_format(self, provider: str, key: str) -> bool:
        """Check a key against the provider's expected shape.

        Providers without a registered pattern accept any non-empty string.
        """
        name = _normalize(provider)
        if name is None or not isinstance(key, str) or not key:
            return False
        pattern = KEY_PATTERNS.get(name)
        if pattern is None:
            return True
        return bool(pattern.fullmatch(key))

    def get_configured_providers(self) -> List[str]:
        return [provider for provider, record in self._load().items() if record.key]

    def get_supported_providers(self) -> List[str]:
        return list(SUPPORTED_PROVIDERS)

    def get_key_added_at(self, provider: str) -> Optional[int]:
        name = _normalize(provider)
        if name is None:
            return None
        record = self._load().get(name)
        if record is None or not record.added_at:
            return None
        return record.added_at
