"""Persisted client-side credentials.

The login flow (outside this package) writes a bearer access token, a
refresh token and the user's profile record. The chat core only reads them,
with one exception: the REST client stores rotated tokens after a refresh.

Nothing here is cached. Every read goes back to the backing store because a
logout/login elsewhere in the app can change the values at any time.
"""
from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "accessToken"
REFRESH_TOKEN_KEY = "refreshToken"
USER_KEY = "user"

# Older app versions stored the access token under these keys.
LEGACY_TOKEN_KEYS = ("token", "userToken")


class CredentialStore(ABC):
    """Async string key/value store holding the auth state."""

    @abstractmethod
    async def get_item(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def remove_item(self, key: str) -> None:
        ...

    async def get_json(self, key: str) -> Optional[Any]:
        """Return the value under *key* parsed as JSON, or None if absent/invalid."""
        raw = await self.get_item(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Stored value for %r is not valid JSON; ignoring it", key)
            return None


class MemoryCredentialStore(CredentialStore):
    """In-process store, used for embedding and tests."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._items: Dict[str, str] = {}
        for key, value in (initial or {}).items():
            self._items[key] = _as_text(value)

    async def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    async def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class FileCredentialStore(CredentialStore):
    """Store backed by a JSON object on disk.

    The file is re-read on every access. Object values (e.g. the profile
    written as a nested object instead of a JSON string) are returned
    re-serialized so callers always see strings.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open(encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            logger.warning("Could not read credential file %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Credential file %s does not hold an object", self.path)
            return {}
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as fh:
            json.dump(data, fh)
        os.replace(tmp_path, self.path)

    async def get_item(self, key: str) -> Optional[str]:
        value = self._read().get(key)
        if value is None:
            return None
        return _as_text(value)

    async def set_item(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    async def remove_item(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)
