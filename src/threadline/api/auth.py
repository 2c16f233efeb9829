"""API key validation."""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Mapping
from typing import Protocol, runtime_checkable

from threadline.errors import UnauthorizedError


@runtime_checkable
class CredentialValidator(Protocol):
    """Maps an ``api-key`` header value to a credential id."""

    def validate(self, api_key: str | None) -> str:
        """
        Return the credential id for ``api_key``.

        Raises:
            UnauthorizedError: If the key is missing or unknown.
        """
        ...


def _digest(value: str) -> bytes:
    return hashlib.sha256(value.encode("utf-8")).digest()


class StaticKeyValidator:
    """
    Validates keys against a fixed ``{key: credential_id}`` table.

    Only SHA-256 digests of the keys are kept, and every lookup compares
    against every entry with :func:`hmac.compare_digest`.
    """

    def __init__(self, keys: Mapping[str, str]) -> None:
        self._entries: list[tuple[bytes, str]] = [
            (_digest(key), credential_id) for key, credential_id in keys.items()
        ]

    def __len__(self) -> int:
        return len(self._entries)

    def validate(self, api_key: str | None) -> str:
        if not api_key:
            raise UnauthorizedError()
        candidate = _digest(api_key)
        match: str | None = None
        for digest, credential_id in self._entries:
            if hmac.compare_digest(digest, candidate):
                match = credential_id
        if match is None:
            raise UnauthorizedError()
        return match
