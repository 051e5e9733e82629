"""Secret providers: opaque credential values, or explicit absence."""

from __future__ import annotations

import os
from typing import Dict, Iterable, Mapping, Optional, Protocol


class SecretProvider(Protocol):
    def get(self, name: str) -> Optional[str]:
        """Return the secret value, or None when it was not supplied. "" is a supplied value."""
        ...


class StaticSecretProvider:
    """Secrets from an in-memory mapping."""

    def __init__(self, values: Mapping[str, str] | None = None):
        self._values: Dict[str, str] = dict(values or {})

    def get(self, name: str) -> Optional[str]:
        return self._values.get(name)

    def __repr__(self) -> str:
        # never print values
        return f"StaticSecretProvider(names={sorted(self._values)})"


class EnvSecretProvider:
    """
    Secrets from environment variables.

    Only the names passed in are exposed; an unset variable is absent, a set
    but empty variable is present.
    """

    def __init__(self, names: Iterable[str], environ: Mapping[str, str] | None = None):
        self._names = set(names)
        self._environ = environ if environ is not None else os.environ

    def get(self, name: str) -> Optional[str]:
        if name not in self._names:
            return None
        return self._environ.get(name)

    def __repr__(self) -> str:
        return f"EnvSecretProvider(names={sorted(self._names)})"


NO_SECRETS = StaticSecretProvider()
