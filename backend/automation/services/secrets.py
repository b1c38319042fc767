"""Secret/credential lookup by environment-variable-style name."""

from __future__ import annotations

import os
from typing import Mapping, Optional

from ..errors import ConfigurationError


class EnvironmentSecrets:
    """Resolves secrets from a mapping (``os.environ`` by default)."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = environ if environ is not None else os.environ

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        if not name:
            return default
        value = self._environ.get(name)
        return value if value not in (None, "") else default

    def require(self, name: str) -> str:
        value = self.get(name)
        if value is None:
            raise ConfigurationError(f"Secret '{name}' is not set", field=name)
        return value

    def with_prefix(self, prefix: str, *names: str) -> dict:
        """Collect ``{name: value}`` for ``prefix + name`` lookups, skipping unset ones."""
        found = {}
        for name in names:
            value = self.get(f"{prefix}{name}")
            if value is not None:
                found[name] = value
        return found
