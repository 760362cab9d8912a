# secret_store.py
"""
Scoped secret lookup and log redaction.

Secrets are resolved per step invocation from the environment the job is
bound to; there is no process-wide cache. The store exposes keyed lookup
only, so job code cannot enumerate every secret of an environment.
"""
from __future__ import annotations

import re
from typing import Dict, Iterable, Mapping, Optional

from .errors import ConfigurationError
from .model import Environment
from .settings import SECRET_MASK


class SecretStore:
    """
    Read-only view over environment-scoped secrets.

    Only the code that provisions environments (`provision`) writes to it.
    """

    def __init__(self, environments: Optional[Mapping[str, Environment]] = None):
        self._scopes: Dict[str, Dict[str, str]] = {}
        for env in (environments or {}).values():
            self.provision(env.name, env.secrets)

    def provision(self, environment: str, secrets: Mapping[str, str]) -> None:
        self._scopes.setdefault(environment, {}).update(secrets)

    def lookup(self, environment: str | None, name: str) -> str:
        scope = self._scopes.get(environment or "", {})
        try:
            return scope[name]
        except KeyError:
            raise ConfigurationError(
                f"secret '{name}' is not available in environment '{environment}'"
            ) from None

    def has(self, environment: str | None, name: str) -> bool:
        return name in self._scopes.get(environment or "", {})

    def resolve(self, environment: str | None, names: Iterable[str]) -> Dict[str, str]:
        """Resolve exactly the requested names for one step invocation."""
        return {name: self.lookup(environment, name) for name in names}


class Redactor:
    """Replace known secret values in captured output with a fixed mask."""

    def __init__(self, values: Iterable[str], mask: str = SECRET_MASK):
        # longest first so a secret containing another is masked whole
        uniq = sorted({v for v in values if v}, key=len, reverse=True)
        self.mask = mask
        self._pattern = re.compile("|".join(re.escape(v) for v in uniq)) if uniq else None

    def __call__(self, text: str) -> str:
        if not text or self._pattern is None:
            return text
        return self._pattern.sub(self.mask, text)
