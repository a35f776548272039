# secrets.py
from __future__ import annotations

import os
from typing import Dict, Iterable, Mapping, Optional, Protocol

MASK = "***"


class SecretProvider(Protocol):
    def get(self, name: str) -> Optional[str]:
        ...


class EnvSecretProvider:
    """
    Reads secrets from the orchestrator's own environment.

    A secret named `REGISTRY_TOKEN` is looked up as `<prefix>REGISTRY_TOKEN`
    (prefix defaults to `RELAYCI_SECRET_`).
    """

    def __init__(self, prefix: str = "RELAYCI_SECRET_", environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def get(self, name: str) -> Optional[str]:
        return self._environ.get(f"{self.prefix}{name}")


class StaticSecretProvider:
    """Fixed mapping; handy for tests and for secrets passed on the CLI."""

    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values = dict(values or {})

    def get(self, name: str) -> Optional[str]:
        return self._values.get(name)


class ChainSecretProvider:
    """Asks each provider in turn; the first non-None value wins."""

    def __init__(self, *providers: SecretProvider):
        self.providers = list(providers)

    def get(self, name: str) -> Optional[str]:
        for provider in self.providers:
            value = provider.get(name)
            if value is not None:
                return value
        return None


def resolve(provider: Optional[SecretProvider], names: Iterable[str]) -> Dict[str, str]:
    """Fetch the secrets a job is authorized for; missing ones are left out."""
    if provider is None:
        return {}
    out: Dict[str, str] = {}
    for name in names:
        value = provider.get(name)
        if value is not None:
            out[name] = value
    return out


class Masker:
    """Replaces every known secret value in a line of output."""

    def __init__(self, values: Iterable[str] = ()):
        # longest first so a secret containing another is masked whole
        self._values = sorted({v for v in values if v}, key=len, reverse=True)

    def __call__(self, text: str) -> str:
        for v in self._values:
            text = text.replace(v, MASK)
        return text
