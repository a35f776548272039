from __future__ import annotations

from pydantic_settings import SettingsConfigDict

from ..config import Settings


class CloudSettings(Settings):
    """Control plane settings: the runner settings plus queue/ledger knobs."""

    model_config = SettingsConfigDict(env_prefix="RELAYCI_", env_file=".env", extra="ignore")

    tick_prefix: str = "relayci:tick"
    tick_ttl_seconds: int = 24 * 3600
    title: str = "relayci control plane"
