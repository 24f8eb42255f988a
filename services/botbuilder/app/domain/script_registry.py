"""Bundled and remote action script registries."""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

import httpx
import structlog

from ..config import BuilderSettings, get_settings
from .bundled_scripts import BUNDLED_SCRIPTS
from .errors import AdapterError, StartupCheckError
from .http import post_json
from .types import ScriptDescriptor

logger = structlog.get_logger(__name__)

MIN_CRITICAL_CONTENT_CHARS = 100


class BundledScriptRegistry:
    """Read-only ``name -> ScriptDescriptor`` mapping populated at process start."""

    def __init__(self, scripts: Iterable[ScriptDescriptor] = BUNDLED_SCRIPTS) -> None:
        self._scripts: Mapping[str, ScriptDescriptor] = MappingProxyType({script.name: script for script in scripts})

    def __contains__(self, name: str) -> bool:
        return name in self._scripts

    def __len__(self) -> int:
        return len(self._scripts)

    def get(self, name: str) -> ScriptDescriptor | None:
        return self._scripts.get(name)

    def critical(self) -> list[ScriptDescriptor]:
        return [script for script in self._scripts.values() if script.is_critical]

    def self_check(self) -> None:
        missing = [
            script.name
            for script in self.critical()
            if not script.content or len(script.content.strip()) < MIN_CRITICAL_CONTENT_CHARS
        ]
        if missing:
            raise StartupCheckError(f"Critical bundled scripts missing or empty: {', '.join(missing)}")
        logger.info(
            "script_registry.self_check",
            bundled=len(self._scripts),
            critical=[script.name for script in self.critical()],
        )


@dataclass
class RemoteLookup:
    found: dict[str, str] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)


class RemoteScriptRegistry:
    """Batch lookup against the remote script store."""

    def __init__(self, settings: BuilderSettings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    async def fetch(self, names: list[str]) -> RemoteLookup:
        if not names:
            return RemoteLookup()
        url = self._settings.integrations.script_registry_url.rstrip("/") + "/batch"
        data = await post_json(
            self._client,
            url,
            {"names": names},
            operation="script_registry.fetch",
            timeout=self._settings.tuning.registry_timeout_s,
        )
        found_raw = data.get("found", data.get("scripts"))
        if not isinstance(found_raw, list):
            raise AdapterError("script_registry.fetch", "response missing 'found' list")

        lookup = RemoteLookup()
        for entry in found_raw:
            name = entry.get("name") if isinstance(entry, dict) else None
            content = entry.get("content") if isinstance(entry, dict) else None
            if name in names and content:
                lookup.found[name] = content
        lookup.missing = [name for name in names if name not in lookup.found]
        return lookup


__all__ = ["BundledScriptRegistry", "RemoteLookup", "RemoteScriptRegistry"]
