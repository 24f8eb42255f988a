"""Test channel (preview widget) provisioning."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from ..config import BuilderSettings, get_settings
from .errors import AdapterError
from .http import post_json
from .types import Credentials


@dataclass
class PreviewChannel:
    preview_url: str
    preview_id: str | None = None


class PreviewProvisioner:
    def __init__(self, settings: BuilderSettings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    async def provision(
        self,
        target_id: str,
        environment: str,
        credentials: Credentials,
        branding: dict[str, Any] | None = None,
    ) -> PreviewChannel:
        url = self._settings.integrations.bot_manager_url.rstrip("/") + "/create-channel"
        data = await post_json(
            self._client,
            url,
            {
                "targetId": target_id,
                "environment": environment,
                "branding": branding,
                "credentials": {"token": credentials.token},
            },
            operation="preview.provision",
            timeout=self._settings.tuning.preview_timeout_s,
        )
        if not data.get("success") or not data.get("previewUrl"):
            raise AdapterError("preview.provision", str(data.get("error") or "no preview URL returned"))
        return PreviewChannel(preview_url=data["previewUrl"], preview_id=data.get("previewId"))


__all__ = ["PreviewChannel", "PreviewProvisioner"]
