"""Artifact storage helpers (S3/MinIO)."""
from __future__ import annotations

import hashlib
import os

import aioboto3

from ..config import StorageSettings, get_settings


class ArtifactStorage:
    """Persist artifacts to S3/MinIO using content-hash identifiers."""

    def __init__(self, settings: StorageSettings | None = None) -> None:
        self._settings = settings or get_settings().storage

    async def put_text(self, text: str, suffix: str = ".csv") -> str:
        return await self._put_bytes(text.encode("utf-8"), suffix=suffix)

    async def get_text(self, ref: str) -> str:
        if ref.startswith("file://"):
            with open(ref[len("file://") :], "rb") as handle:
                return handle.read().decode("utf-8")
        if not ref.startswith("s3://"):
            raise ValueError(f"Unsupported artifact reference: {ref}")
        bucket, _, key = ref[len("s3://") :].partition("/")
        session = aioboto3.Session()
        async with session.client(
            "s3",
            endpoint_url=self._settings.s3_endpoint,
            region_name=self._settings.s3_region,
        ) as client:
            response = await client.get_object(Bucket=bucket, Key=key)
            async with response["Body"] as stream:
                return (await stream.read()).decode("utf-8")

    async def _put_bytes(self, payload: bytes, suffix: str = "") -> str:
        hasher = hashlib.sha256()
        hasher.update(payload)
        digest = hasher.hexdigest()
        key = f"artifacts/{digest}{suffix}"

        if not self._settings.s3_bucket:
            # Dev mode: write to local file system for traceability
            path = os.path.join(self._settings.artifact_dir, f"{digest}{suffix}")
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            with open(path, "wb") as handle:
                handle.write(payload)
            return f"file://{path}"

        session = aioboto3.Session()
        async with session.client(
            "s3",
            endpoint_url=self._settings.s3_endpoint,
            region_name=self._settings.s3_region,
        ) as client:
            await client.put_object(Bucket=self._settings.s3_bucket, Key=key, Body=payload)
        return f"s3://{self._settings.s3_bucket}/{key}"


__all__ = ["ArtifactStorage"]
