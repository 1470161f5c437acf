"""Filesystem artifact store for single-host deployments."""

import asyncio
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import List, Optional

from sitebuilder.errors import InfrastructureError
from sitebuilder.modules.sandbox import resolve_secure_path

from .base import DEFAULT_URL_EXPIRY, ArtifactObject, ArtifactStore

logger = logging.getLogger("sitebuilder.artifacts.local")


class LocalArtifactStore(ArtifactStore):
    """Artifact store rooted at a local directory: {root}/{site_slug}/..."""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    @classmethod
    def from_config(cls, config) -> "LocalArtifactStore":
        """Build from an ArtifactConfig."""
        return cls(config.local_root)

    def _slug_dir(self, site_slug: str) -> str:
        slug_dir = resolve_secure_path(self.root, site_slug)
        if slug_dir is None or slug_dir == self.root:
            raise ValueError(f"Invalid site slug: {site_slug!r}")
        return slug_dir

    def _file_path(self, site_slug: str, path: str) -> str:
        slug_dir = self._slug_dir(site_slug)
        file_path = resolve_secure_path(slug_dir, path)
        if file_path is None or file_path == slug_dir:
            raise ValueError(f"Invalid artifact path: {path!r}")
        return file_path

    async def ensure_bucket(self) -> None:
        try:
            await asyncio.to_thread(os.makedirs, self.root, exist_ok=True)
        except OSError as e:
            raise InfrastructureError(f"Cannot create artifact root {self.root}: {e}") from e

    def _walk(self, site_slug: str) -> List[ArtifactObject]:
        slug_dir = self._slug_dir(site_slug)
        objects = []
        for dirpath, _dirnames, filenames in os.walk(slug_dir):
            for filename in sorted(filenames):
                full_path = os.path.join(dirpath, filename)
                relative = os.path.relpath(full_path, slug_dir).replace(os.sep, "/")
                objects.append(
                    ArtifactObject(key=f"{site_slug}/{relative}", size=os.path.getsize(full_path))
                )
        return objects

    async def list_artifacts(self, site_slug: str) -> List[ArtifactObject]:
        return await asyncio.to_thread(self._walk, site_slug)

    async def artifacts_exist(self, site_slug: str) -> bool:
        slug_dir = self._slug_dir(site_slug)

        def _has_files() -> bool:
            for _dirpath, _dirnames, filenames in os.walk(slug_dir):
                if filenames:
                    return True
            return False

        return await asyncio.to_thread(_has_files)

    async def get_artifact(self, site_slug: str, path: str) -> Optional[bytes]:
        file_path = self._file_path(site_slug, path)
        if not os.path.isfile(file_path):
            return None
        return await asyncio.to_thread(Path(file_path).read_bytes)

    async def upload_artifact(
        self, site_slug: str, path: str, content: bytes, content_type: Optional[str] = None
    ) -> None:
        file_path = self._file_path(site_slug, path)
        if isinstance(content, str):
            content = content.encode("utf-8")

        def _write() -> None:
            os.makedirs(os.path.dirname(file_path), exist_ok=True)
            Path(file_path).write_bytes(content)

        await asyncio.to_thread(_write)

    async def delete_artifacts(self, site_slug: str) -> int:
        count = len(await self.list_artifacts(site_slug))
        await asyncio.to_thread(shutil.rmtree, self._slug_dir(site_slug), True)
        if count:
            logger.info(f"Deleted {count} artifacts for {site_slug}")
        return count

    async def copy_artifacts(self, source_slug: str, dest_slug: str) -> int:
        count = len(await self.list_artifacts(source_slug))
        await self.upload_tree(dest_slug, self._slug_dir(source_slug))
        logger.info(f"Copied {count} artifacts from {source_slug} to {dest_slug}")
        return count

    async def get_artifact_url(
        self, site_slug: str, path: str, expires_in: int = DEFAULT_URL_EXPIRY
    ) -> str:
        return Path(self._file_path(site_slug, path)).as_uri()

    async def upload_tree(self, site_slug: str, local_dir: str) -> int:
        slug_dir = self._slug_dir(site_slug)
        if os.path.abspath(local_dir) == slug_dir:
            return len(await self.list_artifacts(site_slug))

        def _replace() -> None:
            staging = f"{slug_dir}.tmp-{uuid.uuid4().hex[:8]}"
            shutil.copytree(local_dir, staging, symlinks=True)
            shutil.rmtree(slug_dir, ignore_errors=True)
            os.rename(staging, slug_dir)

        await asyncio.to_thread(_replace)
        return len(await self.list_artifacts(site_slug))

    def location(self, site_slug: str) -> str:
        return self._slug_dir(site_slug)
