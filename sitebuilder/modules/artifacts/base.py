"""Artifact store interface."""

import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

DEFAULT_URL_EXPIRY = 3600


@dataclass
class ArtifactObject:
    """One stored file under a site slug."""

    key: str
    size: int


def guess_content_type(path: str) -> str:
    content_type, _ = mimetypes.guess_type(path)
    return content_type or "application/octet-stream"


class ArtifactStore(ABC):
    """
    Object storage for published build output.

    Every file of a deployment lives under the "{site_slug}/" prefix. Any
    object under that prefix means the deployment has artifacts.
    """

    @abstractmethod
    async def ensure_bucket(self) -> None:
        """Create the builds bucket if it does not exist."""

    @abstractmethod
    async def list_artifacts(self, site_slug: str) -> List[ArtifactObject]:
        """List every file stored for a site slug."""

    @abstractmethod
    async def artifacts_exist(self, site_slug: str) -> bool:
        """Whether at least one file exists under the site slug."""

    @abstractmethod
    async def get_artifact(self, site_slug: str, path: str) -> Optional[bytes]:
        """Read one file, or None when it does not exist."""

    @abstractmethod
    async def upload_artifact(
        self, site_slug: str, path: str, content: bytes, content_type: Optional[str] = None
    ) -> None:
        """Write one file."""

    @abstractmethod
    async def delete_artifacts(self, site_slug: str) -> int:
        """Delete every file under the site slug and return how many were removed."""

    @abstractmethod
    async def copy_artifacts(self, source_slug: str, dest_slug: str) -> int:
        """Copy a deployment's files to another slug (rollbacks)."""

    @abstractmethod
    async def get_artifact_url(
        self, site_slug: str, path: str, expires_in: int = DEFAULT_URL_EXPIRY
    ) -> str:
        """Time-limited download URL for one file."""

    @abstractmethod
    async def upload_tree(self, site_slug: str, local_dir: str) -> int:
        """
        Replace the slug's artifact set with the contents of a local directory.

        Returns:
            Number of files uploaded
        """

    @abstractmethod
    def location(self, site_slug: str) -> str:
        """Human-readable location of a slug's artifacts."""

    async def get_artifacts_size(self, site_slug: str) -> int:
        """Total size in bytes of the slug's files."""
        return sum(obj.size for obj in await self.list_artifacts(site_slug))
