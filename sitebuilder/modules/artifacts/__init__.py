"""
Artifacts Module - Black Box Interface

Purpose: Store, verify and remove published build output
Interface: ArtifactStore (artifacts_exist, list_artifacts, upload_tree, delete_artifacts, ...)
Hidden: Bucket layout, S3 client configuration, pagination

Keys are always "{site_slug}/{relative_path}". Can be backed by any
S3-compatible service or by a local directory.
"""

from .base import ArtifactObject, ArtifactStore
from .local import LocalArtifactStore
from .s3 import S3ArtifactStore


def create_artifact_store(config) -> ArtifactStore:
    """Create the store selected by an ArtifactConfig."""
    if config.is_remote:
        return S3ArtifactStore.from_config(config)
    return LocalArtifactStore.from_config(config)


__all__ = [
    "ArtifactObject",
    "ArtifactStore",
    "LocalArtifactStore",
    "S3ArtifactStore",
    "create_artifact_store",
]
