"""S3-compatible artifact store (MinIO, R2, AWS)."""

import asyncio
import logging
import os
from typing import List, Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from sitebuilder.errors import InfrastructureError

from .base import DEFAULT_URL_EXPIRY, ArtifactObject, ArtifactStore, guess_content_type

logger = logging.getLogger("sitebuilder.artifacts.s3")

NOT_FOUND_CODES = ("404", "NoSuchKey", "NotFound", "NoSuchBucket")
DELETE_BATCH = 1000


def _is_not_found(error: ClientError) -> bool:
    code = (error.response.get("Error") or {}).get("Code")
    return code in NOT_FOUND_CODES


class S3ArtifactStore(ArtifactStore):
    """Artifact store backed by an S3 bucket."""

    def __init__(
        self,
        bucket: str,
        endpoint: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = "auto",
        client=None,
    ):
        """
        Initialize the store.

        Args:
            bucket: Builds bucket name
            endpoint: S3 endpoint URL (None for AWS)
            access_key: Access key id
            secret_key: Secret access key
            region: Region name ("auto" for R2/MinIO)
            client: Pre-built boto3 client (tests)
        """
        self.bucket = bucket
        self._s3 = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": "path"},
            ),
        )

    @classmethod
    def from_config(cls, config) -> "S3ArtifactStore":
        """Build from an ArtifactConfig."""
        return cls(
            bucket=config.bucket,
            endpoint=config.endpoint,
            access_key=config.access_key,
            secret_key=config.secret_key,
            region=config.region,
        )

    async def _call(self, operation: str, **kwargs):
        """Run one boto3 call off the event loop, wrapping store failures."""
        method = getattr(self._s3, operation)
        try:
            return await asyncio.to_thread(method, **kwargs)
        except ClientError:
            raise
        except BotoCoreError as e:
            raise InfrastructureError(f"Artifact store {operation} failed: {e}") from e

    def _wrap(self, operation: str, error: ClientError) -> InfrastructureError:
        return InfrastructureError(f"Artifact store {operation} failed: {error}")

    async def ensure_bucket(self) -> None:
        try:
            await self._call("head_bucket", Bucket=self.bucket)
            return
        except ClientError as e:
            if not _is_not_found(e):
                raise self._wrap("head_bucket", e) from e

        try:
            await self._call("create_bucket", Bucket=self.bucket)
        except ClientError as e:
            raise self._wrap("create_bucket", e) from e
        logger.info(f"Created bucket: {self.bucket}")

    async def _list(self, prefix: str, limit: Optional[int] = None) -> List[ArtifactObject]:
        objects: List[ArtifactObject] = []
        token = None
        while True:
            params = {"Bucket": self.bucket, "Prefix": prefix}
            if token:
                params["ContinuationToken"] = token
            if limit:
                params["MaxKeys"] = limit
            try:
                resp = await self._call("list_objects_v2", **params)
            except ClientError as e:
                raise self._wrap("list_objects_v2", e) from e

            for item in resp.get("Contents", []):
                objects.append(ArtifactObject(key=item["Key"], size=int(item.get("Size") or 0)))

            if limit and len(objects) >= limit:
                return objects[:limit]
            if not resp.get("IsTruncated"):
                return objects
            token = resp.get("NextContinuationToken")

    async def list_artifacts(self, site_slug: str) -> List[ArtifactObject]:
        return await self._list(f"{site_slug}/")

    async def artifacts_exist(self, site_slug: str) -> bool:
        return bool(await self._list(f"{site_slug}/", limit=1))

    async def get_artifact(self, site_slug: str, path: str) -> Optional[bytes]:
        key = f"{site_slug}/{path}"
        try:
            resp = await self._call("get_object", Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                return None
            raise self._wrap("get_object", e) from e
        return await asyncio.to_thread(resp["Body"].read)

    async def upload_artifact(
        self, site_slug: str, path: str, content: bytes, content_type: Optional[str] = None
    ) -> None:
        key = f"{site_slug}/{path}"
        if isinstance(content, str):
            content = content.encode("utf-8")
        try:
            await self._call(
                "put_object",
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType=content_type or guess_content_type(path),
            )
        except ClientError as e:
            raise self._wrap("put_object", e) from e

    async def _delete_keys(self, keys: List[str]) -> None:
        for start in range(0, len(keys), DELETE_BATCH):
            batch = keys[start:start + DELETE_BATCH]
            try:
                await self._call(
                    "delete_objects",
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                )
            except ClientError as e:
                raise self._wrap("delete_objects", e) from e

    async def delete_artifacts(self, site_slug: str) -> int:
        keys = [obj.key for obj in await self.list_artifacts(site_slug)]
        if keys:
            await self._delete_keys(keys)
            logger.info(f"Deleted {len(keys)} artifacts for {site_slug}")
        return len(keys)

    async def copy_artifacts(self, source_slug: str, dest_slug: str) -> int:
        source_prefix = f"{source_slug}/"
        objects = await self.list_artifacts(source_slug)
        for obj in objects:
            dest_key = f"{dest_slug}/{obj.key[len(source_prefix):]}"
            try:
                await self._call(
                    "copy_object",
                    Bucket=self.bucket,
                    Key=dest_key,
                    CopySource={"Bucket": self.bucket, "Key": obj.key},
                )
            except ClientError as e:
                raise self._wrap("copy_object", e) from e
        logger.info(f"Copied {len(objects)} artifacts from {source_slug} to {dest_slug}")
        return len(objects)

    async def get_artifact_url(
        self, site_slug: str, path: str, expires_in: int = DEFAULT_URL_EXPIRY
    ) -> str:
        try:
            return await self._call(
                "generate_presigned_url",
                ClientMethod="get_object",
                Params={"Bucket": self.bucket, "Key": f"{site_slug}/{path}"},
                ExpiresIn=expires_in,
            )
        except ClientError as e:
            raise self._wrap("generate_presigned_url", e) from e

    async def upload_tree(self, site_slug: str, local_dir: str) -> int:
        existing = {obj.key for obj in await self.list_artifacts(site_slug)}
        uploaded = set()

        for dirpath, _dirnames, filenames in os.walk(local_dir):
            for filename in filenames:
                full_path = os.path.join(dirpath, filename)
                if os.path.islink(full_path):
                    continue
                relative = os.path.relpath(full_path, local_dir).replace(os.sep, "/")
                key = f"{site_slug}/{relative}"
                try:
                    await self._call(
                        "upload_file",
                        Filename=full_path,
                        Bucket=self.bucket,
                        Key=key,
                        ExtraArgs={"ContentType": guess_content_type(relative)},
                    )
                except (ClientError, S3UploadFailedError) as e:
                    raise self._wrap("upload_file", e) from e
                uploaded.add(key)

        # Files from the previous build that this one no longer ships
        stale = sorted(existing - uploaded)
        if stale:
            await self._delete_keys(stale)

        logger.info(f"Uploaded {len(uploaded)} artifacts for {site_slug}")
        return len(uploaded)

    def location(self, site_slug: str) -> str:
        return f"s3://{self.bucket}/{site_slug}/"
