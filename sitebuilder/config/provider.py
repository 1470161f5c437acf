"""Configuration provider following Black Box Design principles."""
import os
from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass
class DockerConfig:
    """Local container runtime settings."""
    repos_dir: str
    builds_dir: str
    cache_dir: str
    use_isolation: bool
    build_network: str
    pipeline_timeout: int


@dataclass
class KubernetesConfig:
    """Cluster Job settings."""
    namespace: str
    deadline_seconds: int
    ttl_after_finished: int
    uploader_image: str
    credentials_secret: str
    store_endpoint: str
    kubectl_path: str


@dataclass
class ArtifactConfig:
    """Object store settings."""
    backend: str
    bucket: str
    endpoint: Optional[str]
    access_key: Optional[str]
    secret_key: Optional[str]
    region: str
    local_root: str

    @property
    def is_remote(self) -> bool:
        """Whether artifacts live in an S3-compatible store."""
        return self.backend == "s3"


class ConfigProvider(Protocol):
    """Protocol for configuration providers."""

    def get_docker_config(self) -> DockerConfig:
        """Get Docker executor configuration."""
        ...

    def get_kubernetes_config(self) -> KubernetesConfig:
        """Get Kubernetes executor configuration."""
        ...

    def get_artifact_config(self) -> ArtifactConfig:
        """Get artifact store configuration."""
        ...


class EnvConfigProvider:
    """Environment-based configuration provider."""

    def get_docker_config(self) -> DockerConfig:
        """Get Docker executor configuration from environment variables."""
        return DockerConfig(
            repos_dir=os.getenv("REPOS_DIR", "/data/repos"),
            builds_dir=os.getenv("BUILDS_DIR", "/data/builds"),
            cache_dir=os.getenv("CACHE_DIR", "/data/cache"),
            use_isolation=os.getenv("USE_DOCKER_ISOLATION", "true").lower() != "false",
            build_network=os.getenv("DOCKER_BUILD_NETWORK", "bridge"),
            pipeline_timeout=int(os.getenv("BUILD_PIPELINE_TIMEOUT", "600")),
        )

    def get_kubernetes_config(self) -> KubernetesConfig:
        """Get Kubernetes executor configuration from environment variables."""
        return KubernetesConfig(
            namespace=os.getenv("BUILD_NAMESPACE", "sitebuild-builds"),
            deadline_seconds=int(os.getenv("BUILD_DEADLINE_SECONDS", "600")),
            ttl_after_finished=int(os.getenv("BUILD_JOB_TTL_AFTER_FINISHED", "3600")),
            uploader_image=os.getenv("UPLOADER_IMAGE", "minio/mc:latest"),
            credentials_secret=os.getenv("STORE_CREDENTIALS_SECRET", "artifact-store-credentials"),
            store_endpoint=os.getenv("UPLOADER_STORE_ENDPOINT", "http://minio.sitebuild-system:9000"),
            kubectl_path=os.getenv("KUBECTL_PATH", "kubectl"),
        )

    def get_artifact_config(self) -> ArtifactConfig:
        """Get artifact store configuration from environment variables."""
        return ArtifactConfig(
            backend=os.getenv("ARTIFACT_STORE", "local").lower(),
            bucket=os.getenv("BUILDS_BUCKET", "sitebuild-builds"),
            endpoint=os.getenv("S3_ENDPOINT"),
            access_key=os.getenv("S3_ACCESS_KEY"),
            secret_key=os.getenv("S3_SECRET_KEY"),
            region=os.getenv("S3_REGION", "auto"),
            local_root=os.getenv("BUILDS_DIR", "/data/builds"),
        )

