"""
Config Module - Black Box Interface

Purpose: Application configuration management
Interface: get_config(), ConfigModule.get(), ConfigModule.get_all()
Hidden: Config sources, validation logic, environment parsing

Can be replaced with different config systems (Consul, etcd, AWS Parameter Store).
"""

import os
from typing import Any, Dict


# Configuration Contract: Required and Optional Keys

REQUIRED_CONFIG_KEYS = {
    "redis_host": "Redis server hostname",
    "redis_port": "Redis server port number",
    "redis_db": "Redis database number",
    "host": "API server bind address",
    "port": "API server port",
    "log_level": "Logging level (DEBUG, INFO, WARNING, ERROR)",
    "build_concurrency": "Maximum number of builds running at once",
    "build_job_ttl": "Seconds a queued job survives if never claimed",
    "build_poll_interval": "Seconds the dispatcher sleeps when idle",
    "build_backend": "Executor backend: docker or kubernetes",
    "artifact_store": "Artifact store backend: local or s3",
    "base_domain": "Domain deployments are published under",
}

OPTIONAL_CONFIG_KEYS = {
    "redis_password": {
        "description": "Redis authentication password",
        "default": None,
    },
    "notify_webhook_url": {
        "description": "Webhook receiving build start/success/failure events",
        "default": None,
    },
    "command_policy_path": {
        "description": "YAML file extending the build command policy",
        "default": None,
    },
}

VALID_BACKENDS = {"docker", "kubernetes"}
VALID_ARTIFACT_STORES = {"local", "s3"}


class ConfigModule:
    """Configuration management module."""

    def __init__(self):
        """Initialize with environment variables."""
        self._config = self._load_from_env()
        self._validate_required_keys()
        self._validate_choices()

    def _validate_required_keys(self) -> None:
        """
        Validate that all required configuration keys are present.

        Raises:
            ValueError: If required keys are missing
        """
        missing_keys = []
        for key in REQUIRED_CONFIG_KEYS:
            if key not in self._config or self._config[key] is None:
                missing_keys.append(key)

        if missing_keys:
            raise ValueError(
                f"Missing required configuration keys: {', '.join(missing_keys)}. "
                f"Check environment variables and deployment configuration."
            )

    def _validate_choices(self) -> None:
        """Reject unknown backends and nonsensical limits."""
        if self._config["build_backend"] not in VALID_BACKENDS:
            raise ValueError(
                f"Invalid BUILD_BACKEND '{self._config['build_backend']}'. "
                f"Allowed: {', '.join(sorted(VALID_BACKENDS))}"
            )
        if self._config["artifact_store"] not in VALID_ARTIFACT_STORES:
            raise ValueError(
                f"Invalid ARTIFACT_STORE '{self._config['artifact_store']}'. "
                f"Allowed: {', '.join(sorted(VALID_ARTIFACT_STORES))}"
            )
        if self._config["build_backend"] == "kubernetes" and self._config["artifact_store"] != "s3":
            # Build Jobs upload to the bucket; a local store would never see their output
            raise ValueError("BUILD_BACKEND=kubernetes requires ARTIFACT_STORE=s3")
        if self._config["build_concurrency"] < 1:
            raise ValueError("BUILD_CONCURRENCY must be at least 1")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment."""
        # Parse Redis port (might be in tcp://host:port format from K8s)
        redis_port_env = os.getenv("REDIS_PORT", "6379")
        if redis_port_env.startswith("tcp://"):
            redis_port = int(redis_port_env.split(":")[-1])
        else:
            redis_port = int(redis_port_env)

        return {
            # Redis settings
            "redis_host": os.getenv("REDIS_HOST", "localhost"),
            "redis_port": redis_port,
            "redis_db": int(os.getenv("REDIS_DB", "0")),
            "redis_password": os.getenv("REDIS_PASSWORD"),
            # API settings
            "host": os.getenv("API_HOST", "0.0.0.0"),
            "port": int(os.getenv("API_PORT", "8080")),
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
            # Queue settings
            "build_concurrency": int(os.getenv("BUILD_CONCURRENCY", "3")),
            "build_job_ttl": int(os.getenv("BUILD_JOB_TTL", "1800")),
            "build_poll_interval": float(os.getenv("BUILD_POLL_INTERVAL", "2.0")),
            # Pipeline settings
            "build_backend": os.getenv("BUILD_BACKEND", "docker").lower(),
            "artifact_store": os.getenv("ARTIFACT_STORE", "local").lower(),
            "base_domain": os.getenv("BASE_DOMAIN", "sites.localhost"),
            "notify_webhook_url": os.getenv("NOTIFY_WEBHOOK_URL"),
            "command_policy_path": os.getenv("COMMAND_POLICY_PATH"),
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value."""
        self._config[key] = value

    def get_all(self) -> Dict[str, Any]:
        """Get all configuration values."""
        return self._config.copy()

    @staticmethod
    def get_config_schema() -> Dict[str, Any]:
        """
        Get the configuration schema (contract) for this module.

        Returns:
            Dictionary with 'required' and 'optional' key specifications
        """
        return {
            "required": REQUIRED_CONFIG_KEYS.copy(),
            "optional": OPTIONAL_CONFIG_KEYS.copy(),
        }


# Singleton instance
_instance = None


def get_config() -> ConfigModule:
    """Get the configuration module singleton."""
    global _instance
    if _instance is None:
        _instance = ConfigModule()
    return _instance


__all__ = ["get_config", "ConfigModule"]
