"""
Build configuration validation.

Everything here is pure: no subprocess runs and no file is touched. A
configuration that fails any check never reaches an executor.
"""

import os
import re
import unicodedata
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import unquote, urlsplit

from sitebuilder.modules.api.models import BuildConfig
from sitebuilder.modules.sandbox.policy import CommandPolicy

BRANCH_PATTERN = re.compile(r"^[a-zA-Z0-9._/-]+$")
ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
URL_METACHARACTERS = re.compile(r"[;&|`$(){}\[\]!#<>]")
FULLWIDTH = re.compile(r"[\uFF00-\uFFEF]")

MAX_ENV_KEY_LENGTH = 256
MAX_ENV_VALUE_LENGTH = 32768
ROOT_OUTPUT_DIRS = {"", ".", "./"}

_default_policy = CommandPolicy()


@dataclass
class ValidationResult:
    """Outcome of validate_build_config."""

    valid: bool
    errors: List[str] = field(default_factory=list)


def is_valid_github_url(url: str) -> bool:
    """Validate a credential-free https://github.com/owner/repo URL."""
    if not url or URL_METACHARACTERS.search(url) or re.search(r"\s", url):
        return False

    # urlsplit does not normalize "..", but reject it on the raw input anyway
    if ".." in url:
        return False

    try:
        parsed = urlsplit(url)
    except ValueError:
        return False

    if parsed.scheme != "https" or parsed.hostname != "github.com":
        return False
    if parsed.username or parsed.password:
        return False
    return bool(re.match(r"^/[^/]+/[^/]+", parsed.path))


def is_valid_https_url(url: str) -> bool:
    """Validate an HTTPS URL without credentials or shell metacharacters."""
    if not url or URL_METACHARACTERS.search(url) or re.search(r"\s", url):
        return False
    try:
        parsed = urlsplit(url)
    except ValueError:
        return False
    if parsed.scheme != "https" or not parsed.hostname:
        return False
    return not (parsed.username or parsed.password)


def repo_url_errors(url: str) -> List[str]:
    """Explain why a repository URL is rejected (empty list when it is fine)."""
    if is_valid_github_url(url):
        return []
    try:
        parsed = urlsplit(url or "")
    except ValueError:
        return ["Invalid repository URL - must be a valid GitHub or HTTPS URL"]

    if parsed.scheme != "https":
        return ["Invalid repository URL - must use HTTPS"]
    if parsed.username or parsed.password:
        return ["Invalid repository URL - must not contain credentials"]
    if not is_valid_https_url(url):
        return ["Invalid repository URL - must be a valid GitHub or HTTPS URL"]
    return []


def is_valid_branch(branch: str) -> bool:
    """Branch names are limited to a safe character set."""
    if not branch or not BRANCH_PATTERN.match(branch):
        return False
    return not branch.startswith("-") and ".." not in branch


def is_valid_path(path: str, allow_absolute: bool = False) -> bool:
    """
    Validate a relative path does not escape its root.

    Rejects null bytes, fullwidth look-alike characters, URL-encoded
    traversal, home directory expansion and (by default) absolute paths.
    """
    if not path or "\x00" in path:
        return False

    normalized = unicodedata.normalize("NFC", path)
    if FULLWIDTH.search(normalized):
        return False

    # Keep decoding until no more encoded characters
    decoded = normalized
    previous = None
    while previous != decoded:
        previous = decoded
        decoded = unquote(decoded)

    decoded = decoded.replace("\\", "/")
    if ".." in decoded or decoded.startswith("~"):
        return False

    if not allow_absolute and (decoded.startswith("/") or re.match(r"^[a-zA-Z]:", decoded)):
        return False

    return True


def resolve_secure_path(base: str, relative: str) -> Optional[str]:
    """
    Resolve a path inside base, refusing anything that escapes it.

    Args:
        base: Directory the result must stay within
        relative: User-supplied relative path

    Returns:
        Absolute path, or None when the resolved path leaves base
    """
    clean = (relative or "").replace("\x00", "")
    base_abs = os.path.abspath(base)
    resolved = os.path.abspath(os.path.join(base_abs, clean))

    if resolved == base_abs or resolved.startswith(base_abs.rstrip(os.sep) + os.sep):
        return resolved
    return None


def is_valid_env_key(key: str) -> bool:
    return bool(key) and len(key) <= MAX_ENV_KEY_LENGTH and bool(ENV_KEY_PATTERN.match(key))


def sanitize_env_value(value: str) -> Optional[str]:
    """
    Sanitize one environment variable value for a container invocation.

    Null bytes and line breaks are stripped and the value is truncated. Values carrying
    command substitution sequences are rejected (None).
    """
    cleaned = re.sub(r"[\x00\r\n]", "", str(value))[:MAX_ENV_VALUE_LENGTH]
    if "`" in cleaned or "$(" in cleaned:
        return None
    return cleaned


def sanitize_slug(value: str) -> str:
    """Lowercase DNS-label style slug, at most 63 characters."""
    slug = re.sub(r"[^a-z0-9-]", "-", (value or "").lower())
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug[:63].rstrip("-")


def validate_build_config(
    config: BuildConfig, policy: Optional[CommandPolicy] = None
) -> ValidationResult:
    """
    Validate a build configuration for security issues.

    Args:
        config: Build configuration for one attempt
        policy: Command policy (defaults to the built-in whitelist)

    Returns:
        ValidationResult with every reason the config was rejected
    """
    policy = policy or _default_policy
    errors: List[str] = []

    errors.extend(repo_url_errors(config.repo_url))

    if config.install_cmd:
        ok, reason = policy.validate_command(config.install_cmd)
        if not ok:
            errors.append(f"Install command rejected: {reason}")

    if config.build_cmd:
        ok, reason = policy.validate_command(config.build_cmd)
        if not ok:
            errors.append(f"Build command rejected: {reason}")

    if config.output_dir not in ROOT_OUTPUT_DIRS and not is_valid_path(config.output_dir):
        errors.append("Invalid output directory - path traversal detected")

    if config.root_dir and config.root_dir not in ROOT_OUTPUT_DIRS and not is_valid_path(config.root_dir):
        errors.append("Invalid root directory - path traversal detected")

    if not policy.is_allowed_node_version(config.node_version):
        errors.append(f"Invalid Node.js version. Allowed: {', '.join(policy.node_versions)}")

    if not is_valid_branch(config.branch):
        errors.append("Invalid branch name - contains forbidden characters")

    for key in config.env_vars:
        if not is_valid_env_key(key):
            errors.append(f"Invalid environment variable name: {key}")

    return ValidationResult(valid=not errors, errors=errors)
