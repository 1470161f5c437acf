"""
Sandbox Module - Black Box Interface

Purpose: Decide whether a build configuration may run, and run commands safely
Interface: validate_build_config(), resolve_secure_path(), run_command(), CommandPolicy
Hidden: Forbidden-pattern baseline, path normalization, output streaming

Nothing in this module ever hands a string to a shell.
"""

from .policy import CommandPolicy, split_command
from .runner import (
    TIMEOUT_EXIT_CODE,
    CapturedOutput,
    CommandResult,
    LogCallback,
    capture_command,
    run_command,
)
from .validation import (
    ValidationResult,
    is_valid_branch,
    is_valid_env_key,
    is_valid_github_url,
    is_valid_https_url,
    is_valid_path,
    resolve_secure_path,
    sanitize_env_value,
    sanitize_slug,
    validate_build_config,
)

__all__ = [
    "CapturedOutput",
    "CommandPolicy",
    "CommandResult",
    "LogCallback",
    "TIMEOUT_EXIT_CODE",
    "ValidationResult",
    "capture_command",
    "is_valid_branch",
    "is_valid_env_key",
    "is_valid_github_url",
    "is_valid_https_url",
    "is_valid_path",
    "resolve_secure_path",
    "run_command",
    "sanitize_env_value",
    "sanitize_slug",
    "split_command",
    "validate_build_config",
]
