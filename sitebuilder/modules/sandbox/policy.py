"""
Build command policy.

Whitelist of executables a project's install/build command may start,
an immutable baseline of forbidden shell constructs, and the Node.js
versions builds may run on. Deployments can extend the policy from a
YAML file; the baseline can never be relaxed.
"""

import logging
import re
import shlex
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import yaml

logger = logging.getLogger("sitebuilder.sandbox.policy")

DEFAULT_EXECUTABLES = frozenset(
    {
        "npm",
        "yarn",
        "pnpm",
        "bun",
        "node",
        "npx",
        "next",
        "vite",
        "turbo",
        "tsc",
        "esbuild",
        "rollup",
        "webpack",
        "parcel",
        "grunt",
        "gulp",
        "make",
    }
)

DEFAULT_NODE_VERSIONS = ("16", "18", "20", "21", "22")

# Never allowed as the first word of a build command, whatever the config says
FORBIDDEN_EXECUTABLES = frozenset(
    {"sh", "bash", "zsh", "dash", "ash", "ksh", "curl", "wget", "nc", "ncat",
     "eval", "sudo", "su", "rm", "dd", "chmod", "chown", "docker", "kubectl"}
)

DEFAULT_MAX_ARGUMENTS = 32

_EXECUTABLE_NAME = re.compile(r"^[a-z0-9][a-z0-9._-]*$")
_NODE_VERSION = re.compile(r"^\d{2}$")


class CommandPolicy:
    """Whitelist-based validator for build and install commands."""

    # Immutable security baseline - never allow these constructs
    IMMUTABLE_FORBIDDEN_PATTERNS: Tuple[Tuple[re.Pattern, str], ...] = (
        (re.compile(r";"), "command chaining (;)"),
        (re.compile(r"&"), "command chaining or backgrounding (&, &&)"),
        (re.compile(r"\|"), "pipes (|, ||)"),
        (re.compile(r"`"), "backtick command substitution"),
        (re.compile(r"\$\("), "command substitution $()"),
        (re.compile(r"\$\{"), "variable substitution ${}"),
        (re.compile(r"\$[A-Za-z_]"), "environment variable expansion"),
        (re.compile(r"[\r\n]"), "newline injection"),
        (re.compile(r"[<>]"), "redirection or process substitution"),
        (re.compile(r"[()]"), "subshells"),
        (re.compile(r"/dev/tcp", re.IGNORECASE), "network redirection"),
        (re.compile(r"\bbase64\s+(-d|--decode)", re.IGNORECASE), "encoded payloads"),
        (re.compile(r"\beval\b"), "eval"),
        (re.compile(r"\x00"), "null bytes"),
    )

    def __init__(
        self,
        allowed_executables: Optional[FrozenSet[str]] = None,
        forbidden_substrings: Optional[FrozenSet[str]] = None,
        node_versions: Optional[Tuple[str, ...]] = None,
        max_arguments: int = DEFAULT_MAX_ARGUMENTS,
    ):
        self.allowed_executables = frozenset(allowed_executables or DEFAULT_EXECUTABLES)
        self.forbidden_substrings = frozenset(s.lower() for s in (forbidden_substrings or ()))
        self.node_versions = tuple(node_versions or DEFAULT_NODE_VERSIONS)
        self.max_arguments = max_arguments

    @classmethod
    def from_file(cls, config_path: Optional[str]) -> "CommandPolicy":
        """
        Load a policy extension from YAML, falling back to defaults.

        Expected layout:

            commands:
              allowedExecutables: [astro, gatsby]
              forbiddenPatterns: ["--unsafe-perm"]
            limits:
              maxArguments: 40
            nodeVersions: ["18", "20", "22"]
        """
        if not config_path:
            return cls()

        path = Path(config_path)
        if not path.exists():
            logger.warning(f"Command policy file not found: {path}, using defaults")
            return cls()

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to read command policy {path}: {e}, using defaults")
            return cls()

        problems = cls.validate_config(data)
        if problems:
            logger.error(f"Invalid command policy {path}: {'; '.join(problems)}, using defaults")
            return cls()

        policy = cls.from_dict(data)
        logger.info(
            f"Command policy loaded from {path} "
            f"({len(policy.allowed_executables)} executables, "
            f"node versions {', '.join(policy.node_versions)})"
        )
        return policy

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommandPolicy":
        """Merge a validated configuration dict with the defaults."""
        commands = data.get("commands", {}) or {}
        limits = data.get("limits", {}) or {}

        executables = set(DEFAULT_EXECUTABLES) | set(commands.get("allowedExecutables", []))

        return cls(
            allowed_executables=frozenset(executables),
            forbidden_substrings=frozenset(commands.get("forbiddenPatterns", [])),
            node_versions=tuple(str(v) for v in data.get("nodeVersions", DEFAULT_NODE_VERSIONS)),
            max_arguments=limits.get("maxArguments", DEFAULT_MAX_ARGUMENTS),
        )

    @staticmethod
    def validate_config(data: Any) -> List[str]:
        """
        Validate a policy extension against the security baseline.

        Returns:
            List of problems (empty when the config is acceptable)
        """
        if not isinstance(data, dict):
            return ["policy must be a mapping"]

        problems = []
        commands = data.get("commands", {}) or {}
        for name in commands.get("allowedExecutables", []):
            if not isinstance(name, str) or not _EXECUTABLE_NAME.match(name):
                problems.append(f"invalid executable name: {name!r}")
            elif name in FORBIDDEN_EXECUTABLES:
                problems.append(f"executable may not be allowed: {name}")

        for version in data.get("nodeVersions", []):
            if not _NODE_VERSION.match(str(version)):
                problems.append(f"invalid node version: {version!r}")

        max_args = (data.get("limits", {}) or {}).get("maxArguments", DEFAULT_MAX_ARGUMENTS)
        if not isinstance(max_args, int) or max_args < 1 or max_args > 256:
            problems.append(f"invalid maxArguments: {max_args!r}")

        return problems

    def validate_command(self, command: str) -> Tuple[bool, Optional[str]]:
        """
        Validate an install or build command.

        Args:
            command: Command line as configured on the project

        Returns:
            Tuple of (is_valid, rejection_reason)
        """
        if not command or not command.strip():
            return True, None

        trimmed = command.strip()

        # Dangerous constructs are checked before anything is tokenized
        for pattern, description in self.IMMUTABLE_FORBIDDEN_PATTERNS:
            if pattern.search(trimmed):
                return False, f"Command contains forbidden shell construct: {description}"

        lowered = trimmed.lower()
        for substring in self.forbidden_substrings:
            if substring in lowered:
                return False, f"Forbidden pattern '{substring}' detected"

        try:
            args = shlex.split(trimmed)
        except ValueError as e:
            return False, f"Command could not be parsed: {e}"

        if not args:
            return True, None

        if len(args) > self.max_arguments:
            return False, f"Too many arguments (max: {self.max_arguments})"

        executable = args[0]
        if "/" in executable or executable.lower() not in self.allowed_executables:
            return False, f'Command "{executable}" is not in the allowed list'

        return True, None

    def is_allowed_node_version(self, version: str) -> bool:
        return version in self.node_versions


def split_command(command: str) -> List[str]:
    """Turn a validated command into an argv list."""
    return shlex.split(command.strip()) if command and command.strip() else []
