"""
Runtime registry: the static catalog of languages the service can run.

Profiles are loaded once at startup (built-in defaults or a YAML file) and
are read-only while serving. Lookups go through the closed ``Language``
enum, so anything outside it is rejected before a request exists.
"""
import logging
import re
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import yaml

from sandpit.exceptions import InvalidLanguageError

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmg]?)i?b?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "k": 1024, "m": MIB, "g": 1024 * MIB}


class Language(str, Enum):
    """Languages the service knows how to run."""
    PYTHON = "python"
    JAVASCRIPT = "javascript"
    BASH = "bash"

    @classmethod
    def parse(cls, value: str) -> "Language":
        try:
            return cls(value.strip().lower())
        except (ValueError, AttributeError):
            raise InvalidLanguageError(str(value), [lang.value for lang in cls])


def parse_size(value: Union[int, str]) -> int:
    """Parse a byte size such as ``268435456``, ``"256m"`` or ``"1GiB"``."""
    if isinstance(value, int):
        return value
    match = _SIZE_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"Invalid size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[unit.lower()])


@dataclass(frozen=True)
class RuntimeProfile:
    language_id: Language
    image_reference: str
    command: Tuple[str, ...]
    cpu_limit: float = 1.0
    memory_limit_bytes: int = 256 * MIB
    wall_clock_limit: float = 5.0
    allowed_syscalls: Optional[Tuple[int, ...]] = None
    host_command: Optional[Tuple[str, ...]] = None
    source_filename: str = "main"
    # Per-container pids limit; host substrates cannot enforce it per request
    max_processes: int = 64
    max_open_files: int = 256

    def render_command(self, source_path: str, host: bool = False) -> List[str]:
        """Return the run command with ``{source}`` substituted."""
        template = self.host_command if host and self.host_command else self.command
        return [part.replace("{source}", source_path) for part in template]

    @property
    def cpu_time_limit(self) -> int:
        """CPU seconds allowed for the whole run."""
        return max(1, int(self.wall_clock_limit * self.cpu_limit) + 1)

    def describe(self) -> Dict[str, Any]:
        """Public view of the profile; image and commands stay private."""
        return {
            "language": self.language_id.value,
            "cpu_limit": self.cpu_limit,
            "memory_limit_bytes": self.memory_limit_bytes,
            "wall_clock_limit": self.wall_clock_limit,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuntimeProfile":
        language = Language.parse(data["language"])
        command = data.get("command")
        if not command:
            raise ValueError(f"Runtime '{language.value}' has no command")
        memory = data.get("memory_limit_bytes", data.get("memory_limit", 256 * MIB))
        syscalls = data.get("allowed_syscalls")
        host_command = data.get("host_command")
        return cls(
            language_id=language,
            image_reference=data["image"],
            command=tuple(command),
            cpu_limit=float(data.get("cpu_limit", 1.0)),
            memory_limit_bytes=parse_size(memory),
            wall_clock_limit=float(data.get("wall_clock_limit", 5.0)),
            allowed_syscalls=tuple(syscalls) if syscalls else None,
            host_command=tuple(host_command) if host_command else None,
            source_filename=data.get("source_filename", "main"),
            max_processes=int(data.get("max_processes", 64)),
            max_open_files=int(data.get("max_open_files", 256)),
        )


class RuntimeRegistry:
    """Read-only mapping from ``Language`` to ``RuntimeProfile``."""

    def __init__(self, profiles: Iterable[RuntimeProfile]):
        self._profiles: Dict[Language, RuntimeProfile] = {}
        for profile in profiles:
            if profile.language_id in self._profiles:
                raise ValueError(f"Duplicate runtime: {profile.language_id.value}")
            self._profiles[profile.language_id] = profile

    def __contains__(self, language: object) -> bool:
        try:
            self.resolve(language)
        except InvalidLanguageError:
            return False
        return True

    def __len__(self) -> int:
        return len(self._profiles)

    @property
    def languages(self) -> List[str]:
        return [lang.value for lang in self._profiles]

    def profiles(self) -> List[RuntimeProfile]:
        return list(self._profiles.values())

    def resolve(self, language: Union[str, Language]) -> RuntimeProfile:
        """Look up the profile for ``language``.

        Raises:
            InvalidLanguageError: if the language is unknown or not registered.
        """
        if not isinstance(language, Language):
            try:
                language = Language(str(language).strip().lower())
            except ValueError:
                raise InvalidLanguageError(str(language), self.languages)
        profile = self._profiles.get(language)
        if profile is None:
            raise InvalidLanguageError(language.value, self.languages)
        return profile

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuntimeRegistry":
        entries = data.get("runtimes") or []
        if not entries:
            raise ValueError("Runtime registry config defines no runtimes")
        return cls(RuntimeProfile.from_dict(entry) for entry in entries)


def default_registry() -> RuntimeRegistry:
    """Registry used when no config file is given: Python only."""
    return RuntimeRegistry([
        RuntimeProfile(
            language_id=Language.PYTHON,
            image_reference="python:3.12-slim",
            command=("python3", "-I", "-u", "{source}"),
            host_command=(sys.executable, "-I", "-u", "{source}"),
            source_filename="main.py",
        ),
    ])


def load_config_file(path: Union[str, Path]) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return data


def load_runtime_registry(path: Optional[Union[str, Path]] = None) -> RuntimeRegistry:
    """Load the registry from a YAML file, or the built-in default."""
    if path is None:
        registry = default_registry()
    else:
        registry = RuntimeRegistry.from_dict(load_config_file(path))
    logger.info(f"Runtime registry loaded: {', '.join(registry.languages)}")
    return registry
