"""Orchestrator configuration: schema, defaults, loading and the sample file."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml
from pydantic import ValidationError
from pydantic.type_adapter import TypeAdapter

from .phases import PHASE_SEQUENCE, Phase
from .prompts import DEFAULT_ROLE_PROMPTS

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "red-green-refactor.yaml"
DEFAULT_TEST_CMD = "pytest -q"
DEFAULT_MAX_CONTEXT_BYTES = 200_000
DEFAULT_IMPLEMENTOR_ATTEMPTS = 3
DEFAULT_CONTEXT_GLOBS: tuple[str, ...] = (
    "src/**/*",
    "tests/**/*",
    "test/**/*",
    "benches/**/*",
    "examples/**/*",
    "Cargo.toml",
    "pyproject.toml",
    "package.json",
    "README*",
    "**/*.md",
)


class ConfigurationError(RuntimeError):
    """Raised when configuration is missing, malformed or unusable."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = dict(details or {})


class ProviderKind(str, Enum):
    """Supported generation backends."""

    OPENAI = "openai"
    GEMINI = "gemini"
    MOCK = "mock"


_KIND_ALIASES = {
    "open_ai": ProviderKind.OPENAI.value,
    "open-ai": ProviderKind.OPENAI.value,
    "offline": ProviderKind.MOCK.value,
}


@dataclass(slots=True)
class ProviderConfig:
    """Backend selection plus the connection details it needs."""

    kind: ProviderKind
    model: str
    base_url: str | None = None
    api_key_env: str | None = None
    organization: str | None = None
    api_key_header: str | None = None
    api_key_prefix: str | None = None
    timeout: float = 120.0
    temperature: float = 0.2
    max_attempts: int = 3
    retry_delay: float = 0.5


@dataclass(slots=True)
class RoleConfig:
    """Provider and persona for one role."""

    provider: ProviderConfig
    system_prompt: str | None = None
    max_attempts: int | None = None


@dataclass(slots=True)
class OrchestratorConfig:
    """Top-level configuration for a red-green-refactor run."""

    tester: RoleConfig
    implementor: RoleConfig
    refactorer: RoleConfig
    test_cmd: str = DEFAULT_TEST_CMD
    test_timeout: float | None = None
    max_context_bytes: int = DEFAULT_MAX_CONTEXT_BYTES
    implementor_max_attempts: int = DEFAULT_IMPLEMENTOR_ATTEMPTS
    context_globs: list[str] = field(default_factory=lambda: list(DEFAULT_CONTEXT_GLOBS))

    def role(self, phase: Phase) -> RoleConfig:
        return getattr(self, Phase(phase).value)

    @property
    def implementor_attempts(self) -> int:
        """Attempt budget for the implementor; the role override wins when set."""
        override = self.implementor.max_attempts
        return override if override is not None else self.implementor_max_attempts

    @classmethod
    def example(cls) -> "OrchestratorConfig":
        """Offline configuration used when no config file is supplied."""

        def _role(phase: Phase) -> RoleConfig:
            return RoleConfig(
                provider=ProviderConfig(kind=ProviderKind.MOCK, model="mock"),
                system_prompt=DEFAULT_ROLE_PROMPTS[phase],
            )

        return cls(
            tester=_role(Phase.TESTER),
            implementor=_role(Phase.IMPLEMENTOR),
            refactorer=_role(Phase.REFACTORER),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Return a plain mapping suitable for YAML or JSON serialisation."""
        return _CONFIG_ADAPTER.dump_python(self, mode="json")


_CONFIG_ADAPTER = TypeAdapter(OrchestratorConfig)


def config_from_mapping(data: Mapping[str, Any], *, source: str = "<config>") -> OrchestratorConfig:
    """Validate ``data`` and return a typed configuration."""
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"{source}: configuration must be a mapping at the top level.")

    payload = _normalise_provider_kinds(copy.deepcopy(dict(data)))
    try:
        config = _CONFIG_ADAPTER.validate_python(payload)
    except ValidationError as error:
        problems = [_format_error(item) for item in error.errors()]
        raise ConfigurationError(
            f"{source}: invalid configuration: " + "; ".join(problems),
            details={"errors": problems},
        ) from error

    _check_values(config, source)
    return config


def load_config(path: Path | str | None) -> OrchestratorConfig:
    """Load configuration from ``path``; JSON by ``.json`` extension, YAML otherwise.

    When ``path`` is ``None`` the offline example configuration is returned so
    the tool can be tried without credentials.
    """
    if path is None:
        LOGGER.info("No configuration supplied; using the offline example configuration.")
        return OrchestratorConfig.example()

    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except FileNotFoundError as error:
        raise ConfigurationError(f"Config file not found: {config_path}") from error
    except OSError as error:
        raise ConfigurationError(f"Unable to read config file {config_path}: {error}") from error

    if config_path.suffix.lower() == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as error:
            raise ConfigurationError(f"Failed to parse JSON config {config_path}: {error}") from error
    else:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as error:
            raise ConfigurationError(f"Failed to parse YAML config {config_path}: {error}") from error

    if data is None:
        raise ConfigurationError(f"Config file is empty: {config_path}")
    config = config_from_mapping(data, source=str(config_path))
    LOGGER.debug("Loaded configuration from %s", config_path)
    return config


def write_sample_config(out: Path | str) -> Path:
    """Write the example configuration as YAML and return the written path.

    A directory target receives a file named :data:`DEFAULT_CONFIG_NAME`.
    """
    target = Path(out)
    if target.is_dir():
        target = target / DEFAULT_CONFIG_NAME
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(OrchestratorConfig.example().to_dict(), handle, sort_keys=False)
    return target


# ---------------------------------------------------------------- validation
def _normalise_provider_kinds(payload: Dict[str, Any]) -> Dict[str, Any]:
    for phase in PHASE_SEQUENCE:
        role = payload.get(phase.value)
        if not isinstance(role, dict):
            continue
        provider = role.get("provider")
        if isinstance(provider, dict) and isinstance(provider.get("kind"), str):
            kind = provider["kind"].strip().lower()
            provider["kind"] = _KIND_ALIASES.get(kind, kind)
    return payload


def _format_error(error: Mapping[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ())) or "<root>"
    return f"{location}: {error.get('msg', 'invalid value')}"


def _check_values(config: OrchestratorConfig, source: str) -> None:
    problems: list[str] = []
    if not config.test_cmd.strip():
        problems.append("test_cmd must not be empty")
    if config.max_context_bytes < 0:
        problems.append("max_context_bytes must be zero or positive")
    if config.implementor_max_attempts < 1:
        problems.append("implementor_max_attempts must be at least 1")
    if config.test_timeout is not None and config.test_timeout <= 0:
        problems.append("test_timeout must be positive when set")

    for phase in PHASE_SEQUENCE:
        role = config.role(phase)
        provider = role.provider
        prefix = f"{phase.value}.provider"
        if not provider.model.strip():
            problems.append(f"{prefix}.model must not be empty")
        if provider.base_url and not provider.base_url.startswith(("http://", "https://")):
            problems.append(f"{prefix}.base_url must be an http(s) URL")
        if provider.max_attempts < 1:
            problems.append(f"{prefix}.max_attempts must be at least 1")
        if provider.timeout <= 0:
            problems.append(f"{prefix}.timeout must be positive")
        if provider.retry_delay < 0:
            problems.append(f"{prefix}.retry_delay must not be negative")
        if role.max_attempts is None:
            continue
        if phase is not Phase.IMPLEMENTOR:
            problems.append(f"{phase.value}.max_attempts is only supported for the implementor")
        elif role.max_attempts < 1:
            problems.append(f"{phase.value}.max_attempts must be at least 1")

    if problems:
        raise ConfigurationError(
            f"{source}: invalid configuration: " + "; ".join(problems),
            details={"errors": problems},
        )


__all__ = [
    "ConfigurationError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONTEXT_GLOBS",
    "DEFAULT_IMPLEMENTOR_ATTEMPTS",
    "DEFAULT_MAX_CONTEXT_BYTES",
    "DEFAULT_TEST_CMD",
    "OrchestratorConfig",
    "ProviderConfig",
    "ProviderKind",
    "RoleConfig",
    "config_from_mapping",
    "load_config",
    "write_sample_config",
]
