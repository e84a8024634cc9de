"""
Provider profiles — the plaintext ``config.yaml`` document.

Layout::

    default_provider: zai
    default_harness: claude
    default_models:
      zai: glm-4.7
    providers:
      zai:
        name: Z.AI
        base_url: https://api.z.ai/api/anthropic
        model: glm-4.7
        env_vars:
          - ANTHROPIC_DEFAULT_HAIKU_MODEL=glm-4.5-air

Credentials never live here; they are stored in the encrypted vault under
``<PROVIDERID>_API_KEY``.
"""
import os
import logging
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .conf import LEGACY_CONFIG_FILE_NAME, VaultSettings
from .exceptions import ConfigError, ConfigNotFound
from .fileutil import OWNER_RW, atomic_write

logger = logging.getLogger("provider_vault.profiles")


class ProviderKind(str, Enum):
    """Closed set of known provider variants; everything else is ``custom``."""

    ANTHROPIC = "anthropic"
    ZAI = "zai"
    MINIMAX = "minimax"
    KIMI = "kimi"
    DEEPSEEK = "deepseek"
    CUSTOM = "custom"

    @classmethod
    def resolve(cls, provider_id: str) -> "ProviderKind":
        try:
            return cls(provider_id.lower())
        except ValueError:
            return cls.CUSTOM

    @property
    def requires_api_key(self) -> bool:
        # the native endpoint authenticates through the harness itself
        return self is not ProviderKind.ANTHROPIC


class ProviderProfile(BaseModel):
    """One configured provider."""

    model_config = ConfigDict(extra="forbid")

    name: str = ""
    base_url: str = ""
    model: str = ""
    env_vars: list[str] = Field(default_factory=list)

    @field_validator("env_vars")
    @classmethod
    def validate_env_vars(cls, v: list[str]) -> list[str]:
        """Every extra assignment must look like ``KEY=VALUE``."""
        for item in v:
            key, sep, _ = item.partition("=")
            if not sep or not key:
                raise ValueError(f"env var must be KEY=VALUE, got {item!r}")
        return v

    def env_pairs(self) -> list[tuple[str, str]]:
        pairs = []
        for item in self.env_vars:
            key, _, value = item.partition("=")
            pairs.append((key, value))
        return pairs


class ProviderConfig(BaseModel):
    """The whole configuration document."""

    model_config = ConfigDict(extra="forbid")

    default_provider: str = ""
    providers: dict[str, ProviderProfile] = Field(default_factory=dict)
    default_models: dict[str, str] = Field(default_factory=dict)
    default_harness: str = ""
    # kept so older files still load; not used
    version: Optional[str] = None

    def get_provider(self, provider_id: str) -> ProviderProfile:
        try:
            return self.providers[provider_id]
        except KeyError:
            raise ConfigError(f"provider {provider_id!r} not configured") from None

    def kind_of(self, provider_id: str) -> ProviderKind:
        return ProviderKind.resolve(provider_id)


def migrate_legacy_config(settings: VaultSettings) -> bool:
    """Move a legacy extension-less ``config`` file to ``config.yaml``.

    Only runs when the legacy file exists, the new one does not, and the
    legacy content is valid YAML. The legacy file is renamed to
    ``config.backup``.

    Returns:
        True if a migration was performed.
    """
    legacy = settings.config_dir / LEGACY_CONFIG_FILE_NAME
    target = settings.config_path
    if legacy == target or not legacy.is_file() or target.exists():
        return False
    try:
        data = legacy.read_bytes()
        yaml.safe_load(data)
    except (OSError, yaml.YAMLError) as err:
        raise ConfigError(
            f"legacy config file cannot be migrated: {err}", path=str(legacy)
        ) from err
    mode = legacy.stat().st_mode & 0o777
    atomic_write(target, data, mode)
    try:
        os.replace(legacy, legacy.with_name(legacy.name + ".backup"))
    except OSError as err:
        target.unlink(missing_ok=True)
        raise ConfigError(
            f"failed to back up legacy config file: {err}", path=str(legacy)
        ) from err
    logger.info("Migrated legacy config %s to %s", legacy, target)
    return True


def parse_config(data: bytes, path: Optional[Path] = None) -> ProviderConfig:
    """Parse and validate a YAML configuration document."""
    where = str(path) if path else None
    try:
        raw = yaml.safe_load(data) or {}
    except yaml.YAMLError as err:
        raise ConfigError(
            f"failed to parse configuration file (invalid YAML): {err}", path=where
        ) from err
    if not isinstance(raw, dict):
        raise ConfigError("configuration root must be a mapping", path=where)
    try:
        return ProviderConfig.model_validate(raw)
    except ValidationError as err:
        raise ConfigError(
            f"configuration file contains invalid or unrecognized fields: {err}",
            path=where,
        ) from err


def dump_config(cfg: ProviderConfig) -> bytes:
    data = cfg.model_dump(exclude_none=True)
    return yaml.safe_dump(data, sort_keys=True, default_flow_style=False).encode("utf-8")


def load_config(settings: VaultSettings) -> ProviderConfig:
    """Read the configuration file.

    Raises:
        ConfigNotFound: If no configuration file exists.
        ConfigError: If the file cannot be read or is invalid.
    """
    migrate_legacy_config(settings)
    path = settings.config_path
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        raise ConfigNotFound("configuration file not found", path=str(path)) from None
    except OSError as err:
        raise ConfigError(
            f"failed to read configuration file: {err.strerror or err}", path=str(path)
        ) from err
    return parse_config(data, path)


def save_config(settings: VaultSettings, cfg: ProviderConfig) -> None:
    """Atomically write the configuration file with owner-only permission."""
    path = settings.config_path
    try:
        settings.config_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        atomic_write(path, dump_config(cfg), OWNER_RW)
    except OSError as err:
        raise ConfigError(
            f"failed to write configuration file: {err.strerror or err}", path=str(path)
        ) from err
    logger.debug("Configuration saved to %s", path)
