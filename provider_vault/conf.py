"""
Provider Vault Settings — explicit, validated configuration.

Every component receives a ``VaultSettings`` instance in its constructor;
nothing reads module-level mutable state.

Environment variables understood by ``VaultSettings.from_env()``:
    PROVIDER_VAULT_CONFIG_DIR     = <directory holding config/key/secrets/audit>
    PROVIDER_VAULT_RUNTIME_DIR    = <private base directory for handoff staging>
    PROVIDER_VAULT_CIPHER_BACKEND = aesgcm | chacha20
"""
import os
import sys
import tempfile
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("provider_vault.conf")

APP_DIR_NAME = "provider-vault"

CONFIG_FILE_NAME = "config.yaml"
LEGACY_CONFIG_FILE_NAME = "config"
SECRETS_FILE_NAME = "secrets.enc"
KEY_FILE_NAME = "vault.key"
AUDIT_FILE_NAME = "audit.log"

SUPPORTED_CIPHERS = ("aesgcm", "chacha20")


def default_config_dir() -> Path:
    """Return the platform-specific default configuration directory.

    - Unix: ``~/.config/provider-vault``
    - Windows: ``%APPDATA%\\provider-vault``
    """
    home = Path.home()
    if sys.platform == "win32":
        return home / "AppData" / "Roaming" / APP_DIR_NAME
    return home / ".config" / APP_DIR_NAME


def default_runtime_dir() -> Path:
    """Private base directory for ephemeral credential staging."""
    xdg = os.environ.get("XDG_RUNTIME_DIR")
    if xdg and os.path.isdir(xdg):
        return Path(xdg)
    return Path(tempfile.gettempdir())


class VaultSettings(BaseModel):
    """Validated provider_vault configuration."""

    config_dir: Path = Field(default_factory=default_config_dir)
    runtime_dir: Path = Field(default_factory=default_runtime_dir)
    config_file: str = Field(default=CONFIG_FILE_NAME)
    secrets_file: str = Field(default=SECRETS_FILE_NAME)
    key_file: str = Field(default=KEY_FILE_NAME)
    audit_file: str = Field(default=AUDIT_FILE_NAME)
    cipher_backend: str = Field(default="aesgcm")
    audit_max_size: int = Field(default=10 * 1024 * 1024, ge=1)
    audit_max_age_days: int = Field(default=30, ge=1)
    audit_max_backups: int = Field(default=5, ge=0)

    @field_validator("cipher_backend")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        """Validate cipher backend is supported."""
        v = v.lower()
        if v not in SUPPORTED_CIPHERS:
            raise ValueError(f"Unsupported cipher backend: {v}")
        return v

    @field_validator("config_file", "secrets_file", "key_file", "audit_file")
    @classmethod
    def validate_file_name(cls, v: str) -> str:
        """File names are relative to config_dir and must not escape it."""
        if not v or os.sep in v or v in (".", ".."):
            raise ValueError(f"Invalid file name: {v!r}")
        return v

    @property
    def config_path(self) -> Path:
        return self.config_dir / self.config_file

    @property
    def secrets_path(self) -> Path:
        return self.config_dir / self.secrets_file

    @property
    def key_path(self) -> Path:
        return self.config_dir / self.key_file

    @property
    def audit_path(self) -> Path:
        return self.config_dir / self.audit_file

    @classmethod
    def from_env(cls, config_dir: Optional[str] = None) -> "VaultSettings":
        """Create VaultSettings from environment variables.

        Args:
            config_dir: Explicit directory, taking precedence over the
                environment.

        Returns:
            Populated VaultSettings instance.
        """
        values: dict = {}
        directory = config_dir or os.environ.get("PROVIDER_VAULT_CONFIG_DIR")
        if directory:
            values["config_dir"] = Path(directory).expanduser()
        runtime = os.environ.get("PROVIDER_VAULT_RUNTIME_DIR")
        if runtime:
            values["runtime_dir"] = Path(runtime).expanduser()
        cipher = os.environ.get("PROVIDER_VAULT_CIPHER_BACKEND")
        if cipher:
            values["cipher_backend"] = cipher
        settings = cls(**values)
        logger.debug("Using config directory %s", settings.config_dir)
        return settings
