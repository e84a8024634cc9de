"""Shared fixtures: an isolated config directory per test."""
import pytest

from provider_vault.conf import VaultSettings
from provider_vault.vault import KeyStore


@pytest.fixture
def settings(tmp_path):
    """VaultSettings rooted in a fresh temporary directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir(mode=0o700)
    runtime_dir = tmp_path / "run"
    runtime_dir.mkdir(mode=0o700)
    return VaultSettings(config_dir=config_dir, runtime_dir=runtime_dir)


@pytest.fixture
def keyed_settings(settings):
    """Settings whose config directory already holds a key pair."""
    KeyStore(settings).ensure_key()
    return settings


@pytest.fixture
def config_yaml():
    return (
        "default_provider: zai\n"
        "providers:\n"
        "  zai:\n"
        "    name: Z.AI\n"
        "    base_url: https://api.z.ai/api/anthropic\n"
        "    model: glm-4.7\n"
        "    env_vars:\n"
        "      - ANTHROPIC_DEFAULT_HAIKU_MODEL=glm-4.5-air\n"
    )
