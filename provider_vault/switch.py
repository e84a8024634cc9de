"""
Provider switch — resolve a profile and its credential, then hand off.

This ties the core together for one ``switch <provider> [args...]`` run:
load the config, decrypt the vault, record the audit event, build the child
environment and launch the harness through ``CredentialHandoff``.
"""
import os
import shutil
import logging
from enum import Enum
from collections.abc import Iterable, Mapping, Sequence
from typing import Callable, Optional

from .audit import AuditLog
from .conf import VaultSettings
from .exceptions import AuditLogError, HandoffError
from .handoff import CredentialHandoff
from .profiles import ProviderKind, ProviderProfile, load_config
from .vault.secrets import SecretsVault, api_key_name

logger = logging.getLogger("provider_vault.switch")

ENV_BASE_URL = "ANTHROPIC_BASE_URL"
ENV_MODEL = "ANTHROPIC_MODEL"
MODEL_ENV_VARS = (
    ENV_MODEL,
    "ANTHROPIC_DEFAULT_HAIKU_MODEL",
    "ANTHROPIC_DEFAULT_SONNET_MODEL",
    "ANTHROPIC_DEFAULT_OPUS_MODEL",
    "ANTHROPIC_SMALL_FAST_MODEL",
)


class Harness(str, Enum):
    CLAUDE = "claude"
    QWEN = "qwen"

    @classmethod
    def resolve(cls, name: Optional[str]) -> "Harness":
        """Unknown or empty names fall back to ``claude``."""
        if not name:
            return cls.CLAUDE
        try:
            return cls(name.lower())
        except ValueError:
            logger.warning("Unknown harness %r, using 'claude'", name)
            return cls.CLAUDE

    @property
    def binary(self) -> str:
        return self.value

    @property
    def credential_var(self) -> str:
        if self is Harness.QWEN:
            return "ANTHROPIC_API_KEY"
        return "ANTHROPIC_AUTH_TOKEN"


def _pairs(source) -> Iterable[tuple[str, str]]:
    if isinstance(source, Mapping):
        yield from source.items()
        return
    for item in source:
        key, sep, value = item.partition("=")
        if not sep or not key:
            continue
        yield key, value


def merge_env(*sources) -> dict[str, str]:
    """Merge environment sources, later sources winning.

    Each source is a mapping or an iterable of ``KEY=VALUE`` strings;
    malformed strings are skipped.
    """
    merged: dict[str, str] = {}
    for source in sources:
        for key, value in _pairs(source):
            merged.pop(key, None)
            merged[key] = value
    return merged


def provider_env(profile: ProviderProfile) -> dict[str, str]:
    """Built-in variables pointing the harness at the provider."""
    env = {}
    if profile.base_url:
        env[ENV_BASE_URL] = profile.base_url
    if profile.model:
        for name in MODEL_ENV_VARS:
            env[name] = profile.model
    return env


class ProviderSwitch:
    """Launch a harness against one configured provider."""

    def __init__(
        self,
        settings: VaultSettings,
        *,
        handoff: Optional[CredentialHandoff] = None,
        audit: Optional[AuditLog] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        self._settings = settings
        self._handoff = handoff or CredentialHandoff(settings)
        self._audit = audit or AuditLog(settings)
        self._vault = SecretsVault(settings)
        self._which = which

    def load_secrets(self) -> dict[str, str]:
        """Decrypt the vault; no secrets file yet means no secrets."""
        return self._vault.load(missing_ok=True)

    def build_env(
        self,
        profile: ProviderProfile,
        secrets: Mapping[str, str],
        credential_key: str,
        base: Optional[Mapping[str, str]] = None,
    ) -> dict[str, str]:
        """System env, then provider vars, then profile extras, then secrets.

        The provider's own API key is left out; it only travels through
        the handoff.
        """
        others = {k: v for k, v in secrets.items() if k != credential_key}
        return merge_env(
            os.environ if base is None else base,
            provider_env(profile),
            profile.env_vars,
            others,
        )

    def run(
        self,
        provider_id: str,
        args: Sequence[str] = (),
        *,
        harness: Optional[str] = None,
        model: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> int:
        """Switch to ``provider_id`` and run the harness with ``args``.

        Returns:
            Exit code of the harness.

        Raises:
            ConfigNotFound / ConfigError: Provider missing or config invalid.
            DecryptError / KeyStoreError / SecretsReadError: The vault
                cannot be opened.
            HandoffError: The harness is missing, a required key is missing,
                or the credential could not be staged.
        """
        cfg = load_config(self._settings)
        profile = cfg.get_provider(provider_id)
        chosen = Harness.resolve(harness or cfg.default_harness)
        secrets = self.load_secrets()
        credential_key = api_key_name(provider_id)
        secret = secrets.get(credential_key)

        executable = self._which(chosen.binary)
        if executable is None:
            raise HandoffError(f"'{chosen.binary}' command not found in PATH")

        cli_args = list(args)
        if chosen is Harness.QWEN:
            if secret is None:
                raise HandoffError(
                    f"API key not found for provider {provider_id!r}; "
                    "the qwen harness requires one"
                )
            chosen_model = model or profile.model or cfg.default_models.get(provider_id, "")
            if chosen_model:
                cli_args = ["--model", chosen_model, *cli_args]

        try:
            self._audit.log_switch(provider_id)
        except AuditLogError as err:
            logger.warning("Audit logging failed: %s", err)

        child_env = self.build_env(profile, secrets, credential_key, env)
        if secret is None:
            if ProviderKind.resolve(provider_id).requires_api_key:
                logger.warning("No API key stored for %s", provider_id)
            return self._handoff.run_plain(executable, cli_args, env=child_env)
        return self._handoff.run(
            secret,
            executable,
            cli_args,
            env_var=chosen.credential_var,
            env=child_env,
        )
