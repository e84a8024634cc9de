"""Provider Vault — Encrypted credential storage bound to a config directory.

Security Note (Threat Model):
    Secrets are decrypted in process memory while a command runs.
    A memory dump of the process could expose the plaintext.
    This is an accepted limitation; ``SecretBuffer`` narrows the window
    for callers that can work with bytes.
"""

from .keystore import (
    KeyStore,
    generate_key,
    load_identity,
    load_recipient,
    create_recovery_phrase,
    parse_recovery_phrase,
    recover_from_phrase,
)
from .secrets import (
    SecretsVault,
    SecretBuffer,
    api_key_name,
    parse_secrets,
    format_secrets,
    decrypt_file,
    encrypt_file,
)
from .key_rotation import rotate_key

__all__ = [
    "KeyStore",
    "generate_key",
    "load_identity",
    "load_recipient",
    "create_recovery_phrase",
    "parse_recovery_phrase",
    "recover_from_phrase",
    "SecretsVault",
    "SecretBuffer",
    "api_key_name",
    "parse_secrets",
    "format_secrets",
    "decrypt_file",
    "encrypt_file",
    "rotate_key",
]
