"""Provider Vault.

Encrypted provider credentials, transactional config edits, an append-only
audit trail and a credential handoff that launches a CLI harness without
leaking the key.
"""
from .version import __version__
from .conf import VaultSettings
from .exceptions import (
    VaultError,
    NotFoundError,
    SecretsNotFound,
    AuditLogNotFound,
    ConfigNotFound,
    KeyStoreError,
    SecretsReadError,
    DecryptError,
    CorruptSecretsError,
    EncryptError,
    ConfigError,
    BackupError,
    RecoveryPhraseError,
    DualFailureError,
    AuditLogError,
    AuditLogUnavailable,
    UnsupportedFormat,
    HandoffError,
    PermissionEnforcementError,
)
from .vault import KeyStore, SecretsVault, rotate_key
from .transaction import ConfigTransaction, with_config_transaction
from .audit import AuditLog, AuditEntry, Change, EventKind, export_entries, render_entries
from .handoff import CredentialHandoff, CredentialGuard, LauncherConfig
from .profiles import ProviderConfig, ProviderKind, ProviderProfile, load_config, save_config
from .switch import ProviderSwitch, merge_env

__all__ = [
    "__version__",
    "VaultSettings",
    "VaultError",
    "NotFoundError",
    "SecretsNotFound",
    "AuditLogNotFound",
    "ConfigNotFound",
    "KeyStoreError",
    "SecretsReadError",
    "DecryptError",
    "CorruptSecretsError",
    "EncryptError",
    "ConfigError",
    "BackupError",
    "RecoveryPhraseError",
    "DualFailureError",
    "AuditLogError",
    "AuditLogUnavailable",
    "UnsupportedFormat",
    "HandoffError",
    "PermissionEnforcementError",
    "KeyStore",
    "SecretsVault",
    "rotate_key",
    "ConfigTransaction",
    "with_config_transaction",
    "AuditLog",
    "AuditEntry",
    "Change",
    "EventKind",
    "export_entries",
    "render_entries",
    "CredentialHandoff",
    "CredentialGuard",
    "LauncherConfig",
    "ProviderConfig",
    "ProviderKind",
    "ProviderProfile",
    "load_config",
    "save_config",
    "ProviderSwitch",
    "merge_env",
]
