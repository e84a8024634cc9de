"""
Provider Vault errors.

Every core operation raises one of these to its immediate caller; nothing
retries. ``NotFoundError`` subclasses mark absent optional state (no secrets
or audit log yet) and are expected to be treated as "empty" by callers.
"""
from typing import Optional


class VaultError(Exception):
    """Base class for all provider_vault errors."""

    def __init__(self, message: str, *, path: Optional[str] = None):
        self.message = message
        self.path = path
        super().__init__(message)

    def __str__(self) -> str:
        if self.path:
            return f"{self.message} (path={self.path})"
        return self.message


class NotFoundError(VaultError):
    """Absent optional state."""


class SecretsNotFound(NotFoundError):
    """The encrypted secrets file does not exist yet."""


class AuditLogNotFound(NotFoundError):
    """The audit log file does not exist yet."""


class ConfigNotFound(NotFoundError):
    """The provider configuration file does not exist."""


class KeyStoreError(VaultError):
    """Key file could not be created or read."""


class SecretsReadError(VaultError):
    """The secrets file exists but could not be read."""


class DecryptError(VaultError):
    """Wrong key or tampered ciphertext."""


class CorruptSecretsError(DecryptError):
    """The secrets file is not a valid vault envelope."""


class EncryptError(VaultError):
    """The vault could not be encrypted or written."""


class ConfigError(VaultError):
    """Provider configuration could not be parsed or written."""


class BackupError(VaultError):
    """A transaction snapshot of the config file could not be taken."""


class RecoveryPhraseError(KeyStoreError):
    """A recovery phrase is malformed or fails its integrity check."""


class DualFailureError(VaultError):
    """A transaction failed and restoring the snapshot failed as well.

    The config file is in an unknown state; the snapshot is left on disk
    at ``backup_path`` for manual recovery.
    """

    def __init__(
        self,
        original: BaseException,
        restore_error: BaseException,
        backup_path: str,
    ):
        self.original = original
        self.restore_error = restore_error
        self.backup_path = backup_path
        super().__init__(
            "transaction failed and rollback also failed: "
            f"tx_err={original!r}, rollback_err={restore_error!r}",
            path=backup_path,
        )


class AuditLogError(VaultError):
    """The audit log could not be written or exported."""


class AuditLogUnavailable(AuditLogError):
    """The audit log has a malformed record before its tail.

    ``entries`` holds every valid record read before the broken one.
    """

    def __init__(self, message: str, *, path: str, line: int, entries: list):
        self.line = line
        self.entries = entries
        super().__init__(f"{message} at line {line}", path=path)


class UnsupportedFormat(VaultError, ValueError):
    """Unknown export format name."""

    def __init__(self, fmt: str, supported: tuple = ()):
        self.format = fmt
        self.supported = supported
        msg = f"unsupported export format: {fmt!r}"
        if supported:
            msg += f" (supported: {', '.join(supported)})"
        super().__init__(msg)


class HandoffError(VaultError):
    """Credential handoff could not be prepared."""


class PermissionEnforcementError(HandoffError):
    """The filesystem did not honour an owner-only permission request."""
