"""
Config transactions — snapshot-and-rollback around a config file mutation.

After ``run()`` returns or raises, the config file is either the fully
updated document (the mutation succeeded) or byte-identical to what it was
before ``begin()`` (the mutation failed and the snapshot was restored).
``DualFailureError`` is the only other outcome: the mutation failed and the
restore write failed too, so the snapshot is kept on disk.

Transactions are not reentrant and take no lock; one invocation at a time
is assumed.
"""
import os
import time
import logging
from pathlib import Path
from types import TracebackType
from typing import Any, Callable, Optional, TypeVar

from .conf import VaultSettings
from .exceptions import BackupError, DualFailureError
from .fileutil import OWNER_RW, atomic_write, file_mode

logger = logging.getLogger("provider_vault.transaction")

T = TypeVar("T")


def backup_path_for(config_path: Path) -> Path:
    """Snapshot path with a nanosecond timestamp suffix.

    Two transactions started within the same second still get distinct
    names.
    """
    ns = time.time_ns()
    stamp = time.strftime("%Y%m%d-%H%M%S", time.localtime(ns // 1_000_000_000))
    return config_path.with_name(
        f"{config_path.name}.backup.{stamp}.{ns % 1_000_000_000:09d}"
    )


class ConfigTransaction:
    """Backup/rollback wrapper around one config file mutation.

    Usage::

        tx = ConfigTransaction(settings)
        tx.begin()
        tx.run(lambda config_dir: save_config(settings, cfg))

    or as a context manager::

        with ConfigTransaction(settings):
            save_config(settings, cfg)
    """

    def __init__(self, settings: VaultSettings):
        self._settings = settings
        self._backup: Optional[Path] = None
        self._closed = False

    @property
    def config_path(self) -> Path:
        return self._settings.config_path

    @property
    def backup_path(self) -> Optional[Path]:
        return self._backup

    @property
    def active(self) -> bool:
        return self._backup is not None and not self._closed

    def begin(self) -> Path:
        """Snapshot the current config file.

        Returns:
            Path of the snapshot.

        Raises:
            BackupError: If the config file is missing or unreadable, or the
                snapshot cannot be written. Nothing has been modified.
            RuntimeError: If this transaction was already started.
        """
        if self._backup is not None or self._closed:
            raise RuntimeError("transaction already started")
        path = self.config_path
        try:
            data = path.read_bytes()
        except OSError as err:
            raise BackupError(
                f"failed to read config for backup: {err.strerror or err}",
                path=str(path),
            ) from err
        backup = backup_path_for(path)
        while True:
            try:
                fd = os.open(backup, os.O_WRONLY | os.O_CREAT | os.O_EXCL, OWNER_RW)
                break
            except FileExistsError:
                backup = backup_path_for(path)
            except OSError as err:
                raise BackupError(
                    f"failed to write backup file: {err.strerror or err}",
                    path=str(backup),
                ) from err
        try:
            with os.fdopen(fd, "wb") as fp:
                fp.write(data)
                fp.flush()
                os.fsync(fp.fileno())
        except OSError as err:
            backup.unlink(missing_ok=True)
            raise BackupError(
                f"failed to write backup file: {err.strerror or err}",
                path=str(backup),
            ) from err
        self._backup = backup
        logger.debug("Config snapshot written to %s", backup)
        return backup

    def commit(self) -> None:
        """Close the transaction, discarding the snapshot (best effort)."""
        self._require_active()
        self._closed = True
        try:
            self._backup.unlink()
        except OSError as err:
            logger.debug("Could not remove config snapshot %s: %s", self._backup, err)

    def rollback(self, cause: BaseException) -> None:
        """Restore the snapshot over the config file.

        Raises:
            DualFailureError: If the restore itself fails; the snapshot is
                kept for manual recovery.
        """
        self._require_active()
        self._closed = True
        path = self.config_path
        try:
            data = self._backup.read_bytes()
            try:
                mode = file_mode(path)
            except FileNotFoundError:
                mode = OWNER_RW
            atomic_write(path, data, mode)
        except OSError as rb_err:
            logger.error(
                "Rollback of %s failed, snapshot kept at %s", path, self._backup
            )
            raise DualFailureError(cause, rb_err, str(self._backup)) from cause
        logger.info("Config change rolled back: %s", cause)
        try:
            self._backup.unlink()
        except OSError as err:
            logger.debug("Could not remove config snapshot %s: %s", self._backup, err)

    def run(self, fn: Callable[[Path], T]) -> T:
        """Invoke ``fn(config_dir)`` inside the transaction.

        Starts the transaction if ``begin()`` was not called yet. If ``fn``
        raises, the snapshot is restored and the original exception is
        re-raised.
        """
        if self._backup is None:
            self.begin()
        self._require_active()
        try:
            result = fn(self._settings.config_dir)
        except BaseException as err:
            self.rollback(err)
            raise
        self.commit()
        return result

    def _require_active(self) -> None:
        if self._backup is None:
            raise RuntimeError("transaction not started")
        if self._closed:
            raise RuntimeError("transaction already finished")

    def __enter__(self) -> "ConfigTransaction":
        self.begin()
        return self

    def __exit__(
        self,
        exc_type: Optional[type],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        if exc is None:
            self.commit()
        else:
            self.rollback(exc)


def with_config_transaction(settings: VaultSettings, fn: Callable[[Path], Any]) -> Any:
    """Run ``fn`` in a fresh transaction over ``settings.config_dir``."""
    return ConfigTransaction(settings).run(fn)
