"""
Audit Log — Append-only record of provider and credential lifecycle events.

The log is a JSON Lines file (``audit.log``, mode 0600): one ``AuditEntry``
per line, fsync'ed after every append. Entries are never rewritten; order
in the file is append order, which is not guaranteed to be monotonic in
wall-clock time.

Event kinds:
  - switch   — a provider was launched
  - config   — a provider profile was added or changed
  - rotate   — the vault key was rotated
  - default  — the default provider changed
  - reset    — a provider (or everything) was removed
  - setup    — initial setup ran

Security Note:
    Change records carry config values only. Never put secret values in
    ``changes`` or ``details``.
"""
import io
import os
import csv
import time
import socket
import getpass
import logging
import secrets
from enum import Enum
from pathlib import Path
from datetime import datetime, timezone
from collections.abc import Iterable, Sequence
from typing import Any, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .conf import VaultSettings
from .exceptions import (
    AuditLogError,
    AuditLogNotFound,
    AuditLogUnavailable,
    UnsupportedFormat,
)
from .fileutil import OWNER_RW

logger = logging.getLogger("provider_vault.audit")

CSV_HEADER = ("timestamp", "event", "provider", "action", "changes")
EXPORT_FORMATS = ("csv", "json")
CSV_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class EventKind(str, Enum):
    SWITCH = "switch"
    CONFIG = "config"
    ROTATE = "rotate"
    DEFAULT = "default"
    RESET = "reset"
    SETUP = "setup"


class Change(BaseModel):
    """One field transition inside an audit entry."""

    model_config = ConfigDict(frozen=True)

    field: str
    old: str = ""
    new: str = ""

    def describe(self) -> str:
        if self.old:
            return f"{self.field}: {self.old} -> {self.new}"
        return f"{self.field}: {self.new}"


class AuditEntry(BaseModel):
    """Immutable audit record."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event: EventKind
    provider: str = ""
    action: str = ""
    status: str = "success"
    error: str = ""
    details: Optional[dict[str, Any]] = None
    changes: tuple[Change, ...] = ()
    hostname: str = ""
    username: str = ""
    session_id: str = ""

    def to_record(self) -> dict:
        """JSON-safe dict.

        Unset fields (``None``, empty strings, no changes) are left out; they
        load back as their defaults. An empty ``details`` mapping is kept.
        """
        data = self.model_dump(mode="json")
        return {
            k: v for k, v in data.items()
            if k in ("timestamp", "event")
            or not (v is None or v == "" or (k == "changes" and not v))
        }

    def to_line(self) -> bytes:
        return orjson.dumps(self.to_record()) + b"\n"


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


def _is_truncated(raw: bytes) -> bool:
    """True for a record cut off mid-write: an object that is never closed."""
    text = raw.decode("utf-8", "replace").strip()
    if not text.startswith("{"):
        return False
    depth = 0
    in_string = escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0:
                return False
    return True


def _hostname() -> str:
    return socket.gethostname() or "unknown"


def _username() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


class AuditLog:
    """Append-only JSON Lines audit log of one config directory.

    Each instance stamps its entries with the host, the user and a random
    per-instance session id so events of one invocation can be grouped.
    """

    def __init__(self, settings: VaultSettings):
        self._settings = settings
        self.hostname = _hostname()
        self.username = _username()
        self.session_id = secrets.token_hex(8)

    @property
    def path(self) -> Path:
        return self._settings.audit_path

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Durably append one entry.

        When this returns the record has been written and fsync'ed.
        A missing session context is filled in from this logger.

        Raises:
            AuditLogError: If the record cannot be written.
        """
        if not entry.session_id:
            entry = entry.model_copy(update={
                "hostname": entry.hostname or self.hostname,
                "username": entry.username or self.username,
                "session_id": self.session_id,
            })
        line = entry.to_line()
        try:
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, OWNER_RW)
            try:
                self._repair_tail(fd)
                _write_all(fd, line)
                os.fsync(fd)
            finally:
                os.close(fd)
        except OSError as err:
            raise AuditLogError(
                f"failed to write audit entry: {err.strerror or err}", path=str(self.path)
            ) from err
        logger.debug("Audit %s %s", entry.event.value, entry.provider)
        return entry

    def _repair_tail(self, fd: int) -> None:
        """Terminate a partial last line left by a crash mid-write.

        Without this the next record would be glued onto the broken one.
        """
        size = os.fstat(fd).st_size
        if size == 0:
            return
        with open(self.path, "rb") as fp:
            fp.seek(size - 1)
            if fp.read(1) != b"\n":
                _write_all(fd, b"\n")

    def log(
        self,
        event: Union[EventKind, str],
        provider: str = "",
        action: str = "",
        changes: Sequence[Change] = (),
        **kwargs,
    ) -> AuditEntry:
        return self.append(
            AuditEntry(
                event=event,
                provider=provider,
                action=action,
                changes=tuple(changes),
                **kwargs,
            )
        )

    def log_switch(self, provider: str) -> AuditEntry:
        return self.log(EventKind.SWITCH, provider)

    def log_config(self, provider: str, action: str, changes: Sequence[Change]) -> AuditEntry:
        """Record a provider being added or changed, with old/new values."""
        return self.log(EventKind.CONFIG, provider, action, changes)

    def log_rotate(self, provider: str = "all") -> AuditEntry:
        return self.log(EventKind.ROTATE, provider)

    def log_default(self, provider: str) -> AuditEntry:
        return self.log(EventKind.DEFAULT, provider)

    def log_reset(self, provider: str) -> AuditEntry:
        return self.log(EventKind.RESET, provider)

    def log_setup(self, provider: str) -> AuditEntry:
        return self.log(EventKind.SETUP, provider)

    def log_failure(
        self,
        event: Union[EventKind, str],
        provider: str,
        error: str,
        details: Optional[dict] = None,
    ) -> AuditEntry:
        return self.log(event, provider, status="failure", error=error, details=details)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def load_entries(self) -> list[AuditEntry]:
        """Parse the whole log in append order.

        A record cut off by a crash mid-write is skipped with a warning,
        whether it is still the last line or a later append already
        terminated it. Any other malformed line raises
        ``AuditLogUnavailable`` carrying every entry read before it; a
        malformed last line is always treated as cut off.

        Raises:
            AuditLogNotFound: If no audit log exists yet.
            AuditLogError: If the log cannot be read.
            AuditLogUnavailable: On a malformed record before the tail.
        """
        try:
            data = self.path.read_bytes()
        except FileNotFoundError:
            raise AuditLogNotFound("no audit log yet", path=str(self.path)) from None
        except OSError as err:
            raise AuditLogError(
                f"failed to read audit log: {err.strerror or err}", path=str(self.path)
            ) from err

        lines = data.split(b"\n")
        last = max((i for i, line in enumerate(lines) if line.strip()), default=-1)
        entries: list[AuditEntry] = []
        for number, raw in enumerate(lines):
            if not raw.strip():
                continue
            try:
                entries.append(AuditEntry.model_validate(orjson.loads(raw)))
            except (orjson.JSONDecodeError, ValidationError) as err:
                if number == last or _is_truncated(raw):
                    logger.warning(
                        "Skipping truncated audit record at line %d of %s",
                        number + 1, self.path,
                    )
                    continue
                raise AuditLogUnavailable(
                    f"malformed audit record: {err}",
                    path=str(self.path),
                    line=number + 1,
                    entries=entries,
                ) from err
        return entries

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(
        self,
        max_size: Optional[int] = None,
        max_age_days: Optional[int] = None,
        max_backups: Optional[int] = None,
    ) -> bool:
        """Rename the log to ``audit.<timestamp>.log`` when it is too big or old.

        Only the newest ``max_backups`` rotated logs are kept.

        Returns:
            True if the log was rotated.
        """
        max_size = self._settings.audit_max_size if max_size is None else max_size
        max_age_days = (
            self._settings.audit_max_age_days if max_age_days is None else max_age_days
        )
        max_backups = (
            self._settings.audit_max_backups if max_backups is None else max_backups
        )
        try:
            info = self.path.stat()
        except FileNotFoundError:
            return False
        too_old = (time.time() - info.st_mtime) > max_age_days * 86400
        if info.st_size <= max_size and not too_old:
            return False

        stamp = time.strftime("%Y-%m-%dT%H-%M-%S")
        target = self.path.with_name(f"{self.path.stem}.{stamp}{self.path.suffix}")
        n = 1
        while target.exists():
            target = self.path.with_name(f"{self.path.stem}.{stamp}-{n}{self.path.suffix}")
            n += 1
        try:
            os.replace(self.path, target)
        except OSError as err:
            raise AuditLogError(
                f"failed to rotate audit log: {err.strerror or err}", path=str(self.path)
            ) from err
        logger.info("Rotated audit log to %s", target)
        self._cleanup_backups(max_backups)
        return True

    def rotated_logs(self) -> list[Path]:
        """Rotated logs, oldest first."""
        pattern = f"{self.path.stem}.*{self.path.suffix}"
        found = [p for p in self.path.parent.glob(pattern) if p != self.path]
        return sorted(found, key=lambda p: p.stat().st_mtime)

    def _cleanup_backups(self, max_backups: int) -> None:
        if max_backups <= 0:
            return
        backups = self.rotated_logs()
        for old in backups[:max(0, len(backups) - max_backups)]:
            try:
                old.unlink()
            except OSError as err:
                logger.warning("Could not remove old audit log %s: %s", old, err)


# ----------------------------------------------------------------------
# Export
# ----------------------------------------------------------------------

def _check_format(fmt: str) -> str:
    normalized = (fmt or "").strip().lower()
    if normalized not in EXPORT_FORMATS:
        raise UnsupportedFormat(fmt, EXPORT_FORMATS)
    return normalized


def _csv_timestamp(ts: datetime) -> str:
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    return ts.strftime(CSV_TIMESTAMP_FORMAT)


def render_entries(entries: Iterable[AuditEntry], fmt: str = "csv") -> bytes:
    """Serialize entries as CSV or as a JSON array.

    CSV uses the fixed header ``timestamp,event,provider,action,changes``
    with changes flattened to ``field: old -> new`` (``field: new`` when
    there was no old value), joined by ``", "``. JSON keeps the nested
    change list of every entry.

    Raises:
        UnsupportedFormat: For any other format name.
    """
    fmt = _check_format(fmt)
    if fmt == "json":
        return orjson.dumps(
            [entry.to_record() for entry in entries], option=orjson.OPT_INDENT_2
        )
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for entry in entries:
        writer.writerow((
            _csv_timestamp(entry.timestamp),
            entry.event.value,
            entry.provider,
            entry.action,
            ", ".join(change.describe() for change in entry.changes),
        ))
    return buf.getvalue().encode("utf-8")


def export_entries(
    entries: Iterable[AuditEntry],
    output_path: Union[str, Path],
    fmt: str = "csv",
) -> Path:
    """Write entries to ``output_path`` (mode 0600).

    The format is validated before the output file is opened.
    """
    data = render_entries(entries, fmt)
    output_path = Path(output_path)
    try:
        fd = os.open(output_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, OWNER_RW)
        with os.fdopen(fd, "wb") as fp:
            fp.write(data)
    except OSError as err:
        raise AuditLogError(
            f"failed to export audit log: {err.strerror or err}", path=str(output_path)
        ) from err
    logger.info("Exported audit log to %s (%s)", output_path, _check_format(fmt))
    return output_path


def load_exported_json(data: Union[str, bytes]) -> list[AuditEntry]:
    """Read back a JSON export."""
    return [AuditEntry.model_validate(item) for item in orjson.loads(data)]
