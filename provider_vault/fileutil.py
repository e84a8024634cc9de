"""Owner-only, crash-safe file writes."""
import os
import stat
import tempfile
from pathlib import Path
from typing import Union

PathLike = Union[str, "os.PathLike[str]"]

OWNER_RW = 0o600
OWNER_RWX = 0o700


def atomic_write(path: PathLike, data: bytes, mode: int = OWNER_RW) -> None:
    """Replace ``path`` with ``data`` using write-then-rename.

    The temporary file lives next to the target so the rename stays on one
    filesystem. On any failure the temporary file is removed and the target
    is left untouched.
    """
    path = Path(path)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as fp:
            fp.write(data)
            fp.flush()
            os.fsync(fp.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise
    _fsync_dir(path.parent)


def _fsync_dir(directory: Path) -> None:
    if os.name != "posix":
        return
    # the rename already happened; a directory that cannot be synced is
    # not an error for the caller
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def file_mode(path: PathLike) -> int:
    """Permission bits of ``path``."""
    return stat.S_IMODE(os.stat(path).st_mode)
