"""
Credential Handoff — Launch a child process with one decrypted secret
without exposing it through inspectable process state.

The secret travels through the filesystem, never through argv or the
parent's environment:

1. ``create_isolated_dir()`` makes a random-named 0700 directory under a
   private runtime location.
2. ``stage_secret()`` writes the value verbatim into a 0600 file there.
3. ``build_launcher()`` writes a 0700 ``/bin/sh`` launcher next to it which
   reads the file into the target variable, deletes the file and the whole
   directory, then ``exec``s the target. The launcher text contains the
   file path, never the value.
4. The parent runs the launcher with an environment that does not carry the
   variable and waits for it.

A ``CredentialGuard`` owns the directory. Its ``release()`` runs at most
once, whichever of the normal exit, an exception or SIGINT/SIGTERM gets
there first. A signal received while the child runs is forwarded to it; the
parent then releases the guard and exits with ``128 + signum``.

Security Note:
    Never log the secret value. POSIX only.
"""
import os
import re
import sys
import shlex
import shutil
import signal
import logging
import tempfile
import threading
import subprocess
from pathlib import Path
from contextlib import contextmanager
from collections.abc import Iterator, Mapping, Sequence
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator

from .conf import VaultSettings
from .exceptions import HandoffError, PermissionEnforcementError
from .fileutil import OWNER_RW, OWNER_RWX, file_mode

logger = logging.getLogger("provider_vault.handoff")

DEFAULT_ENV_VAR = "ANTHROPIC_AUTH_TOKEN"
LAUNCHER_SHELL = "/bin/sh"
DIR_PREFIX = "provider-vault-auth-"
HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _require_posix() -> None:
    if os.name != "posix":
        raise HandoffError("credential handoff is only supported on POSIX systems")


@contextmanager
def signals_deferred() -> Iterator[None]:
    """Hold back SIGINT/SIGTERM in the main thread for the enclosed block.

    A signal arriving meanwhile is delivered when the block exits, so a
    handler never interrupts a half-finished create or remove.
    """
    if (
        not hasattr(signal, "pthread_sigmask")
        or threading.current_thread() is not threading.main_thread()
    ):
        yield
        return
    previous = signal.pthread_sigmask(signal.SIG_BLOCK, HANDLED_SIGNALS)
    try:
        yield
    finally:
        signal.pthread_sigmask(signal.SIG_SETMASK, previous)


def _check_private(path: Path, expected: int) -> None:
    mode = file_mode(path)
    if mode != expected:
        raise PermissionEnforcementError(
            f"filesystem did not enforce mode {expected:o} (got {mode:o})",
            path=str(path),
        )
    if hasattr(os, "getuid") and os.stat(path).st_uid != os.getuid():
        raise PermissionEnforcementError("not owned by the current user", path=str(path))


def create_isolated_dir(base: Union[str, Path, None] = None) -> Path:
    """Create an unguessable, owner-only directory under ``base``.

    Raises:
        HandoffError: If the directory cannot be created.
        PermissionEnforcementError: If owner-only permission cannot be
            enforced; the directory is removed again.
    """
    _require_posix()
    try:
        path = Path(tempfile.mkdtemp(prefix=DIR_PREFIX, dir=base))
    except OSError as err:
        raise HandoffError(
            f"failed to create isolated directory: {err.strerror or err}",
            path=str(base) if base else None,
        ) from err
    try:
        os.chmod(path, OWNER_RWX)
        _check_private(path, OWNER_RWX)
    except OSError as err:
        shutil.rmtree(path, ignore_errors=True)
        raise HandoffError(
            f"failed to secure isolated directory: {err.strerror or err}", path=str(path)
        ) from err
    except PermissionEnforcementError:
        shutil.rmtree(path, ignore_errors=True)
        raise
    return path


def stage_secret(directory: Union[str, Path], value: str) -> Path:
    """Write ``value`` verbatim (empty allowed) to a new 0600 file.

    Returns:
        Path of the staged file.
    """
    try:
        fd, name = tempfile.mkstemp(prefix="token-", dir=directory)
    except OSError as err:
        raise HandoffError(
            f"failed to create staging file: {err.strerror or err}", path=str(directory)
        ) from err
    path = Path(name)
    try:
        with os.fdopen(fd, "wb") as fp:
            fp.write(value.encode("utf-8"))
            fp.flush()
            os.fsync(fp.fileno())
        os.chmod(path, OWNER_RW)
        _check_private(path, OWNER_RW)
    except OSError as err:
        path.unlink(missing_ok=True)
        raise HandoffError(
            f"failed to write staging file: {err.strerror or err}", path=str(path)
        ) from err
    except PermissionEnforcementError:
        path.unlink(missing_ok=True)
        raise
    return path


class LauncherConfig(BaseModel):
    """What the launcher needs to know; never the secret itself."""

    model_config = ConfigDict(frozen=True)

    isolated_dir: Path
    token_path: Path
    executable: str
    args: tuple[str, ...] = ()
    env_var: str = DEFAULT_ENV_VAR

    @field_validator("env_var")
    @classmethod
    def validate_env_var(cls, v: str) -> str:
        """Must be a portable shell variable name."""
        if not _ENV_NAME.match(v):
            raise ValueError(f"invalid environment variable name: {v!r}")
        return v

    @field_validator("executable")
    @classmethod
    def validate_executable(cls, v: str) -> str:
        if not v:
            raise ValueError("executable path cannot be empty")
        return v


def render_launcher(config: LauncherConfig) -> str:
    """Shell source of the launcher.

    ``$(cat FILE; printf x)`` plus stripping the sentinel keeps trailing
    newlines of the staged value intact.
    """
    var = config.env_var
    token = shlex.quote(str(config.token_path))
    directory = shlex.quote(str(config.isolated_dir))
    command = " ".join(shlex.quote(part) for part in (config.executable, *config.args))
    return (
        f"#!{LAUNCHER_SHELL}\n"
        "# Generated by provider-vault - DO NOT EDIT\n"
        "# Deletes itself and its directory before starting the target\n"
        f"if [ ! -r {token} ]; then\n"
        "    echo 'provider-vault: staged credential is missing' >&2\n"
        f"    rm -rf {directory}\n"
        "    exit 126\n"
        "fi\n"
        f'{var}="$(cat {token}; printf x)"\n'
        f'{var}="${{{var}%x}}"\n'
        f"export {var}\n"
        f"rm -f {token}\n"
        f"rm -rf {directory}\n"
        f"exec {command}\n"
    )


def build_launcher(config: LauncherConfig) -> Path:
    """Write the launcher into the isolated directory (mode 0700).

    Returns:
        Path of the launcher script.
    """
    _require_posix()
    source = render_launcher(config).encode("utf-8")
    try:
        fd, name = tempfile.mkstemp(prefix="launcher-", dir=config.isolated_dir)
    except OSError as err:
        raise HandoffError(
            f"failed to create launcher: {err.strerror or err}",
            path=str(config.isolated_dir),
        ) from err
    path = Path(name)
    try:
        with os.fdopen(fd, "wb") as fp:
            fp.write(source)
        os.chmod(path, OWNER_RWX)
    except OSError as err:
        path.unlink(missing_ok=True)
        raise HandoffError(
            f"failed to write launcher: {err.strerror or err}", path=str(path)
        ) from err
    return path


class CredentialGuard:
    """Scoped owner of an isolated directory.

    ``release()`` removes the directory at most once, no matter how many
    paths (normal return, exception, signal handler, another thread) call
    it.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        self._lock = threading.Lock()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        """Remove the directory.

        Returns:
            True for the one call that performed the cleanup.
        """
        with signals_deferred():
            with self._lock:
                if self._released:
                    return False
                self._released = True
                path = self.path
                if path is not None:
                    self._remove(path)
        return True

    @staticmethod
    def _remove(path: Path) -> None:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            # the launcher already removed it
            return
        except OSError as err:
            logger.warning("Could not remove isolated directory %s: %s", path, err)
            return
        logger.debug("Removed isolated directory %s", path)

    def __enter__(self) -> "CredentialGuard":
        return self

    def __exit__(self, *exc) -> None:
        self.release()


class SignalForwarder:
    """Turns SIGINT/SIGTERM into guard release plus ``exit(128 + signum)``.

    While a child is attached the signal is forwarded to it first. Handlers
    are only installed from the main thread; previous handlers are restored
    on exit.
    """

    def __init__(
        self,
        guard: CredentialGuard,
        exit_process: Callable[[int], Any] = sys.exit,
    ):
        self.guard = guard
        self._exit = exit_process
        self._child: Optional[subprocess.Popen] = None
        self._previous: dict = {}
        self.received: Optional[int] = None

    def attach(self, child: subprocess.Popen) -> None:
        self._child = child

    def handle(self, signum: int, frame: Any = None) -> None:
        self.received = signum
        child = self._child
        if child is not None and child.poll() is None:
            try:
                child.send_signal(signum)
            except ProcessLookupError:
                pass
        self.guard.release()
        logger.debug("Received signal %d, exiting", signum)
        self._exit(128 + signum)

    def __enter__(self) -> "SignalForwarder":
        if threading.current_thread() is threading.main_thread():
            for sig in HANDLED_SIGNALS:
                self._previous[sig] = signal.signal(sig, self.handle)
        else:
            logger.debug("Not in main thread, signal forwarding disabled")
        return self

    def __exit__(self, *exc) -> None:
        for sig, handler in self._previous.items():
            signal.signal(sig, handler)
        self._previous.clear()


class CredentialHandoff:
    """Stage one secret and run a target executable with it injected.

    Args:
        settings: Provides the private runtime base directory.
        popen: Process factory, ``subprocess.Popen`` by default.
        exit_process: Called with ``128 + signum`` on SIGINT/SIGTERM.
    """

    def __init__(
        self,
        settings: VaultSettings,
        *,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        exit_process: Callable[[int], Any] = sys.exit,
    ):
        self._settings = settings
        self._popen = popen
        self._exit = exit_process

    @property
    def runtime_dir(self) -> Path:
        return self._settings.runtime_dir

    def create_isolated_dir(self) -> Path:
        return create_isolated_dir(self.runtime_dir)

    def stage_secret(self, directory: Path, value: str) -> Path:
        return stage_secret(directory, value)

    def build_launcher(self, config: LauncherConfig) -> Path:
        return build_launcher(config)

    def child_env(self, env: Optional[Mapping[str, str]], env_var: str) -> dict[str, str]:
        """Environment for the launcher; never carries ``env_var``."""
        result = dict(os.environ if env is None else env)
        result.pop(env_var, None)
        return result

    def run(
        self,
        secret: str,
        executable: str,
        args: Sequence[str] = (),
        *,
        env_var: str = DEFAULT_ENV_VAR,
        env: Optional[Mapping[str, str]] = None,
        **popen_kwargs,
    ) -> int:
        """Launch ``executable args...`` with ``env_var=secret`` in its environment.

        Returns:
            The child's exit code; ``128 + N`` if it was killed by signal N.

        Raises:
            HandoffError: If staging fails; no process is started then.
        """
        guard = CredentialGuard()
        with guard, SignalForwarder(guard, self._exit) as forwarder:
            with signals_deferred():
                guard.path = self.create_isolated_dir()
            token = self.stage_secret(guard.path, secret)
            launcher = self.build_launcher(
                LauncherConfig(
                    isolated_dir=guard.path,
                    token_path=token,
                    executable=executable,
                    args=tuple(args),
                    env_var=env_var,
                )
            )
            logger.info("Launching %s with %s injected", executable, env_var)
            try:
                child = self._popen(
                    [LAUNCHER_SHELL, str(launcher)],
                    env=self.child_env(env, env_var),
                    close_fds=True,
                    **popen_kwargs,
                )
            except OSError as err:
                raise HandoffError(
                    f"failed to start launcher: {err.strerror or err}", path=str(launcher)
                ) from err
            forwarder.attach(child)
            code = child.wait()
        return 128 - code if code < 0 else code

    def run_plain(
        self,
        executable: str,
        args: Sequence[str] = (),
        *,
        env: Optional[Mapping[str, str]] = None,
        **popen_kwargs,
    ) -> int:
        """Run ``executable`` directly when there is no credential to pass."""
        guard = CredentialGuard()
        with SignalForwarder(guard, self._exit) as forwarder:
            try:
                child = self._popen(
                    [executable, *args],
                    env=dict(os.environ if env is None else env),
                    close_fds=True,
                    **popen_kwargs,
                )
            except OSError as err:
                raise HandoffError(
                    f"failed to start {executable}: {err.strerror or err}"
                ) from err
            forwarder.attach(child)
            code = child.wait()
        return 128 - code if code < 0 else code
