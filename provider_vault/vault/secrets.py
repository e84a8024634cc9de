"""
SecretsVault — Encrypted ``KEY=VALUE`` credential store on local disk.

Provides the public API of the vault:
- ``decrypt()`` / ``encrypt(blob)`` — read and atomically replace the sealed file
- ``parse(blob)`` / ``format(mapping)`` — tolerant plaintext codec
- ``load()`` / ``save(mapping)`` — the two combined
- ``get(key)`` / ``set(key, value)`` / ``delete(key)`` — single-secret helpers

Concurrency:
    Last writer wins. There is no locking; two invocations racing to save
    will silently overwrite each other. One interactive invocation at a time
    is assumed.

Security Note:
    Never log plaintext or ciphertext values. Only log key names and paths.
"""
import logging
from pathlib import Path
from collections.abc import Mapping
from typing import Optional, Union

from ..conf import VaultSettings
from ..exceptions import EncryptError, SecretsNotFound, SecretsReadError
from ..fileutil import OWNER_RW, atomic_write
from .crypto import open_envelope, seal
from .keystore import load_identity, load_recipient

logger = logging.getLogger("provider_vault.vault")


def api_key_name(provider_id: str) -> str:
    """Conventional secret key for a provider: ``<PROVIDERID>_API_KEY``."""
    return f"{provider_id.upper()}_API_KEY"


def parse_secrets(blob: str) -> dict[str, str]:
    """Parse a newline-delimited ``KEY=VALUE`` blob into a mapping.

    Each non-empty line is split on the first ``=``. Lines without ``=`` or
    with an empty key are skipped; this never raises on malformed input.
    A later duplicate key overrides an earlier one.
    """
    result: dict[str, str] = {}
    for line in blob.split("\n"):
        if not line:
            continue
        key, sep, value = line.partition("=")
        if not sep or not key:
            logger.debug("Skipping malformed secrets line")
            continue
        result[key] = value
    return result


def format_secrets(secrets: Mapping[str, str]) -> str:
    """Serialize a mapping as ``KEY=VALUE\\n`` per entry.

    Entries whose key is empty, contains ``=`` or a newline, or whose value
    contains a newline cannot survive :func:`parse_secrets` and are skipped.
    Iteration order is not part of the format.
    """
    lines = []
    for key, value in secrets.items():
        if not key or "=" in key or "\n" in key or "\n" in value:
            logger.warning("Skipping unserializable secret entry %r", key)
            continue
        lines.append(f"{key}={value}\n")
    return "".join(lines)


def decrypt_file(secrets_path: Union[str, Path], key_path: Union[str, Path]) -> str:
    """Decrypt the secrets file and return its plaintext.

    Raises:
        SecretsNotFound: If the secrets file does not exist.
        SecretsReadError: If the secrets file cannot be read.
        KeyStoreError: If the key file cannot be loaded.
        DecryptError: On key mismatch or tampered/corrupt ciphertext.
    """
    return decrypt_file_bytes(secrets_path, key_path).decode("utf-8")


def decrypt_file_bytes(secrets_path: Union[str, Path], key_path: Union[str, Path]) -> bytes:
    try:
        envelope = Path(secrets_path).read_bytes()
    except FileNotFoundError:
        raise SecretsNotFound("no secrets stored yet", path=str(secrets_path)) from None
    except OSError as err:
        raise SecretsReadError(
            f"failed to read secrets file: {err.strerror or err}",
            path=str(secrets_path),
        ) from err
    identity = load_identity(key_path)
    return open_envelope(envelope, identity)


def encrypt_file(
    secrets_path: Union[str, Path],
    key_path: Union[str, Path],
    blob: str,
    cipher_backend: str = "aesgcm",
) -> None:
    """Encrypt ``blob`` and atomically replace the secrets file (mode 0600).

    Raises:
        KeyStoreError: If the key file cannot be loaded.
        EncryptError: If the sealed file cannot be written.
    """
    recipient = load_recipient(key_path)
    envelope = seal(blob.encode("utf-8"), recipient, cipher_backend)
    try:
        atomic_write(secrets_path, envelope, OWNER_RW)
    except OSError as err:
        raise EncryptError(
            f"failed to write secrets file: {err.strerror or err}",
            path=str(secrets_path),
        ) from err


class SecretBuffer:
    """Decrypted plaintext that can be zeroed after use.

    Python strings are immutable, so a ``str`` copy of a secret stays in
    memory until collected; keep the plaintext in this buffer and call
    ``clear()`` (or use it as a context manager) when done.
    """

    def __init__(self, data: bytes):
        self._data = bytearray(data)

    def __enter__(self) -> "SecretBuffer":
        return self

    def __exit__(self, *exc) -> None:
        self.clear()

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"<SecretBuffer len={len(self._data)}>"

    def text(self) -> str:
        return self._data.decode("utf-8")

    def clear(self) -> None:
        for i in range(len(self._data)):
            self._data[i] = 0
        self._data = bytearray()


class SecretsVault:
    """Encrypted secrets file of one config directory.

    The plaintext is a flat ``KEY=VALUE`` blob; keys follow the
    ``<PROVIDERID>_API_KEY`` convention for provider credentials.
    """

    def __init__(self, settings: VaultSettings):
        self._settings = settings

    @property
    def path(self) -> Path:
        return self._settings.secrets_path

    @property
    def key_path(self) -> Path:
        return self._settings.key_path

    # ------------------------------------------------------------------
    # Blob API
    # ------------------------------------------------------------------

    def decrypt(self) -> str:
        return decrypt_file(self.path, self.key_path)

    def decrypt_bytes(self) -> SecretBuffer:
        """Like ``decrypt()`` but returns a zeroable buffer."""
        return SecretBuffer(decrypt_file_bytes(self.path, self.key_path))

    def encrypt(self, blob: str) -> None:
        encrypt_file(self.path, self.key_path, blob, self._settings.cipher_backend)
        logger.debug("Secrets file written: %s", self.path)

    parse = staticmethod(parse_secrets)
    format = staticmethod(format_secrets)

    # ------------------------------------------------------------------
    # Mapping API
    # ------------------------------------------------------------------

    def load(self, missing_ok: bool = True) -> dict[str, str]:
        """Decrypt and parse the vault.

        Args:
            missing_ok: Return an empty mapping when no secrets file exists
                instead of raising ``SecretsNotFound``.
        """
        try:
            return parse_secrets(self.decrypt())
        except SecretsNotFound:
            if not missing_ok:
                raise
            logger.debug("No secrets file at %s, starting empty", self.path)
            return {}

    def save(self, secrets: Mapping[str, str]) -> None:
        self.encrypt(format_secrets(secrets))
        logger.info("Saved %d secret(s)", len(secrets))

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.load().get(key, default)

    def set(self, key: str, value: str) -> None:
        """Store one secret, keeping every other entry."""
        secrets = self.load()
        secrets[key] = value
        self.save(secrets)
        logger.debug("Vault set: key=%s", key)

    def delete(self, key: str) -> bool:
        """Remove one secret. Returns False if it was not stored."""
        secrets = self.load()
        if key not in secrets:
            return False
        del secrets[key]
        self.save(secrets)
        logger.debug("Vault delete: key=%s", key)
        return True

    def keys(self) -> list[str]:
        return sorted(self.load())
