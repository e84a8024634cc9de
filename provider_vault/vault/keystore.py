"""
Vault KeyStore — Local X25519 key pair that seals the secrets file.

The private key is stored as an unencrypted PKCS8 PEM file with owner-only
(0600) permission. It is generated once per config directory and reused
indefinitely; it never leaves local disk except as a recovery phrase.

Recovery phrase:
    ``create_recovery_phrase()`` exports the raw private key as dash-separated
    base64 groups followed by an HMAC-SHA256 word. The MAC key is a public
    constant; it detects typos and tampering, it does not hide the key.
    Anyone holding the phrase can decrypt the vault.

Security Note:
    Never log key material. Only log key file paths.
"""
import os
import base64
import binascii
import logging
from pathlib import Path
from typing import Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)

from ..conf import VaultSettings
from ..exceptions import KeyStoreError, RecoveryPhraseError, SecretsReadError
from ..fileutil import OWNER_RW, atomic_write
from .crypto import open_envelope

logger = logging.getLogger("provider_vault.vault")

RECOVERY_INTEGRITY_KEY = b"provider-vault-recovery-phrase-v1"
MAX_PHRASE_LENGTH = 65536
PHRASE_GROUP_SIZE = 8


def _write_key(key_path: Union[str, Path], key: X25519PrivateKey) -> None:
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    try:
        atomic_write(key_path, pem, OWNER_RW)
    except OSError as err:
        raise KeyStoreError(
            f"failed to write encryption key: {err.strerror or err}",
            path=str(key_path),
        ) from err


def generate_key(key_path: Union[str, Path]) -> X25519PrivateKey:
    """Generate a new X25519 key pair and write it to ``key_path``.

    Uses an atomic write so an interrupted generation never leaves a
    partial or world-readable key file behind.

    Returns:
        The new private key.

    Raises:
        KeyStoreError: If the key file cannot be written.
    """
    key = X25519PrivateKey.generate()
    _write_key(key_path, key)
    logger.info("Generated new vault key at %s", key_path)
    return key


def load_identity(key_path: Union[str, Path]) -> X25519PrivateKey:
    """Read the private key used for decryption.

    Raises:
        KeyStoreError: If the key file is missing, unreadable or malformed.
    """
    try:
        data = Path(key_path).read_bytes()
    except OSError as err:
        raise KeyStoreError(
            f"failed to read key file: {err.strerror or err}",
            path=str(key_path),
        ) from err
    if not data.strip():
        raise KeyStoreError("key file is empty", path=str(key_path))
    try:
        key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError) as err:
        raise KeyStoreError(
            "failed to parse key file; it may be corrupted", path=str(key_path)
        ) from err
    if not isinstance(key, X25519PrivateKey):
        raise KeyStoreError("key file does not hold an X25519 key", path=str(key_path))
    return key


def load_recipient(key_path: Union[str, Path]) -> X25519PublicKey:
    """Return the public key used for encryption."""
    return load_identity(key_path).public_key()


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii").rstrip("=")


def _unb64(text: str) -> bytes:
    return base64.b64decode(text + "=" * (-len(text) % 4), validate=True)


def _phrase_mac(raw: bytes) -> hmac.HMAC:
    mac = hmac.HMAC(RECOVERY_INTEGRITY_KEY, hashes.SHA256())
    mac.update(raw)
    return mac


def create_recovery_phrase(key_path: Union[str, Path]) -> str:
    """Export the private key as a human-transcribable phrase.

    Raises:
        KeyStoreError: If the key file cannot be loaded.
    """
    raw = load_identity(key_path).private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    encoded = _b64(raw)
    words = [
        encoded[i:i + PHRASE_GROUP_SIZE]
        for i in range(0, len(encoded), PHRASE_GROUP_SIZE)
    ]
    words.append(_b64(_phrase_mac(raw).finalize()))
    return "-".join(words)


def parse_recovery_phrase(phrase: str) -> X25519PrivateKey:
    """Validate a recovery phrase and return the key it encodes.

    Whitespace inside the phrase is ignored.

    Raises:
        RecoveryPhraseError: If the phrase is too long, too short, not
            base64, fails its integrity check or is not an X25519 key.
    """
    if len(phrase) > MAX_PHRASE_LENGTH:
        raise RecoveryPhraseError("recovery phrase is too long")
    words = "".join(phrase.split()).split("-")
    if len(words) < 2 or not all(words):
        raise RecoveryPhraseError("recovery phrase is too short or malformed")
    *body, mac_word = words
    try:
        raw = _unb64("".join(body))
        tag = _unb64(mac_word)
    except (binascii.Error, ValueError) as err:
        raise RecoveryPhraseError("recovery phrase is not valid base64") from err
    try:
        _phrase_mac(raw).verify(tag)
    except InvalidSignature:
        raise RecoveryPhraseError("recovery phrase failed its integrity check") from None
    try:
        return X25519PrivateKey.from_private_bytes(raw)
    except ValueError as err:
        raise RecoveryPhraseError("recovery phrase does not hold a vault key") from err


def recover_from_phrase(settings: VaultSettings, phrase: str) -> Path:
    """Restore the key file of ``settings`` from a recovery phrase.

    When a secrets file exists the recovered key must open it; otherwise
    nothing is written.

    Returns:
        Path of the restored key file.

    Raises:
        RecoveryPhraseError: If the phrase is invalid.
        DecryptError: If the recovered key does not open the secrets file.
        KeyStoreError: If the key file cannot be written.
    """
    key = parse_recovery_phrase(phrase)
    try:
        envelope = settings.secrets_path.read_bytes()
    except FileNotFoundError:
        envelope = None
    except OSError as err:
        raise SecretsReadError(
            f"failed to read secrets file: {err.strerror or err}",
            path=str(settings.secrets_path),
        ) from err
    if envelope is not None:
        open_envelope(envelope, key)
    try:
        settings.config_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as err:
        raise KeyStoreError(
            f"failed to create config directory: {err.strerror or err}",
            path=str(settings.config_dir),
        ) from err
    _write_key(settings.key_path, key)
    logger.info("Restored vault key at %s from recovery phrase", settings.key_path)
    return settings.key_path


class KeyStore:
    """Owns the vault key pair of one config directory."""

    def __init__(self, settings: VaultSettings):
        self._settings = settings

    @property
    def key_path(self) -> Path:
        return self._settings.key_path

    def exists(self) -> bool:
        return self.key_path.is_file()

    def ensure_key(self) -> bool:
        """Generate the key pair if the config directory has none.

        Idempotent: an existing key file is never touched.

        Returns:
            True if a new key was generated, False if one already existed.

        Raises:
            KeyStoreError: If the directory is not writable or the key
                file cannot be inspected.
        """
        directory = self._settings.config_dir
        try:
            directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            os.stat(self.key_path)
        except FileNotFoundError:
            generate_key(self.key_path)
            return True
        except OSError as err:
            raise KeyStoreError(
                f"failed to check key file status: {err.strerror or err}",
                path=str(self.key_path),
            ) from err
        return False

    def identity(self) -> X25519PrivateKey:
        return load_identity(self.key_path)

    def recipient(self) -> X25519PublicKey:
        return load_recipient(self.key_path)

    def recovery_phrase(self) -> str:
        return create_recovery_phrase(self.key_path)

    def recover(self, phrase: str) -> Path:
        return recover_from_phrase(self._settings, phrase)
