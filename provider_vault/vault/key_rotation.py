"""
Vault Key Rotation — Regenerate the key pair and re-encrypt the vault.

Steps:
    1. decrypt the current secrets with the current key
    2. generate a new key pair into ``<key>.new``
    3. seal the plaintext to the new key and atomically replace the secrets file
    4. atomically move ``<key>.new`` over the key file

If the process dies between steps 3 and 4, ``<key>.new`` is the key that
opens the secrets file; ``rotate_key`` finishes that move before doing
anything else on its next run.

Security Note:
    Plaintext exists in memory only during re-encryption.
    Never log plaintext, ciphertext or key material.
"""
import os
import logging
from pathlib import Path

from ..conf import VaultSettings
from ..exceptions import DecryptError, KeyStoreError, SecretsNotFound, SecretsReadError
from .crypto import open_envelope
from .keystore import generate_key, load_identity
from .secrets import decrypt_file_bytes, encrypt_file

logger = logging.getLogger("provider_vault.vault")


def _pending_key(key_path: Path) -> Path:
    return key_path.with_name(key_path.name + ".new")


def _finish_pending(settings: VaultSettings) -> bool:
    """Complete an interrupted rotation, if one is on disk."""
    pending = _pending_key(settings.key_path)
    if not pending.exists():
        return False
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
        try:
            open_envelope(envelope, load_identity(pending))
        except (DecryptError, KeyStoreError):
            # secrets were never re-sealed; the pending key is garbage
            logger.warning("Discarding unused pending key %s", pending)
            pending.unlink()
            return False
    os.replace(pending, settings.key_path)
    logger.warning("Completed interrupted key rotation in %s", settings.config_dir)
    return True


def rotate_key(settings: VaultSettings) -> dict:
    """Replace the vault key pair, re-encrypting stored secrets.

    Args:
        settings: Vault settings naming the key and secrets files.

    Returns:
        Stats dict with keys: secrets (bytes re-encrypted), recovered.

    Raises:
        KeyStoreError: If the current key cannot be read or the new key
            cannot be written.
        DecryptError: If the current secrets cannot be decrypted.
        EncryptError: If the re-encrypted secrets cannot be written.
    """
    stats = {"secrets": 0, "recovered": _finish_pending(settings)}
    key_path = settings.key_path
    pending = _pending_key(key_path)

    try:
        plaintext = decrypt_file_bytes(settings.secrets_path, key_path)
    except SecretsNotFound:
        plaintext = None

    logger.info("Starting key rotation in %s", settings.config_dir)
    generate_key(pending)
    try:
        if plaintext is not None:
            encrypt_file(
                settings.secrets_path,
                pending,
                plaintext.decode("utf-8"),
                settings.cipher_backend,
            )
            stats["secrets"] = len(plaintext)
    except BaseException:
        pending.unlink(missing_ok=True)
        raise
    os.replace(pending, key_path)

    logger.info("Key rotation complete: %s", stats)
    return stats
