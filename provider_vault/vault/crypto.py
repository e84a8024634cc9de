"""
Vault Crypto Core — Envelope encryption of the secrets blob.

The secrets file is sealed to the local X25519 key pair:
- Ephemeral X25519 key agreement with the recipient public key
- HKDF-SHA256(shared, salt=eph_pub|recipient_pub, "provider-vault-secrets") → 32-byte key
- AEAD (AES-GCM or ChaCha20-Poly1305) over the plaintext

Envelope format:
    [magic "PVLT" 4B][version 1B][cipher id 1B][ephemeral pub 32B][nonce 12B][payload + tag 16B]

The header is bound to the ciphertext as associated data, so flipping any
byte of the file fails decryption.

Security Note:
    Never log plaintext or ciphertext values.
    Nonces are random 96-bit; a fresh ephemeral key is used per encryption.
"""
import os
import logging

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from ..exceptions import CorruptSecretsError, DecryptError

logger = logging.getLogger("provider_vault.vault")

MAGIC = b"PVLT"
FORMAT_VERSION = 1
NONCE_SIZE = 12  # 96-bit nonce
KEY_LENGTH = 32  # AES-256
PUBLIC_KEY_SIZE = 32
TAG_SIZE = 16
HKDF_INFO = b"provider-vault-secrets"

_CIPHERS = {
    "aesgcm": (1, AESGCM),
    "chacha20": (2, ChaCha20Poly1305),
}
_CIPHERS_BY_ID = {cid: cls for cid, cls in _CIPHERS.values()}

HEADER_SIZE = len(MAGIC) + 2 + PUBLIC_KEY_SIZE + NONCE_SIZE


def _raw_public(key: X25519PublicKey) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def derive_key(shared: bytes, ephemeral_pub: bytes, recipient_pub: bytes) -> bytes:
    """Derive a 32-byte AEAD key from an X25519 shared secret.

    Args:
        shared: Raw X25519 shared secret.
        ephemeral_pub: Raw ephemeral public key of this envelope.
        recipient_pub: Raw public key of the vault key pair.

    Returns:
        32-byte derived key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=ephemeral_pub + recipient_pub,
        info=HKDF_INFO,
    )
    return hkdf.derive(shared)


def seal(plaintext: bytes, recipient: X25519PublicKey, cipher_backend: str = "aesgcm") -> bytes:
    """Encrypt plaintext so that only the recipient's private key opens it.

    Args:
        plaintext: Data to encrypt.
        recipient: Public half of the vault key pair.
        cipher_backend: ``aesgcm`` or ``chacha20``.

    Returns:
        Envelope bytes.
    """
    try:
        cipher_id, cipher_cls = _CIPHERS[cipher_backend]
    except KeyError:
        raise ValueError(f"Unsupported cipher backend: {cipher_backend}") from None
    ephemeral = X25519PrivateKey.generate()
    ephemeral_pub = _raw_public(ephemeral.public_key())
    recipient_pub = _raw_public(recipient)
    key = derive_key(ephemeral.exchange(recipient), ephemeral_pub, recipient_pub)
    nonce = os.urandom(NONCE_SIZE)
    header = MAGIC + bytes((FORMAT_VERSION, cipher_id)) + ephemeral_pub + nonce
    ct = cipher_cls(key).encrypt(nonce, plaintext, header)
    return header + ct


def open_envelope(envelope: bytes, identity: X25519PrivateKey) -> bytes:
    """Decrypt an envelope produced by :func:`seal`.

    Args:
        envelope: Bytes read from the secrets file.
        identity: Private half of the vault key pair.

    Returns:
        Decrypted plaintext bytes.

    Raises:
        CorruptSecretsError: If the envelope header is malformed or truncated.
        DecryptError: If the key does not match or the payload was tampered.
    """
    _min = HEADER_SIZE + TAG_SIZE
    if len(envelope) < _min:
        raise CorruptSecretsError(
            f"secrets envelope too short: {len(envelope)} bytes (minimum {_min})"
        )
    if envelope[:len(MAGIC)] != MAGIC:
        raise CorruptSecretsError("secrets envelope has an unknown header")
    version, cipher_id = envelope[len(MAGIC)], envelope[len(MAGIC) + 1]
    if version != FORMAT_VERSION:
        raise CorruptSecretsError(f"unsupported secrets envelope version {version}")
    cipher_cls = _CIPHERS_BY_ID.get(cipher_id)
    if cipher_cls is None:
        raise CorruptSecretsError(f"unknown cipher id {cipher_id} in secrets envelope")

    offset = len(MAGIC) + 2
    ephemeral_pub = envelope[offset:offset + PUBLIC_KEY_SIZE]
    offset += PUBLIC_KEY_SIZE
    nonce = envelope[offset:offset + NONCE_SIZE]
    header = envelope[:HEADER_SIZE]
    ct = envelope[HEADER_SIZE:]

    try:
        shared = identity.exchange(X25519PublicKey.from_public_bytes(ephemeral_pub))
    except ValueError as err:
        raise DecryptError("failed to derive decryption key") from err
    key = derive_key(shared, ephemeral_pub, _raw_public(identity.public_key()))
    try:
        return cipher_cls(key).decrypt(nonce, ct, header)
    except InvalidTag as err:
        raise DecryptError(
            "failed to decrypt secrets: key mismatch or tampered file"
        ) from err
