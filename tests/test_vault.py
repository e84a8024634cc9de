"""
Tests for the encrypted secrets vault.

Tests cover:
- Key pair generation and idempotent ensure_key
- Envelope encryption round-trips and tamper detection
- Tolerant KEY=VALUE parsing and formatting
- SecretsVault mapping helpers and zeroable buffers
- Key rotation, including an interrupted rotation
"""
import os
import stat

import pytest

from provider_vault.conf import VaultSettings
from provider_vault.exceptions import (
    CorruptSecretsError,
    DecryptError,
    EncryptError,
    KeyStoreError,
    NotFoundError,
    RecoveryPhraseError,
    SecretsNotFound,
    SecretsReadError,
    VaultError,
)
from provider_vault.vault import (
    KeyStore,
    create_recovery_phrase,
    parse_recovery_phrase,
    recover_from_phrase,
    SecretsVault,
    SecretBuffer,
    api_key_name,
    decrypt_file,
    encrypt_file,
    format_secrets,
    generate_key,
    parse_secrets,
    rotate_key,
)
from provider_vault.vault import secrets as secrets_module


def _mode(path):
    return stat.S_IMODE(os.stat(path).st_mode)


# --- Test KeyStore ---

class TestKeyStore:
    """Tests for key pair creation."""

    def test_ensure_key_creates_owner_only_file(self, settings):
        """A missing key is generated with mode 0600."""
        created = KeyStore(settings).ensure_key()
        assert created is True
        assert settings.key_path.is_file()
        assert _mode(settings.key_path) == 0o600

    def test_ensure_key_is_idempotent(self, settings):
        """A second call keeps the existing key untouched."""
        store = KeyStore(settings)
        store.ensure_key()
        before = settings.key_path.read_bytes()
        assert store.ensure_key() is False
        assert settings.key_path.read_bytes() == before

    def test_ensure_key_creates_missing_directory(self, tmp_path):
        """The config directory is created on demand."""
        settings = VaultSettings(config_dir=tmp_path / "a" / "b", runtime_dir=tmp_path)
        assert KeyStore(settings).ensure_key() is True
        assert settings.key_path.exists()

    def test_ensure_key_unwritable_location(self, tmp_path):
        """A config dir that cannot exist fails with KeyStoreError."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        settings = VaultSettings(config_dir=blocker / "cfg", runtime_dir=tmp_path)
        with pytest.raises(KeyStoreError):
            KeyStore(settings).ensure_key()

    def test_no_temp_files_left(self, settings):
        """Key generation leaves only the key file behind."""
        KeyStore(settings).ensure_key()
        assert sorted(p.name for p in settings.config_dir.iterdir()) == ["vault.key"]

    def test_load_malformed_key(self, settings):
        """Garbage in the key file is reported, not crashed on."""
        settings.key_path.write_text("not a key\n")
        with pytest.raises(KeyStoreError):
            KeyStore(settings).identity()

    def test_load_empty_key(self, settings):
        settings.key_path.write_bytes(b"")
        with pytest.raises(KeyStoreError):
            KeyStore(settings).recipient()

    def test_missing_key_file(self, settings):
        with pytest.raises(KeyStoreError):
            KeyStore(settings).identity()


# --- Test Encryption ---

class TestEncryption:
    """Tests for encrypt/decrypt of the secrets blob."""

    def test_roundtrip(self, keyed_settings):
        """Decrypt(Encrypt(x)) == x."""
        blob = "ZAI_API_KEY=sk-123\nOTHER=value with spaces\n"
        vault = SecretsVault(keyed_settings)
        vault.encrypt(blob)
        assert vault.decrypt() == blob

    def test_roundtrip_empty_blob(self, keyed_settings):
        vault = SecretsVault(keyed_settings)
        vault.encrypt("")
        assert vault.decrypt() == ""

    def test_roundtrip_chacha20(self, tmp_path):
        """The ChaCha20-Poly1305 backend round-trips too."""
        settings = VaultSettings(
            config_dir=tmp_path, runtime_dir=tmp_path, cipher_backend="chacha20"
        )
        KeyStore(settings).ensure_key()
        vault = SecretsVault(settings)
        vault.encrypt("K=v\n")
        assert vault.decrypt() == "K=v\n"

    def test_ciphertext_does_not_contain_plaintext(self, keyed_settings):
        vault = SecretsVault(keyed_settings)
        vault.encrypt("ZAI_API_KEY=very-secret-value\n")
        assert b"very-secret-value" not in keyed_settings.secrets_path.read_bytes()

    def test_secrets_file_is_owner_only(self, keyed_settings):
        SecretsVault(keyed_settings).encrypt("K=v\n")
        assert _mode(keyed_settings.secrets_path) == 0o600

    def test_encrypt_overwrites(self, keyed_settings):
        """A second encrypt fully replaces the first."""
        vault = SecretsVault(keyed_settings)
        vault.encrypt("A=1\n")
        vault.encrypt("B=2\n")
        assert vault.decrypt() == "B=2\n"

    def test_decrypt_missing_file(self, keyed_settings):
        """A missing secrets file is NotFound, not a crypto failure."""
        with pytest.raises(SecretsNotFound) as exc:
            SecretsVault(keyed_settings).decrypt()
        assert isinstance(exc.value, NotFoundError)
        assert not isinstance(exc.value, DecryptError)

    @pytest.mark.parametrize("position", [0, 4, 5, 10, 40, 60, -1])
    def test_decrypt_flipped_byte(self, keyed_settings, position):
        """Flipping any byte of the file fails decryption."""
        vault = SecretsVault(keyed_settings)
        vault.encrypt("ZAI_API_KEY=sk-123\n")
        data = bytearray(keyed_settings.secrets_path.read_bytes())
        data[position] ^= 0x01
        keyed_settings.secrets_path.write_bytes(bytes(data))
        with pytest.raises(DecryptError):
            vault.decrypt()

    def test_decrypt_truncated_file(self, keyed_settings):
        keyed_settings.secrets_path.write_bytes(b"PVLT")
        with pytest.raises(CorruptSecretsError):
            SecretsVault(keyed_settings).decrypt()

    def test_decrypt_foreign_file(self, keyed_settings):
        keyed_settings.secrets_path.write_bytes(b"x" * 200)
        with pytest.raises(CorruptSecretsError):
            SecretsVault(keyed_settings).decrypt()

    def test_decrypt_with_wrong_key(self, keyed_settings, tmp_path):
        """Another key pair cannot open the file."""
        SecretsVault(keyed_settings).encrypt("K=v\n")
        other_key = tmp_path / "other.key"
        generate_key(other_key)
        with pytest.raises(DecryptError):
            decrypt_file(keyed_settings.secrets_path, other_key)

    def test_encrypt_write_failure(self, keyed_settings, monkeypatch):
        """An I/O failure while writing is an EncryptError."""
        def broken_write(*args, **kwargs):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(secrets_module, "atomic_write", broken_write)
        with pytest.raises(EncryptError):
            encrypt_file(
                keyed_settings.secrets_path, keyed_settings.key_path, "K=v\n"
            )
        assert not keyed_settings.secrets_path.exists()

    def test_failed_encrypt_keeps_previous_file(self, keyed_settings, monkeypatch):
        vault = SecretsVault(keyed_settings)
        vault.encrypt("A=1\n")

        def broken_write(*args, **kwargs):
            raise OSError(5, "Input/output error")

        monkeypatch.setattr(secrets_module, "atomic_write", broken_write)
        with pytest.raises(EncryptError):
            vault.encrypt("B=2\n")
        monkeypatch.undo()
        assert vault.decrypt() == "A=1\n"


# --- Test Parse / Format ---

class TestParseFormat:
    """Tests for the plaintext KEY=VALUE codec."""

    def test_parse_basic(self):
        assert parse_secrets("A=1\nB=2\n") == {"A": "1", "B": "2"}

    def test_parse_splits_on_first_equals(self):
        assert parse_secrets("TOKEN=abc=def==\n") == {"TOKEN": "abc=def=="}

    def test_parse_drops_malformed_lines(self):
        """Lines without '=' or with an empty key are skipped silently."""
        blob = "GOOD=1\nno equals here\n=orphan\n\nALSO=2"
        assert parse_secrets(blob) == {"GOOD": "1", "ALSO": "2"}

    def test_parse_keeps_empty_value(self):
        assert parse_secrets("EMPTY=\n") == {"EMPTY": ""}

    def test_parse_never_raises(self):
        assert parse_secrets("\n\n===\n\x00\n") == {}

    def test_parse_last_duplicate_wins(self):
        assert parse_secrets("A=1\nA=2\n") == {"A": "2"}

    def test_format_lines(self):
        out = format_secrets({"A": "1", "B": "x y"})
        assert sorted(out.splitlines()) == ["A=1", "B=x y"]
        assert out.endswith("\n")

    def test_format_skips_unserializable(self):
        out = format_secrets({"": "x", "A=B": "y", "OK": "line\nbreak", "FINE": "1"})
        assert out == "FINE=1\n"

    @pytest.mark.parametrize("blob", [
        "A=1\nB=2\n",
        "KEY=value=with=equals\n",
        "A=\nB= spaced \n",
        "junk\nZAI_API_KEY=sk-1\n=x\n",
        "",
    ])
    def test_format_of_parse_is_stable(self, blob):
        """parse(format(parse(blob))) == parse(blob)."""
        parsed = parse_secrets(blob)
        assert parse_secrets(format_secrets(parsed)) == parsed

    def test_api_key_name(self):
        assert api_key_name("zai") == "ZAI_API_KEY"
        assert api_key_name("my-provider") == "MY-PROVIDER_API_KEY"


# --- Test SecretsVault helpers ---

class TestSecretsVault:
    """Tests for the mapping-level API."""

    def test_load_missing_is_empty(self, keyed_settings):
        assert SecretsVault(keyed_settings).load() == {}

    def test_load_missing_strict(self, keyed_settings):
        with pytest.raises(SecretsNotFound):
            SecretsVault(keyed_settings).load(missing_ok=False)

    def test_unreadable_secrets_file(self, keyed_settings):
        """A read failure other than absence surfaces as a vault error."""
        keyed_settings.secrets_path.mkdir()
        with pytest.raises(SecretsReadError) as exc:
            SecretsVault(keyed_settings).load()
        assert isinstance(exc.value, VaultError)
        assert not isinstance(exc.value, NotFoundError)
        assert exc.value.path == str(keyed_settings.secrets_path)
        assert isinstance(exc.value.__cause__, OSError)

    def test_set_get_delete(self, keyed_settings):
        vault = SecretsVault(keyed_settings)
        vault.set("ZAI_API_KEY", "sk-1")
        vault.set("KIMI_API_KEY", "sk-2")
        assert vault.get("ZAI_API_KEY") == "sk-1"
        assert vault.keys() == ["KIMI_API_KEY", "ZAI_API_KEY"]
        assert vault.delete("ZAI_API_KEY") is True
        assert vault.delete("ZAI_API_KEY") is False
        assert vault.get("ZAI_API_KEY") is None
        assert vault.load() == {"KIMI_API_KEY": "sk-2"}

    def test_save_and_load(self, keyed_settings):
        vault = SecretsVault(keyed_settings)
        vault.save({"A": "1", "B": "two"})
        assert vault.load() == {"A": "1", "B": "two"}

    def test_decrypt_bytes_buffer(self, keyed_settings):
        """The zeroable buffer holds the plaintext until cleared."""
        vault = SecretsVault(keyed_settings)
        vault.encrypt("A=1\n")
        with vault.decrypt_bytes() as buf:
            assert buf.text() == "A=1\n"
            assert len(buf) == 4
        assert len(buf) == 0

    def test_secret_buffer_repr_hides_content(self):
        buf = SecretBuffer(b"hunter2")
        assert "hunter2" not in repr(buf)
        buf.clear()
        assert buf.text() == ""


# --- Test Key Rotation ---

class TestKeyRotation:
    """Tests for rotate_key."""

    def test_rotate_reencrypts(self, keyed_settings):
        vault = SecretsVault(keyed_settings)
        vault.save({"ZAI_API_KEY": "sk-1"})
        old_key = keyed_settings.key_path.read_bytes()

        stats = rotate_key(keyed_settings)

        assert keyed_settings.key_path.read_bytes() != old_key
        assert vault.load() == {"ZAI_API_KEY": "sk-1"}
        assert stats["secrets"] > 0
        assert stats["recovered"] is False
        assert _mode(keyed_settings.key_path) == 0o600

    def test_old_key_cannot_open_rotated_vault(self, keyed_settings, tmp_path):
        SecretsVault(keyed_settings).save({"A": "1"})
        saved = tmp_path / "old.key"
        saved.write_bytes(keyed_settings.key_path.read_bytes())
        rotate_key(keyed_settings)
        with pytest.raises(DecryptError):
            decrypt_file(keyed_settings.secrets_path, saved)

    def test_rotate_without_secrets(self, keyed_settings):
        old_key = keyed_settings.key_path.read_bytes()
        stats = rotate_key(keyed_settings)
        assert stats["secrets"] == 0
        assert keyed_settings.key_path.read_bytes() != old_key
        assert not keyed_settings.secrets_path.exists()

    def test_rotate_leaves_no_pending_key(self, keyed_settings):
        rotate_key(keyed_settings)
        assert not (keyed_settings.config_dir / "vault.key.new").exists()

    def test_rotate_finishes_interrupted_rotation(self, keyed_settings):
        """Secrets sealed to a pending key are recovered on the next run."""
        pending = keyed_settings.config_dir / "vault.key.new"
        generate_key(pending)
        encrypt_file(keyed_settings.secrets_path, pending, "A=1\n")

        stats = rotate_key(keyed_settings)

        assert stats["recovered"] is True
        assert SecretsVault(keyed_settings).load() == {"A": "1"}

    def test_rotate_discards_unused_pending_key(self, keyed_settings):
        SecretsVault(keyed_settings).save({"A": "1"})
        generate_key(keyed_settings.config_dir / "vault.key.new")

        stats = rotate_key(keyed_settings)

        assert stats["recovered"] is False
        assert SecretsVault(keyed_settings).load() == {"A": "1"}


# --- Test Recovery Phrase ---

class TestRecoveryPhrase:
    """Tests for exporting and restoring the key through a phrase."""

    def test_restore_after_key_loss(self, keyed_settings):
        """A lost key file comes back from the phrase and opens the vault."""
        SecretsVault(keyed_settings).save({"ZAI_API_KEY": "sk-1"})
        phrase = KeyStore(keyed_settings).recovery_phrase()
        original = keyed_settings.key_path.read_bytes()
        keyed_settings.key_path.unlink()

        restored = recover_from_phrase(keyed_settings, phrase)

        assert restored == keyed_settings.key_path
        assert _mode(restored) == 0o600
        assert restored.read_bytes() == original
        assert SecretsVault(keyed_settings).load() == {"ZAI_API_KEY": "sk-1"}

    def test_phrase_shape(self, keyed_settings):
        phrase = create_recovery_phrase(keyed_settings.key_path)
        words = phrase.split("-")
        assert len(words) >= 2
        assert all(len(word) <= 8 for word in words[:-1])
        assert "\n" not in phrase

    def test_whitespace_is_ignored(self, keyed_settings):
        phrase = create_recovery_phrase(keyed_settings.key_path)
        spaced = phrase.replace("-", "-\n  ", 2) + "\n"
        expected = KeyStore(keyed_settings).identity().public_key().public_bytes_raw()
        assert parse_recovery_phrase(spaced).public_key().public_bytes_raw() == expected

    def test_tampered_phrase_is_rejected(self, keyed_settings):
        """Changing any key character breaks the integrity check."""
        phrase = create_recovery_phrase(keyed_settings.key_path)
        first = phrase[0]
        tampered = ("B" if first == "A" else "A") + phrase[1:]
        before = keyed_settings.key_path.read_bytes()
        with pytest.raises(RecoveryPhraseError) as exc:
            recover_from_phrase(keyed_settings, tampered)
        assert isinstance(exc.value, KeyStoreError)
        assert keyed_settings.key_path.read_bytes() == before

    def test_tampered_mac_is_rejected(self, keyed_settings):
        phrase = create_recovery_phrase(keyed_settings.key_path)
        body, _, mac = phrase.rpartition("-")
        tampered = body + "-" + ("B" if mac[0] == "A" else "A") + mac[1:]
        with pytest.raises(RecoveryPhraseError):
            parse_recovery_phrase(tampered)

    @pytest.mark.parametrize("phrase", ["", "single", "a--b", "not*base64-AAAA"])
    def test_malformed_phrase(self, phrase):
        with pytest.raises(RecoveryPhraseError):
            parse_recovery_phrase(phrase)

    def test_too_long_phrase(self):
        with pytest.raises(RecoveryPhraseError):
            parse_recovery_phrase("A" * 70000 + "-AAAA")

    def test_foreign_key_phrase_does_not_overwrite(self, keyed_settings, tmp_path):
        """A valid phrase for another key is refused when it cannot open the vault."""
        SecretsVault(keyed_settings).save({"A": "1"})
        other = tmp_path / "other.key"
        generate_key(other)
        before = keyed_settings.key_path.read_bytes()
        with pytest.raises(DecryptError):
            recover_from_phrase(keyed_settings, create_recovery_phrase(other))
        assert keyed_settings.key_path.read_bytes() == before
