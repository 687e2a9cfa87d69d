"""
Encryption of integration configuration for Proofline.

Integration configs (API tokens, access keys, webhook URLs) are stored in the
database only as Fernet tokens. Workers decrypt a config into memory right
before handing it to a collector and never persist the plaintext.

Key Sources:
    - PROOFLINE_SECRET_KEY: a urlsafe base64 Fernet key, used as-is.
    - PROOFLINE_PASSPHRASE: a passphrase; the key is derived with PBKDF2
      (600,000 iterations) and a random 256-bit salt stored in the data
      directory with owner-only permissions.
"""

import base64
import json
import os
import secrets
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

# OWASP 2023 recommends 600,000 iterations for PBKDF2-SHA256
PBKDF2_ITERATIONS = 600_000
SALT_LENGTH = 32  # 256 bits
MIN_PASSPHRASE_LENGTH = 12
SALT_FILENAME = "salt"


class SecretsError(Exception):
    """Base exception for secrets errors."""

    pass


class DecryptionError(SecretsError):
    """Raised when an encrypted config cannot be decrypted with the current key."""

    pass


class ConfigCipher:
    """
    Encrypts and decrypts integration configuration dictionaries.

    Usage:
        cipher = ConfigCipher.from_passphrase("correct horse battery", data_dir)
        token = cipher.encrypt_config({"token": "ghp_..."})
        config = cipher.decrypt_config(token)
    """

    def __init__(self, fernet: Fernet) -> None:
        self._fernet = fernet

    @classmethod
    def from_key(cls, key: str | bytes) -> "ConfigCipher":
        """Create a cipher from a raw Fernet key."""
        try:
            return cls(Fernet(key))
        except (ValueError, TypeError) as e:
            raise SecretsError(f"Invalid Fernet key: {e}") from e

    @classmethod
    def generate_key(cls) -> str:
        """Generate a new random Fernet key."""
        return Fernet.generate_key().decode()

    @classmethod
    def from_passphrase(cls, passphrase: str, data_dir: Path) -> "ConfigCipher":
        """
        Create a cipher from a passphrase, creating the salt file if needed.

        Raises:
            ValueError: If the passphrase is shorter than 12 characters.
        """
        if len(passphrase) < MIN_PASSPHRASE_LENGTH:
            raise ValueError(
                f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters."
            )
        salt = _load_or_create_salt(data_dir / SALT_FILENAME)
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,  # Fernet requires 32-byte keys
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        key = base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))
        return cls(Fernet(key))

    @classmethod
    def from_environment(cls, data_dir: Path) -> "ConfigCipher":
        """
        Create a cipher from PROOFLINE_SECRET_KEY or PROOFLINE_PASSPHRASE.

        Raises:
            SecretsError: If neither variable is set.
        """
        key = os.environ.get("PROOFLINE_SECRET_KEY")
        if key:
            return cls.from_key(key)
        passphrase = os.environ.get("PROOFLINE_PASSPHRASE")
        if passphrase:
            return cls.from_passphrase(passphrase, data_dir)
        raise SecretsError(
            "No encryption key configured. Set PROOFLINE_SECRET_KEY or "
            "PROOFLINE_PASSPHRASE."
        )

    def encrypt_config(self, config: dict[str, Any]) -> str:
        """Encrypt a config dictionary to a Fernet token string."""
        return self._fernet.encrypt(json.dumps(config, sort_keys=True).encode()).decode()

    def decrypt_config(self, token: str) -> dict[str, Any]:
        """
        Decrypt a Fernet token back to a config dictionary.

        Raises:
            DecryptionError: If the token was not produced with this key.
        """
        try:
            decrypted = self._fernet.decrypt(token.encode())
        except InvalidToken as e:
            raise DecryptionError(
                "Cannot decrypt integration config. Check the encryption key."
            ) from e
        data: dict[str, Any] = json.loads(decrypted.decode())
        return data


def _load_or_create_salt(salt_path: Path) -> bytes:
    """Read the salt file, generating it with owner-only permissions if absent."""
    if salt_path.exists():
        return salt_path.read_bytes()

    salt_path.parent.mkdir(parents=True, exist_ok=True)
    salt = secrets.token_bytes(SALT_LENGTH)

    # Write to temporary file first, then rename atomically
    temp_path = salt_path.with_suffix(".tmp")
    try:
        temp_path.write_bytes(salt)
        try:
            os.chmod(temp_path, 0o600)
        except OSError:
            # Windows or permission error - continue anyway
            pass
        temp_path.rename(salt_path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise

    return salt
