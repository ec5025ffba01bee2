"""
Credential vault
Seals fiscal device credentials at rest

Credentials (provider login, password, API key, company TIN) are kept as an
opaque blob on the device record. The vault encrypts them with AES-256-GCM
under a key derived from a master secret with PBKDF2-SHA512. Every sealed
secret carries its own salt and nonce, and the device ID is bound as
associated data so a blob copied onto another device fails to open.
"""

import json
import logging
import secrets
import threading
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from vendhub_fiscal.exceptions import CryptoError
from vendhub_fiscal.models.device import SealedSecret


logger = logging.getLogger(__name__)


class VaultDefaults:
    """Default values for vault operations"""
    VERSION = 1
    ITERATIONS = 100000
    MIN_ITERATIONS = 1000
    KEY_LENGTH = 32
    SALT_LENGTH = 32
    NONCE_LENGTH = 12
    MIN_SECRET_LENGTH = 8


class CredentialVault:
    """
    Seal and open device credentials

    Example:
        >>> vault = CredentialVault("master-secret")
        >>> sealed = vault.seal("device-1", {"login": "vh", "password": "pw"})
        >>> vault.open("device-1", sealed)["login"]
        'vh'
    """

    def __init__(self, secret: str, iterations: int = VaultDefaults.ITERATIONS):
        """
        Create a vault

        Args:
            secret: Master secret (minimum 8 characters)
            iterations: PBKDF2 iterations

        Raises:
            CryptoError: If the secret or iteration count is invalid
        """
        if not secret:
            raise CryptoError("Vault secret is required", code="CRYPTO20")
        if len(secret) < VaultDefaults.MIN_SECRET_LENGTH:
            raise CryptoError(
                "Vault secret must be at least 8 characters",
                code="CRYPTO21"
            )
        if iterations < VaultDefaults.MIN_ITERATIONS:
            raise CryptoError(
                f"Vault iterations must be at least {VaultDefaults.MIN_ITERATIONS}",
                code="CRYPTO22"
            )

        self._secret = secret
        self._iterations = iterations
        self._key_cache: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def seal(self, device_id: str, credentials: Dict[str, Any]) -> SealedSecret:
        """
        Encrypt a credentials dictionary for a device

        Raises:
            CryptoError: If the credentials cannot be serialized
        """
        try:
            plaintext = json.dumps(credentials, sort_keys=True).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise CryptoError(
                f"Credentials are not serializable: {str(e)}",
                code="CRYPTO23",
                cause=e
            )

        salt = secrets.token_bytes(VaultDefaults.SALT_LENGTH)
        nonce = secrets.token_bytes(VaultDefaults.NONCE_LENGTH)
        key = self._key_for(salt)

        aesgcm = AESGCM(key)
        ciphertext = aesgcm.encrypt(nonce, plaintext, device_id.encode("utf-8"))

        return SealedSecret(
            version=VaultDefaults.VERSION,
            salt=salt.hex(),
            nonce=nonce.hex(),
            ciphertext=ciphertext.hex(),
        )

    def open(self, device_id: str, sealed: SealedSecret) -> Dict[str, Any]:
        """
        Decrypt the credentials of a device

        Raises:
            CryptoError: On a version mismatch, wrong secret, tampered blob
                or a blob sealed for another device
        """
        if sealed.version != VaultDefaults.VERSION:
            raise CryptoError(
                f"Unsupported vault version: {sealed.version}",
                code="CRYPTO24"
            )

        try:
            key = self._key_for(bytes.fromhex(sealed.salt))
            aesgcm = AESGCM(key)
            decrypted = aesgcm.decrypt(
                bytes.fromhex(sealed.nonce),
                bytes.fromhex(sealed.ciphertext),
                device_id.encode("utf-8")
            )
        except (InvalidTag, ValueError) as e:
            logger.warning(f"Failed to open credentials of device {device_id}")
            raise CryptoError(
                "Failed to decrypt credentials. Invalid secret or corrupted data.",
                code="CRYPTO25",
                cause=e
            )

        return json.loads(decrypted.decode("utf-8"))

    def rotate(
        self,
        device_id: str,
        sealed: SealedSecret,
        new_vault: Optional["CredentialVault"] = None,
    ) -> SealedSecret:
        """
        Re-seal credentials with a fresh salt and nonce

        Args:
            device_id: Device the secret belongs to
            sealed: Current sealed secret
            new_vault: Vault holding the new master secret (default: this one)
        """
        credentials = self.open(device_id, sealed)
        target = new_vault or self
        return target.seal(device_id, credentials)

    # ============ Private Helper Methods ============

    def _key_for(self, salt: bytes) -> bytes:
        cache_key = salt.hex()
        with self._lock:
            key = self._key_cache.get(cache_key)
            if key is None:
                key = self._derive_key(salt)
                self._key_cache[cache_key] = key
            return key

    def _derive_key(self, salt: bytes) -> bytes:
        """Derive encryption key from the master secret using PBKDF2"""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=VaultDefaults.KEY_LENGTH,
            salt=salt,
            iterations=self._iterations,
            backend=default_backend()
        )
        return kdf.derive(self._secret.encode("utf-8"))
