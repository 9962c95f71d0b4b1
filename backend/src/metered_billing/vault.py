"""Credential vault: symmetric encryption of raw payment credentials at rest.

Ciphertexts are AES-256-CBC with a fresh 128-bit iv per record, followed by
an HMAC-SHA256 tag over ``iv || body`` (encrypt-then-MAC). Both keys are
derived once from the configured secret with HKDF-SHA256 and held in an
immutable ``VaultKey`` injected into ``CredentialVault``.
"""
import os
from dataclasses import dataclass, field
from typing import Optional, Union

import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from pydantic import SecretStr

from metered_billing import metrics
from metered_billing.exceptions import ValidationError, VaultError, VaultIntegrityError
from metered_billing.models.payment_credential import MethodKind
from metered_billing.schemas.credential import BankFields, CardFields, parse_credential_fields

logger = structlog.get_logger(__name__)

IV_SIZE = 16
KEY_SIZE = 32
TAG_SIZE = 32
_HKDF_INFO = b"metered-billing credential vault v1"


@dataclass(frozen=True)
class VaultKey:
    """Key material for the vault. Build with ``VaultKey.from_secret``."""

    encryption_key: bytes = field(repr=False)
    mac_key: bytes = field(repr=False)

    def __post_init__(self) -> None:
        if len(self.encryption_key) != KEY_SIZE or len(self.mac_key) != KEY_SIZE:
            raise VaultError("Vault keys must be 256 bits")

    @classmethod
    def from_secret(cls, secret: Union[SecretStr, str, None]) -> "VaultKey":
        """
        Derive vault keys from the configured secret.

        Args:
            secret: Operator-supplied vault secret

        Returns:
            Derived key material

        Raises:
            VaultError: If no secret is configured
        """
        raw = secret.get_secret_value() if isinstance(secret, SecretStr) else secret
        if not raw:
            raise VaultError("Vault secret is not configured; set VAULT_SECRET")

        material = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE * 2,
            salt=None,
            info=_HKDF_INFO,
        ).derive(raw.encode("utf-8"))
        return cls(encryption_key=material[:KEY_SIZE], mac_key=material[KEY_SIZE:])


class CredentialVault:
    """Encrypts and decrypts credential payloads under one process-wide key."""

    def __init__(self, key: VaultKey):
        """Initialize the vault with derived key material."""
        self._key = key

    def encrypt(self, plaintext: bytes) -> tuple[bytes, bytes]:
        """
        Encrypt a payload.

        Args:
            plaintext: Raw bytes to protect

        Returns:
            Tuple of (ciphertext including tag, iv)
        """
        iv = os.urandom(IV_SIZE)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key.encryption_key), modes.CBC(iv)).encryptor()
        body = encryptor.update(padded) + encryptor.finalize()
        return body + self._tag(iv, body), iv

    def decrypt(self, ciphertext: bytes, iv: bytes) -> bytes:
        """
        Decrypt a payload produced by ``encrypt``.

        Args:
            ciphertext: Ciphertext including tag
            iv: Initialization vector stored with the ciphertext

        Returns:
            Original plaintext

        Raises:
            VaultIntegrityError: If the tag does not verify (tampering or wrong iv)
            VaultError: If the ciphertext or iv is malformed
        """
        if len(iv) != IV_SIZE:
            metrics.vault_failures_total.labels(reason="format").inc()
            raise VaultError(f"Invalid iv length {len(iv)}, expected {IV_SIZE}")

        body, tag = ciphertext[:-TAG_SIZE], ciphertext[-TAG_SIZE:]
        if len(ciphertext) < TAG_SIZE + IV_SIZE or len(body) % IV_SIZE:
            metrics.vault_failures_total.labels(reason="format").inc()
            raise VaultError("Ciphertext is truncated or misaligned")

        verifier = hmac.HMAC(self._key.mac_key, hashes.SHA256())
        verifier.update(iv + body)
        try:
            verifier.verify(tag)
        except InvalidSignature:
            metrics.vault_failures_total.labels(reason="integrity").inc()
            raise VaultIntegrityError("Ciphertext failed authentication") from None

        decryptor = Cipher(algorithms.AES(self._key.encryption_key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(body) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError:
            metrics.vault_failures_total.labels(reason="format").inc()
            raise VaultError("Invalid padding in decrypted payload") from None

    def seal_fields(self, fields: Union[CardFields, BankFields]) -> tuple[bytes, bytes]:
        """Serialize and encrypt validated credential fields."""
        return self.encrypt(fields.model_dump_json().encode("utf-8"))

    def open_fields(
        self, method_kind: Union[MethodKind, str], ciphertext: bytes, iv: bytes
    ) -> Union[CardFields, BankFields]:
        """
        Decrypt and validate credential fields.

        Raises:
            VaultError: If decryption fails or the plaintext does not match method_kind
        """
        plaintext = self.decrypt(ciphertext, iv)
        try:
            return parse_credential_fields(method_kind, plaintext)
        except ValidationError as e:
            metrics.vault_failures_total.labels(reason="format").inc()
            raise VaultError("Decrypted credential does not match its method kind") from e

    def _tag(self, iv: bytes, body: bytes) -> bytes:
        signer = hmac.HMAC(self._key.mac_key, hashes.SHA256())
        signer.update(iv + body)
        return signer.finalize()


def build_vault(secret: Optional[Union[SecretStr, str]]) -> CredentialVault:
    """Construct a vault from the configured secret."""
    vault = CredentialVault(VaultKey.from_secret(secret))
    logger.info("credential_vault_ready")
    return vault
