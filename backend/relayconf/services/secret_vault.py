"""
Secret vault: authenticated encryption of credential-bearing values at rest.

Ciphertext layout (base64-encoded):

    salt (16 bytes) || nonce (12 bytes) || AES-256-GCM ciphertext + tag

The AES key is derived on every call with PBKDF2-HMAC-SHA256 from the
process-wide master secret and the per-record salt. The vault keeps no
derived key material between calls, so a leaked row is useless without the
master secret.
"""
import base64
import binascii
import os
from typing import List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from relayconf.constants import (
    GCM_NONCE_SIZE_BYTES,
    KDF_ITERATIONS,
    KDF_KEY_LENGTH_BYTES,
    KDF_SALT_SIZE_BYTES,
)
from relayconf.database import utcnow
from relayconf.exceptions import DecryptionError, NotFound
from relayconf.models.secret import ConfigSecret


class SecretVault:
    """Encrypts, stores and retrieves secrets in the config_secrets table."""

    def __init__(self, master_secret: str, iterations: int = KDF_ITERATIONS):
        if not master_secret:
            raise ValueError("master secret must not be empty")
        self._master = master_secret.encode("utf-8")
        self._iterations = iterations

    def __repr__(self) -> str:
        return f"SecretVault(iterations={self._iterations})"

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KDF_KEY_LENGTH_BYTES,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(self._master)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a value with a fresh salt and nonce."""
        salt = os.urandom(KDF_SALT_SIZE_BYTES)
        nonce = os.urandom(GCM_NONCE_SIZE_BYTES)
        ciphertext = AESGCM(self._derive_key(salt)).encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(salt + nonce + ciphertext).decode("ascii")

    def decrypt_bytes(self, token: str) -> bytearray:
        """
        Decrypt a token into a mutable buffer the caller can zero after use.

        Raises:
            DecryptionError: If the token is malformed, tampered with, or was
                encrypted under a different master secret
        """
        try:
            raw = base64.b64decode(token.encode("ascii"), validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError) as e:
            raise DecryptionError("Stored secret is not valid base64") from e

        header = KDF_SALT_SIZE_BYTES + GCM_NONCE_SIZE_BYTES
        if len(raw) <= header:
            raise DecryptionError("Stored secret is truncated")

        salt = raw[:KDF_SALT_SIZE_BYTES]
        nonce = raw[KDF_SALT_SIZE_BYTES:header]
        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(nonce, raw[header:], None)
        except InvalidTag as e:
            raise DecryptionError(
                "Stored secret could not be decrypted (corrupt record or master secret changed)"
            ) from e
        return bytearray(plaintext)

    def decrypt(self, token: str) -> str:
        buffer = self.decrypt_bytes(token)
        try:
            return buffer.decode("utf-8")
        finally:
            scrub(buffer)

    async def store(self, db: AsyncSession, name: str, plaintext: str, updated_by: Optional[str] = None) -> None:
        """Encrypt and upsert a secret. The caller commits."""
        await self.store_encrypted(db, name, self.encrypt(plaintext), updated_by)

    async def store_encrypted(
        self, db: AsyncSession, name: str, encrypted_value: str, updated_by: Optional[str] = None
    ) -> None:
        """Upsert an already-encrypted value (e.g. a staged secret). The caller commits."""
        result = await db.execute(select(ConfigSecret).where(ConfigSecret.name == name))
        record = result.scalar_one_or_none()
        if record:
            record.encrypted_value = encrypted_value
            record.updated_at = utcnow()
            record.updated_by = updated_by
        else:
            db.add(ConfigSecret(name=name, encrypted_value=encrypted_value, updated_by=updated_by))
        await db.flush()
        logger.debug(f"Vault record '{name}' stored")

    async def get_encrypted(self, db: AsyncSession, name: str) -> Optional[str]:
        result = await db.execute(select(ConfigSecret.encrypted_value).where(ConfigSecret.name == name))
        return result.scalar_one_or_none()

    async def retrieve(self, db: AsyncSession, name: str) -> str:
        """
        Decrypt a stored secret.

        Raises:
            NotFound: If no record exists under this name
            DecryptionError: If the record cannot be decrypted
        """
        encrypted = await self.get_encrypted(db, name)
        if encrypted is None:
            raise NotFound(f"No secret named '{name}'")
        return self.decrypt(encrypted)

    async def exists(self, db: AsyncSession, name: str) -> bool:
        return await self.get_encrypted(db, name) is not None

    async def delete(self, db: AsyncSession, name: str) -> bool:
        result = await db.execute(delete(ConfigSecret).where(ConfigSecret.name == name))
        if result.rowcount:
            logger.debug(f"Vault record '{name}' deleted")
        return bool(result.rowcount)

    async def names(self, db: AsyncSession, prefix: str = "") -> List[str]:
        query = select(ConfigSecret.name).order_by(ConfigSecret.name)
        if prefix:
            query = query.where(ConfigSecret.name.startswith(prefix, autoescape=True))
        result = await db.execute(query)
        return list(result.scalars().all())


def scrub(buffer: bytearray) -> None:
    """Overwrite a plaintext buffer in place."""
    for i in range(len(buffer)):
        buffer[i] = 0
