"""
Credential Store.

============================================================
PURPOSE
============================================================
Symmetric encryption of the monitoring API token, password and
group bot tokens at rest.

- AES-256-CBC with PKCS7 padding
- Key = SHA-256 of the application secret, so the literal
  secret is never used as the key
- Fresh random 16-byte IV per encryption, stored beside the
  ciphertext (both hex-encoded)

Decrypt failures (corrupt data, wrong key) return None so that
callers treat "absent" and "unusable" credentials the same way.

============================================================
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes


logger = logging.getLogger(__name__)

IV_SIZE_BYTES = 16
BLOCK_SIZE_BITS = 128


@dataclass(frozen=True)
class EncryptedSecret:
    """Hex-encoded ciphertext and IV."""
    
    ciphertext: str
    iv: str


class CredentialCipher:
    """
    Encrypt/decrypt helper keyed by a process-wide secret.
    
    Constructed once per process and injected wherever secrets
    are read or written.
    """
    
    def __init__(self, app_secret: str):
        if not app_secret:
            raise ValueError("app_secret must not be empty")
        self._key = hashlib.sha256(app_secret.encode("utf-8")).digest()
    
    def encrypt(self, plaintext: str) -> EncryptedSecret:
        """
        Encrypt a secret with a fresh IV.
        
        Args:
            plaintext: Secret to protect
            
        Returns:
            EncryptedSecret(ciphertext, iv)
        """
        iv = os.urandom(IV_SIZE_BYTES)
        padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        
        return EncryptedSecret(ciphertext=ciphertext.hex(), iv=iv.hex())
    
    def decrypt(self, ciphertext: Optional[str], iv: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored secret.
        
        Returns:
            Plaintext, or None when input is missing or cannot be decrypted
        """
        if not ciphertext or not iv:
            return None
        
        try:
            raw = bytes.fromhex(ciphertext)
            iv_bytes = bytes.fromhex(iv)
            if len(iv_bytes) != IV_SIZE_BYTES:
                raise ValueError(f"IV must be {IV_SIZE_BYTES} bytes")
            
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv_bytes)).decryptor()
            padded = decryptor.update(raw) + decryptor.finalize()
            
            unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (ValueError, TypeError) as e:
            # UnicodeDecodeError is a ValueError
            logger.warning(f"Failed to decrypt stored credential: {type(e).__name__}")
            return None
