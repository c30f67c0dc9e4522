"""
Promotion codes: generation, encryption at rest and verification.

A plaintext code exists only in the activation response and the email to the
activator. It is never logged, and is stored as Fernet ciphertext only.
"""

import secrets
import string
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from academic_portal.core.config import settings

PROMOTION_CODE_LENGTH = 32
PROMOTION_CODE_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"


class CodeEncryption:
    """
    Symmetric encryption for promotion codes using Fernet (AES-128-CBC + HMAC).

    Codes are stored encrypted rather than hashed so the activating Academic
    Head can be shown the code again while the session is open.
    """

    def __init__(self, encryption_key: str):
        # 44-char urlsafe base64, see generate_encryption_key()
        self._fernet = Fernet(encryption_key.encode())

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Cannot encrypt empty string")
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Raises InvalidToken for tampered ciphertext or a different key."""
        if not ciphertext:
            raise ValueError("Cannot decrypt empty string")
        return self._fernet.decrypt(ciphertext.encode()).decode()


code_encryptor = CodeEncryption(settings.ENCRYPTION_KEY)


def generate_promotion_code() -> str:
    """PROMOTION_CODE_LENGTH characters drawn with ``secrets`` from PROMOTION_CODE_ALPHABET."""
    return "".join(secrets.choice(PROMOTION_CODE_ALPHABET) for _ in range(PROMOTION_CODE_LENGTH))


def encrypt_code(code: str) -> str:
    return code_encryptor.encrypt(code)


def verify_promotion_code(candidate: Optional[str], encrypted_code: Optional[str]) -> bool:
    """
    Check a submitted promotion code against the stored ciphertext.

    Returns False (never raises) for missing values or undecryptable ciphertext.
    """
    if not candidate or not encrypted_code:
        return False

    try:
        expected = code_encryptor.decrypt(encrypted_code)
    except (InvalidToken, ValueError):
        return False

    return secrets.compare_digest(candidate.encode(), expected.encode())


def generate_encryption_key() -> str:
    """Fresh value for the ENCRYPTION_KEY setting."""
    return Fernet.generate_key().decode()
