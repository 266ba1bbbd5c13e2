"""Provider credential encryption using Fernet (symmetric encryption).

The key comes from settings.CREDENTIAL_ENCRYPTION_KEY (a urlsafe base64 Fernet key).
Encrypted values are stored with an 'enc:' prefix; values without the prefix are
treated as plaintext so hand-seeded rows keep working.
"""
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from kb_rag.config import settings
from kb_rag.exceptions import CredentialError

PREFIX = "enc:"

_fernet: Optional[Fernet] = None


def _get_fernet() -> Fernet:
    global _fernet
    if _fernet is None:
        if not settings.CREDENTIAL_ENCRYPTION_KEY:
            raise CredentialError("CREDENTIAL_ENCRYPTION_KEY is not set")
        try:
            _fernet = Fernet(settings.CREDENTIAL_ENCRYPTION_KEY.encode("ascii"))
        except (ValueError, TypeError) as e:
            raise CredentialError("CREDENTIAL_ENCRYPTION_KEY is not a valid Fernet key") from e
    return _fernet


def encrypt_secret(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt a secret for storage.

    Args:
        plaintext: Secret to encrypt; empty values are returned unchanged.

    Returns:
        Optional[str]: 'enc:'-prefixed Fernet token.
    """
    if not plaintext:
        return plaintext
    token = _get_fernet().encrypt(plaintext.encode("utf-8"))
    return PREFIX + token.decode("ascii")


def decrypt_secret(stored: Optional[str]) -> str:
    """Decrypt a stored secret.

    Args:
        stored: Value read from the database.

    Returns:
        str: Plaintext secret ('' when nothing is stored).

    Raises:
        CredentialError: If the token cannot be decrypted with the configured key.
    """
    if not stored:
        return ""
    if not stored.startswith(PREFIX):
        return stored
    try:
        return _get_fernet().decrypt(stored[len(PREFIX):].encode("ascii")).decode("utf-8")
    except (InvalidToken, ValueError, UnicodeDecodeError) as e:
        raise CredentialError("Failed to decrypt provider credential") from e
