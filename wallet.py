"""
Custodial wallet handling.

Every stakeholder gets a key pair generated on the server. The private key is
stored encrypted with a key derived from the user's password:

    scrypt(password, salt) -> 32 byte key -> AES-256-GCM(private_key, iv)

The stored record is ``{"encrypted": hex, "iv": hex, "salt": hex}``. GCM is
authenticated, so a wrong password fails the tag check instead of returning
garbage bytes.
"""

from __future__ import annotations

import json
import logging
import secrets
from typing import Any, Dict, Mapping, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from eth_account import Account
from eth_account.signers.local import LocalAccount

from errors import AuthenticationError, ValidationError

logger = logging.getLogger(__name__)

SALT_BYTES = 16
IV_BYTES = 12
KEY_BYTES = 32
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1

EncryptedKey = Dict[str, str]


class WalletService:
    """Generates, encrypts and unlocks custodial wallets."""

    def __init__(self, scrypt_n: int = SCRYPT_N):
        self.scrypt_n = scrypt_n

    @staticmethod
    def generate_wallet() -> Dict[str, str]:
        """Generate a new wallet from a cryptographically secure random key."""
        private_key = "0x" + secrets.token_hex(32)
        account = Account.from_key(private_key)
        return {"address": account.address, "private_key": private_key}

    def _derive_key(self, password: str, salt: bytes) -> bytes:
        kdf = Scrypt(salt=salt, length=KEY_BYTES, n=self.scrypt_n, r=SCRYPT_R, p=SCRYPT_P)
        return kdf.derive(password.encode("utf-8"))

    def encrypt_private_key(self, private_key: str, password: str) -> EncryptedKey:
        if not password:
            raise ValidationError("A password is required to protect the wallet")

        salt = secrets.token_bytes(SALT_BYTES)
        iv = secrets.token_bytes(IV_BYTES)
        key = self._derive_key(password, salt)
        encrypted = AESGCM(key).encrypt(iv, private_key.encode("utf-8"), None)

        return {
            "encrypted": encrypted.hex(),
            "iv": iv.hex(),
            "salt": salt.hex(),
        }

    def decrypt_private_key(self, encrypted_data: Union[str, Mapping[str, Any]], password: str) -> str:
        """Reverse of :meth:`encrypt_private_key`.

        Raises ``AuthenticationError`` for a wrong password and
        ``ValidationError`` when the stored record itself is unusable.
        """
        record = _load_record(encrypted_data)
        try:
            encrypted = bytes.fromhex(record["encrypted"])
            iv = bytes.fromhex(record["iv"])
            salt = bytes.fromhex(record["salt"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError("Malformed encrypted key record", details=str(exc)) from exc

        if len(iv) != IV_BYTES or not salt or len(encrypted) <= 16:
            raise ValidationError("Malformed encrypted key record", details="unexpected field length")

        key = self._derive_key(password or "", salt)
        try:
            plaintext = AESGCM(key).decrypt(iv, encrypted, None)
        except InvalidTag as exc:
            raise AuthenticationError("Invalid wallet password") from exc

        return plaintext.decode("utf-8")

    def get_user_account(self, encrypted_data: Union[str, Mapping[str, Any]], password: str) -> LocalAccount:
        """Unlock a user's wallet for signing."""
        private_key = self.decrypt_private_key(encrypted_data, password)
        return Account.from_key(private_key)

    @staticmethod
    def serialize(encrypted_data: EncryptedKey) -> str:
        return json.dumps(encrypted_data)


def _load_record(encrypted_data: Union[str, Mapping[str, Any]]) -> Mapping[str, Any]:
    if isinstance(encrypted_data, str):
        try:
            encrypted_data = json.loads(encrypted_data)
        except json.JSONDecodeError as exc:
            raise ValidationError("Malformed encrypted key record", details=str(exc)) from exc
    if not isinstance(encrypted_data, Mapping):
        raise ValidationError("Malformed encrypted key record", details="expected an object")
    return encrypted_data
