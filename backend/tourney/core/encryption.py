"""
Field-level encryption for PII at rest.

AES-256-GCM with a fresh 16-byte IV per call. Stored format:

    base64(iv):base64(auth_tag):base64(ciphertext)

Values that are not three colon-separated segments are treated as legacy
plaintext written before encryption was enabled and pass through unchanged.
A three-segment value that is corrupt or fails authentication is logged and
returned as stored so that one bad row never takes a whole page down.
``safe_decrypt`` is stricter and only attempts values whose segments decode
to a 16-byte IV and tag, so a coincidental ``a:b:c`` plaintext is left alone.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
import re
import secrets
from typing import Any, Dict, Mapping, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from tourney.config import settings
from tourney.core.outcome import Outcome

logger = logging.getLogger(__name__)

IV_LENGTH = 16
AUTH_TAG_LENGTH = 16
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000
KEY_SALT = hashlib.sha256(b"esports-platform-pii-encryption").digest()

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")

KeyMaterial = Union[str, bytes]


def derive_key(key_material: KeyMaterial) -> bytes:
    """
    Turn configured key material into a 32-byte AES key.

    A 32-byte value or a 64-character hex string is used as-is; anything
    else is treated as a passphrase and stretched with PBKDF2-HMAC-SHA512.
    """
    if isinstance(key_material, bytes):
        if len(key_material) == KEY_LENGTH:
            return key_material
        passphrase = key_material
    else:
        if _HEX_KEY.match(key_material):
            return bytes.fromhex(key_material)
        passphrase = key_material.encode("utf-8")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_LENGTH,
        salt=KEY_SALT,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(passphrase)


def fingerprint(value: str) -> str:
    """Short, non-reversible tag for logging a stored value."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


def _b64decode(segment: str) -> bytes:
    raw = base64.b64decode(segment.encode("ascii"), validate=True)
    # Unused trailing bits must be zero so every character of a blob matters.
    if base64.b64encode(raw).decode("ascii") != segment:
        raise ValueError("non-canonical base64")
    return raw


def _looks_encrypted(value: str) -> bool:
    return len(value.split(":")) == 3


def _decode_blob(value: str) -> Optional[tuple]:
    """Decode the three segments, or None if any of them is corrupt."""
    try:
        iv, tag, ciphertext = (_b64decode(part) for part in value.split(":"))
    except (binascii.Error, UnicodeError, ValueError):
        return None
    if len(iv) != IV_LENGTH or len(tag) != AUTH_TAG_LENGTH:
        return None
    return iv, tag, ciphertext


class FieldCipher:
    """AES-256-GCM cipher for individual string fields.

    Constructed without key material the cipher runs in degraded mode:
    values are written in cleartext and a warning is logged once.
    """

    def __init__(self, key_material: Optional[KeyMaterial] = None):
        self._aead = AESGCM(derive_key(key_material)) if key_material else None
        self._warned_disabled = False

    @property
    def enabled(self) -> bool:
        return self._aead is not None

    def _warn_disabled(self) -> None:
        if not self._warned_disabled:
            logger.warning("Encryption key not set - storing PII unencrypted")
            self._warned_disabled = True

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return plaintext
        if self._aead is None:
            self._warn_disabled()
            return plaintext

        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return ":".join(
            base64.b64encode(part).decode("ascii") for part in (iv, tag, ciphertext)
        )

    def check_decrypt(self, blob: str) -> Outcome[str]:
        """Decrypt ``blob``; legacy plaintext comes back as a success."""
        if not blob or not _looks_encrypted(blob):
            return Outcome.success(blob)
        if self._aead is None:
            return Outcome.failure("disabled")

        parts = _decode_blob(blob)
        if parts is None:
            return Outcome.failure("corrupt")
        iv, tag, ciphertext = parts
        try:
            return Outcome.success(self._aead.decrypt(iv, ciphertext + tag, None).decode("utf-8"))
        except (InvalidTag, UnicodeDecodeError):
            return Outcome.failure("authentication")

    def decrypt(self, blob: str) -> str:
        outcome = self.check_decrypt(blob)
        if outcome.ok:
            return outcome.value
        if outcome.reason == "disabled":
            logger.warning("Encryption key not set - cannot decrypt value %s", fingerprint(blob))
        else:
            logger.error(
                "PII decryption failed (%s) fingerprint=%s",
                outcome.reason,
                fingerprint(blob),
            )
        return blob


_cipher: Optional[FieldCipher] = None


def get_cipher() -> FieldCipher:
    """Process-wide cipher built from ENCRYPTION_KEY."""
    global _cipher
    if _cipher is None:
        _cipher = FieldCipher(settings.ENCRYPTION_KEY or None)
    return _cipher


def clear_key_cache() -> None:
    """Forget the derived key so the next call re-reads ENCRYPTION_KEY."""
    global _cipher
    _cipher = None


def is_encryption_enabled() -> bool:
    return bool(settings.ENCRYPTION_KEY)


def generate_encryption_key() -> str:
    """64-character hex string suitable for ENCRYPTION_KEY"""
    return secrets.token_hex(KEY_LENGTH)


def encrypt(plaintext: str) -> str:
    return get_cipher().encrypt(plaintext)


def decrypt(blob: str) -> str:
    return get_cipher().decrypt(blob)


def is_encrypted(value: Optional[str]) -> bool:
    """True if ``value`` has the ``iv:tag:ciphertext`` shape"""
    if not value or not _looks_encrypted(value):
        return False
    return _decode_blob(value) is not None


def safe_decrypt(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    if is_encrypted(value):
        return decrypt(value)
    return value


def re_encrypt(plaintext: str) -> str:
    """Encrypt with the current key; used when rotating ENCRYPTION_KEY."""
    return encrypt(plaintext)


# ============ PII field helpers ============

def encrypt_phone_number(phone_number: Optional[str]) -> Optional[str]:
    if not phone_number:
        return None
    return encrypt(phone_number)


def decrypt_phone_number(encrypted_phone_number: Optional[str]) -> Optional[str]:
    if not encrypted_phone_number:
        return None
    return decrypt(encrypted_phone_number)


def encrypt_in_game_ids(in_game_ids: Optional[Mapping[str, str]]) -> Optional[Dict[str, str]]:
    """Encrypt each game ID; the game names stay readable."""
    if not in_game_ids:
        return None
    return {game: encrypt(game_id) for game, game_id in in_game_ids.items()}


def decrypt_in_game_ids(encrypted_in_game_ids: Optional[Mapping[str, str]]) -> Optional[Dict[str, str]]:
    if not encrypted_in_game_ids:
        return None
    return {game: decrypt(game_id) for game, game_id in encrypted_in_game_ids.items()}


def encrypt_game_uid(game_uid: Optional[str]) -> Optional[str]:
    if not game_uid:
        return None
    return encrypt(game_uid)


def decrypt_game_uid(encrypted_game_uid: Optional[str]) -> Optional[str]:
    if not encrypted_game_uid:
        return None
    return decrypt(encrypted_game_uid)


def encrypt_user_pii(
    phone_number: Optional[str] = None,
    in_game_ids: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    return {
        "phone_number": encrypt_phone_number(phone_number),
        "in_game_ids": encrypt_in_game_ids(in_game_ids),
    }


def decrypt_user_pii(user_data: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a user row with ``phone_number`` and ``in_game_ids`` decrypted"""
    if not user_data:
        return user_data
    decrypted = dict(user_data)
    if user_data.get("phone_number"):
        decrypted["phone_number"] = safe_decrypt(user_data["phone_number"])
    if user_data.get("in_game_ids"):
        decrypted["in_game_ids"] = decrypt_in_game_ids(user_data["in_game_ids"])
    return decrypted


def decrypt_team_member_game_uid(team_member: Dict[str, Any]) -> Dict[str, Any]:
    if not team_member or not team_member.get("game_uid"):
        return team_member
    return {**team_member, "game_uid": safe_decrypt(team_member["game_uid"])}
