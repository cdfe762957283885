"""
Re-encrypt stored PII under the current ENCRYPTION_KEY.

Run after changing the key, with the previous key exported:

  OLD_ENCRYPTION_KEY=<previous key> python scripts/rotate_encryption_key.py

Rows written as plaintext before encryption was enabled are encrypted too.
Rows that do not decrypt under the old key are left untouched and reported.
"""

import logging
import os
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tourney.core.database import SessionLocal
from tourney.core.encryption import FieldCipher, fingerprint, is_encryption_enabled, re_encrypt
from tourney.models.user import User

logger = logging.getLogger("rotate_encryption_key")


def _rotate_value(old: FieldCipher, value):
    outcome = old.check_decrypt(value)
    if not outcome.ok:
        logger.error("Cannot decrypt value (%s) fingerprint=%s", outcome.reason, fingerprint(value))
        return None
    return re_encrypt(outcome.value)


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    if not is_encryption_enabled():
        print("ENCRYPTION_KEY is not set. Nothing to rotate to.")
        sys.exit(1)

    old_key = os.environ.get("OLD_ENCRYPTION_KEY")
    old = FieldCipher(old_key or None)

    db = SessionLocal()
    rotated = failed = 0
    try:
        for user in db.query(User).all():
            if user.phone_number:
                new_value = _rotate_value(old, user.phone_number)
                if new_value is None:
                    failed += 1
                else:
                    user.phone_number = new_value
                    rotated += 1
            if user.in_game_ids:
                ids = dict(user.in_game_ids)
                for game, value in ids.items():
                    new_value = _rotate_value(old, value)
                    if new_value is None:
                        failed += 1
                    else:
                        ids[game] = new_value
                        rotated += 1
                user.in_game_ids = ids
        db.commit()
    finally:
        db.close()

    print(f"Re-encrypted {rotated} values, {failed} failed.")
    if failed:
        sys.exit(2)


if __name__ == "__main__":
    main()
