#!/usr/bin/env python3
"""
Report which stored IMAP passwords can be decrypted with the current EMAIL_ENCRYPTION_KEY.

Run with ``--generate-key`` to print a fresh key for a new deployment instead.
"""

import argparse
from typing import List, Optional

from dotenv import load_dotenv

from inbox_manager.core.config import Config
from inbox_manager.managers import PostgreSQLManager
from ingestion.utils.crypto import InvalidToken, decrypt, generate_key, is_configured

# Load environment variables from .env file
load_dotenv()


def check_encryption():
    print(f"Encryption key loaded: {'Yes' if is_configured() else 'No'}")
    if not is_configured():
        return

    mgr = PostgreSQLManager.from_config(Config(), ensure_schema=False)
    try:
        with mgr.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT user_id, main_email_address, imap_password, imap_auth_failed_at "
                    "FROM user_settings WHERE imap_password IS NOT NULL ORDER BY user_id"
                )
                rows = cur.fetchall()

        if not rows:
            print("No IMAP accounts found.")
            return

        for row in rows:
            try:
                decrypt(row["imap_password"])
                readable = "ok"
            except InvalidToken:
                readable = "NOT DECRYPTABLE (wrong key or plaintext)"
            flagged = " [auth failure flagged]" if row["imap_auth_failed_at"] else ""
            print(f"{row['user_id']} <{row['main_email_address']}>: {readable}{flagged}")
    finally:
        mgr.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Check stored IMAP password encryption")
    parser.add_argument("--generate-key", action="store_true",
                        help="Print a new EMAIL_ENCRYPTION_KEY and exit")
    args = parser.parse_args(argv)

    if args.generate_key:
        print(f"EMAIL_ENCRYPTION_KEY={generate_key()}")
        return 0
    check_encryption()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
