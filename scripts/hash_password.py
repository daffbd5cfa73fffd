#!/usr/bin/env python3
"""
Print a bcrypt hash for the operator password.

Usage:
    python scripts/hash_password.py [password]

Put the output in ADMIN_PASSWORD_HASH. Prompts when no password is given.
"""

import getpass
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from hive.api.auth import hash_password


def main():
    if len(sys.argv) > 1:
        password = sys.argv[1]
    else:
        password = getpass.getpass("Admin password: ")
        if password != getpass.getpass("Repeat: "):
            print("Passwords do not match")
            sys.exit(1)

    if not password:
        print("Password must not be empty")
        sys.exit(1)

    print(hash_password(password))


if __name__ == "__main__":
    main()
