"""
Grant the administrator claim to an account.

Usage: examertric-set-admin <email> <password>

Creates the account when it does not exist yet, sets its admin claim and
mirrors ``{role: "admin", email}`` to ``users/{uid}``. Exits 0 on success,
1 on bad usage and 2 on any failure.
"""

import logging
import sys
from typing import List, Optional

from .accounts import grant_admin, normalize_email
from .db import DATABASE_URL, make_engine
from .store import TreeStore

logger = logging.getLogger(__name__)

USAGE = "Usage: examertric-set-admin <email> <password>"


def set_admin(email: str, password: str, database_url: str = DATABASE_URL) -> str:
	store = TreeStore(make_engine(database_url))
	try:
		store.init()
		with store.session() as db:
			row = grant_admin(db, store, email, password)
			return row.uid
	finally:
		store.close()


def main(argv: Optional[List[str]] = None) -> int:
	args = sys.argv[1:] if argv is None else argv
	if len(args) != 2 or not normalize_email(args[0]) or not args[1]:
		print(USAGE, file=sys.stderr)
		return 1
	email, password = args
	try:
		uid = set_admin(email, password)
	except Exception as e:
		logger.exception("set-admin failed for %s", normalize_email(email))
		print(f"Failed to set admin claim: {e}", file=sys.stderr)
		return 2
	print(f"Admin claim set for {normalize_email(email)} (uid: {uid})")
	return 0


if __name__ == "__main__":
	sys.exit(main())
