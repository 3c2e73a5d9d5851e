from __future__ import annotations
import logging
import uuid
from typing import Optional

from passlib.context import CryptContext
from sqlalchemy.orm import Session

from .models import AuthUser
from .settings import settings
from .store import TreeStore, user_path

logging.getLogger('passlib').setLevel(logging.ERROR)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ROLE_ADMIN = "admin"
ROLE_EXAM_TAKER = "examTaker"


def _bcrypt_safe(password: str) -> str:
	# Truncate password to 72 bytes for bcrypt compatibility
	password_bytes = password.encode('utf-8')
	if len(password_bytes) > 72:
		password_bytes = password_bytes[:72]
	return password_bytes.decode('utf-8', errors='ignore')


def hash_password(password: str) -> str:
	return pwd_context.hash(_bcrypt_safe(password))


def verify_password(plain_password: str, hashed_password: str) -> bool:
	return pwd_context.verify(_bcrypt_safe(plain_password), hashed_password)


def normalize_email(email: str) -> str:
	return (email or "").strip().lower()


def find_user(db: Session, email: str) -> Optional[AuthUser]:
	return db.query(AuthUser).filter(AuthUser.email == normalize_email(email)).first()


def create_user(db: Session, email: str, password: str, display_name: Optional[str] = None) -> AuthUser:
	row = AuthUser(
		uid=uuid.uuid4().hex,
		email=normalize_email(email),
		password_hash=hash_password(password),
		display_name=display_name,
	)
	db.add(row)
	db.commit()
	db.refresh(row)
	return row


def authenticate_user(db: Session, email: str, password: str) -> Optional[AuthUser]:
	row = find_user(db, email)
	if row and verify_password(password, row.password_hash):
		return row
	return None


def grant_admin(db: Session, store: TreeStore, email: str, password: str) -> AuthUser:
	"""Create or find the account for ``email``, set its admin claim and mirror the role profile."""
	row = find_user(db, email)
	if row is None:
		row = create_user(db, email, password)
	row.is_admin = True
	db.add(row)
	db.commit()
	store.write(user_path(row.uid), {"role": ROLE_ADMIN, "email": row.email})
	return row


def profile_role(store: TreeStore, uid: str) -> Optional[str]:
	profile = store.read(user_path(uid))
	if isinstance(profile, dict):
		return profile.get("role")
	return None


def is_admin_identity(store: TreeStore, uid: str, email: Optional[str], claim: bool) -> bool:
	if claim:
		return True
	if settings.admin_email and email and normalize_email(email) == normalize_email(settings.admin_email):
		return True
	return profile_role(store, uid) == ROLE_ADMIN
