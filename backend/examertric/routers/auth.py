from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Depends
from fastapi.security import OAuth2PasswordRequestForm, OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..accounts import (
	ROLE_EXAM_TAKER,
	authenticate_user,
	create_user,
	find_user,
	is_admin_identity,
	normalize_email,
)
from ..errors import Forbidden, Unauthenticated
from ..schemas import Principal
from ..services import Services, get_db, get_services
from ..settings import settings
from ..store import TreeStore, user_path

router = APIRouter(prefix="/auth", tags=["auth"])

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


class Token(BaseModel):
	access_token: str
	token_type: str = "bearer"


class User(BaseModel):
	uid: str
	email: Optional[str] = None
	is_admin: bool = False


class SignupRequest(BaseModel):
	email: str
	password: str
	name: Optional[str] = None


def _resolve_expiry(expires_delta: Optional[timedelta]) -> datetime:
	delta = expires_delta
	if delta is None:
		minutes = settings.access_token_expire_minutes
		delta = timedelta(minutes=minutes) if minutes > 0 else timedelta(days=30)
	return datetime.now(timezone.utc) + delta


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
	to_encode = data.copy()
	to_encode.update({"exp": _resolve_expiry(expires_delta)})
	return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def verify_token(token: Optional[str], store: Optional[TreeStore] = None) -> Principal:
	"""Decode a bearer token into a Principal; the profile role can also grant admin."""
	if not token:
		raise Unauthenticated("Missing bearer token")
	try:
		payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
	except JWTError:
		raise Unauthenticated("Could not validate credentials")
	uid: Optional[str] = payload.get("sub")
	if not uid:
		raise Unauthenticated("Could not validate credentials")
	email = payload.get("email")
	claim = bool(payload.get("admin"))
	if store is not None:
		is_admin = is_admin_identity(store, uid, email, claim)
	else:
		is_admin = claim
	return Principal(uid=uid, email=email, is_admin=is_admin, token=token)


def get_current_principal(token: str = Depends(oauth2_scheme), services: Services = Depends(get_services)) -> Principal:
	return verify_token(token, services.store)


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
	if not principal.is_admin:
		raise Forbidden("Administrator access required")
	return principal


@router.post("/signup", status_code=201, response_model=Token)
async def signup(req: SignupRequest, db: Session = Depends(get_db), services: Services = Depends(get_services)):
	email = normalize_email(req.email)
	password = req.password or ""
	if not email or "@" not in email:
		raise HTTPException(status_code=400, detail="a valid email is required")
	if len(password) < 6:
		raise HTTPException(status_code=400, detail="password must be at least 6 characters")
	if find_user(db, email):
		raise HTTPException(status_code=409, detail="email already registered")
	row = create_user(db, email, password, display_name=(req.name or "").strip() or None)
	services.store.write(user_path(row.uid), {"role": ROLE_EXAM_TAKER, "email": row.email, "name": row.display_name})
	return Token(access_token=create_access_token({"sub": row.uid, "email": row.email, "admin": False}))


@router.post("/token", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
	# The OAuth2 form calls it username; accounts are keyed by email
	user = authenticate_user(db, form_data.username, form_data.password)
	if not user:
		raise HTTPException(status_code=401, detail="Incorrect email or password")
	access_token = create_access_token({"sub": user.uid, "email": user.email, "admin": bool(user.is_admin)})
	return Token(access_token=access_token)


@router.get("/me", response_model=User)
async def me(principal: Principal = Depends(get_current_principal)):
	return User(uid=principal.uid, email=principal.email, is_admin=principal.is_admin)
