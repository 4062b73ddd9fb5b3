import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from fastapi import APIRouter, HTTPException, Depends, Request
from fastapi.security import OAuth2PasswordRequestForm, OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..cefr import LEVELS
from ..settings import settings
from ..db import get_db
from ..models import AuthUser, AuthSession

router = APIRouter(prefix="/auth", tags=["auth"])

logger = logging.getLogger(__name__)
logging.getLogger('passlib').setLevel(logging.ERROR)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


class Token(BaseModel):
	access_token: str
	token_type: str = "bearer"
	expires_at: Optional[datetime] = None


class User(BaseModel):
	username: str
	role: str = "user"
	session_id: Optional[str] = None

	@property
	def is_admin(self) -> bool:
		return self.role == "admin"


def _truncate_password(password: str) -> str:
	# bcrypt only considers the first 72 bytes
	password_bytes = password.encode('utf-8')
	if len(password_bytes) > 72:
		password_bytes = password_bytes[:72]
	return password_bytes.decode('utf-8', errors='ignore')


def hash_password(password: str) -> str:
	return pwd_context.hash(_truncate_password(password))


def verify_password(plain_password: str, hashed_password: str) -> bool:
	return pwd_context.verify(_truncate_password(plain_password), hashed_password)


def _role_for(row: AuthUser) -> str:
	if row.username in settings.admin_set:
		return "admin"
	return row.role or "user"


def authenticate_user(db: Session, username: str, password: str) -> Optional[AuthUser]:
	row = db.get(AuthUser, username)
	if row and verify_password(password, row.password_hash):
		return row
	return None


def _resolve_expiry(expires_delta: Optional[timedelta]) -> datetime:
	delta = expires_delta
	if delta is None:
		minutes = settings.access_token_expire_minutes
		delta = timedelta(minutes=minutes) if minutes > 0 else timedelta(days=30)
	return datetime.now(timezone.utc) + delta


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> Tuple[str, datetime]:
	to_encode = data.copy()
	expire = _resolve_expiry(expires_delta)
	to_encode.update({"exp": expire})
	encoded_jwt = jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
	return encoded_jwt, expire


def terminate_sessions(db: Session, username: str, reason: str, keep: Optional[str] = None) -> int:
	"""Deactivate every active session of ``username`` except ``keep``. Does not commit."""
	now = datetime.utcnow()
	query = db.query(AuthSession).filter(AuthSession.username == username, AuthSession.is_active.is_(True))
	if keep:
		query = query.filter(AuthSession.session_id != keep)
	count = 0
	for row in query.all():
		row.is_active = False
		row.terminated_at = now
		row.termination_reason = reason
		count += 1
	return count


class SessionInvalid(Exception):
	def __init__(self, reason: str, message: str) -> None:
		super().__init__(message)
		self.reason = reason
		self.message = message


def resolve_session(db: Session, token: Optional[str]) -> AuthSession:
	"""Return the live session behind ``token`` or raise SessionInvalid."""
	if not token:
		raise SessionInvalid("no_token", "Not authenticated")
	try:
		payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
	except JWTError:
		raise SessionInvalid("validation_error", "Could not validate credentials")
	username = payload.get("sub")
	jti = payload.get("jti")
	if not username or not jti:
		raise SessionInvalid("validation_error", "Could not validate credentials")
	row = db.get(AuthSession, jti)
	if row is None or row.username != username or not row.is_active:
		raise SessionInvalid("session_terminated", "Session is no longer valid")
	now = datetime.utcnow()
	if row.expires_at is not None and row.expires_at <= now:
		row.is_active = False
		row.terminated_at = now
		row.termination_reason = "expired"
		db.commit()
		raise SessionInvalid("session_terminated", "Session is no longer valid")
	return row


@router.post("/token", response_model=Token)
async def login(request: Request, form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
	user = authenticate_user(db, form_data.username, form_data.password)
	if not user:
		raise HTTPException(status_code=401, detail="Incorrect username or password")
	session_id = uuid.uuid4().hex
	access_token, expires = create_access_token({"sub": user.username, "jti": session_id})
	if settings.single_session_per_user:
		replaced = terminate_sessions(db, user.username, "concurrent_login")
		if replaced:
			logger.info("Login for %s replaced %s active session(s)", user.username, replaced)
	db.add(AuthSession(
		session_id=session_id,
		username=user.username,
		user_agent=(request.headers.get("user-agent") or "")[:512],
		expires_at=expires.replace(tzinfo=None),
	))
	db.commit()
	return Token(access_token=access_token, expires_at=expires)


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
	try:
		row = resolve_session(db, token)
	except SessionInvalid as e:
		raise HTTPException(status_code=401, detail=e.message, headers={"WWW-Authenticate": "Bearer"})
	user_row = db.get(AuthUser, row.username)
	if user_row is None:
		raise HTTPException(status_code=401, detail="Could not validate credentials")
	row.last_activity_at = datetime.utcnow()
	db.commit()
	return User(username=row.username, role=_role_for(user_row), session_id=row.session_id)


def require_admin(user: User = Depends(get_current_user)) -> User:
	if not user.is_admin:
		raise HTTPException(status_code=403, detail="Admin access required")
	return user


@router.get("/me", response_model=User)
async def me(user: User = Depends(get_current_user)):
	return user


@router.post("/logout")
async def logout(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = db.get(AuthSession, user.session_id)
	if row is not None:
		row.is_active = False
		row.terminated_at = datetime.utcnow()
		row.termination_reason = "logout"
		db.commit()
	return {"ok": True}


class RegisterRequest(BaseModel):
	username: str
	password: str
	email: str
	display_name: Optional[str] = None
	cefr_level: Optional[str] = None


@router.post("/register", status_code=201)
async def register(req: RegisterRequest, db: Session = Depends(get_db)):
	username = (req.username or "").strip()
	password = req.password or ""
	email = (req.email or "").strip()
	if not username or not password:
		raise HTTPException(status_code=400, detail="username and password are required")
	if not email or "@" not in email:
		raise HTTPException(status_code=400, detail="a valid email is required")
	if len(username) < 3 or len(username) > 128:
		raise HTTPException(status_code=400, detail="username must be 3-128 characters")
	if len(password) < 6:
		raise HTTPException(status_code=400, detail="password must be at least 6 characters")
	level = (req.cefr_level or "").strip().upper() or None
	if level is not None and level not in LEVELS:
		raise HTTPException(status_code=400, detail=f"cefr_level must be one of {LEVELS}")
	if db.get(AuthUser, username) is not None:
		raise HTTPException(status_code=409, detail="username already exists")
	row = AuthUser(
		username=username,
		password_hash=hash_password(password),
		email=email,
		display_name=(req.display_name or "").strip() or None,
		cefr_level=level,
	)
	db.add(row)
	db.commit()
	logger.info("Registered user %s", username)
	return {"ok": True}
