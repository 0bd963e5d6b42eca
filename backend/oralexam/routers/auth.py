from datetime import datetime, timedelta, timezone
from typing import Optional
import uuid

from fastapi import APIRouter, HTTPException, Depends
from fastapi.security import OAuth2PasswordRequestForm, OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
import logging

from ..settings import settings
from sqlalchemy.orm import Session
from ..db import get_db
from ..models import AuthSession, Student, Supervisor, utcnow

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)

logging.getLogger('passlib').setLevel(logging.ERROR)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/student/token")

ROLE_STUDENT = "student"
ROLE_SUPERVISOR = "supervisor"


class Token(BaseModel):
	access_token: str
	token_type: str = "bearer"
	role: str


class Principal(BaseModel):
	id: int
	role: str
	username: str
	full_name: Optional[str] = None


def _bcrypt_safe(password: str) -> str:
	# bcrypt only looks at the first 72 bytes
	password_bytes = (password or "").encode('utf-8')
	if len(password_bytes) > 72:
		password_bytes = password_bytes[:72]
	return password_bytes.decode('utf-8', errors='ignore')


def hash_password(password: str) -> str:
	return pwd_context.hash(_bcrypt_safe(password))


def verify_password(plain_password: str, hashed_password: str) -> bool:
	return pwd_context.verify(_bcrypt_safe(plain_password), hashed_password)


def ensure_seed_supervisor(db: Session) -> None:
	username = settings.seed_supervisor_username
	password = settings.seed_supervisor_password
	if not username or not password:
		return
	if db.query(Supervisor).filter(Supervisor.username == username).first():
		return
	db.add(Supervisor(username=username, full_name=username, password_hash=hash_password(password)))
	db.commit()
	logger.info("Seeded supervisor account %s", username)


def _resolve_expiry(expires_delta: Optional[timedelta]) -> datetime:
	delta = expires_delta
	if delta is None:
		minutes = getattr(settings, "access_token_expire_minutes", None)
		if isinstance(minutes, int) and minutes > 0:
			delta = timedelta(minutes=minutes)
		else:
			delta = timedelta(days=7)
	now = datetime.now(timezone.utc)
	try:
		return now + delta
	except OverflowError:
		# Cap at far future but within datetime bounds
		return datetime.max.replace(tzinfo=timezone.utc)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
	to_encode = data.copy()
	expire = _resolve_expiry(expires_delta)
	to_encode.update({"exp": expire})
	encoded_jwt = jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
	return encoded_jwt


def _issue_token(db: Session, principal: Principal) -> Token:
	# Persist the session id (jti) server-side so logout can revoke it
	session_id = uuid.uuid4().hex
	access_token = create_access_token({
		"sub": str(principal.id),
		"role": principal.role,
		"name": principal.username,
		"jti": session_id,
	})
	db.add(AuthSession(session_id=session_id, subject=str(principal.id), role=principal.role))
	db.commit()
	return Token(access_token=access_token, role=principal.role)


@router.post("/student/token", response_model=Token)
async def student_login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
	student = db.query(Student).filter(Student.student_code == form_data.username.strip()).first()
	if not student or not verify_password(form_data.password, student.password_hash):
		raise HTTPException(status_code=401, detail="Incorrect student code or password")
	principal = Principal(id=student.id, role=ROLE_STUDENT, username=student.student_code, full_name=student.full_name)
	return _issue_token(db, principal)


@router.post("/supervisor/token", response_model=Token)
async def supervisor_login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
	ensure_seed_supervisor(db)
	supervisor = db.query(Supervisor).filter(Supervisor.username == form_data.username.strip()).first()
	if not supervisor or not verify_password(form_data.password, supervisor.password_hash):
		raise HTTPException(status_code=401, detail="Incorrect username or password")
	principal = Principal(id=supervisor.id, role=ROLE_SUPERVISOR, username=supervisor.username, full_name=supervisor.full_name)
	return _issue_token(db, principal)


def decode_token(token: str, db: Session) -> Principal:
	"""Validate ``token`` against its signature and the session table."""
	credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
	try:
		payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
		subject: str | None = payload.get("sub")
		role: str | None = payload.get("role")
		jti: str | None = payload.get("jti")
		if subject is None or jti is None or role not in (ROLE_STUDENT, ROLE_SUPERVISOR):
			raise credentials_exception
	except JWTError:
		raise credentials_exception
	row = db.get(AuthSession, jti)
	if not row or row.subject != subject or row.role != role:
		raise credentials_exception
	row.last_activity_at = utcnow()
	db.add(row)
	db.commit()
	return Principal(id=int(subject), role=role, username=payload.get("name") or subject)


def get_current_principal(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> Principal:
	return decode_token(token, db)


def require_student(principal: Principal = Depends(get_current_principal)) -> Principal:
	if principal.role != ROLE_STUDENT:
		raise HTTPException(status_code=403, detail="Student access required")
	return principal


def require_supervisor(principal: Principal = Depends(get_current_principal)) -> Principal:
	if principal.role != ROLE_SUPERVISOR:
		raise HTTPException(status_code=403, detail="Supervisor access required")
	return principal


@router.get("/me", response_model=Principal)
async def me(principal: Principal = Depends(get_current_principal)):
	return principal


@router.post("/logout")
async def logout(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)):
	try:
		payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
	except JWTError:
		raise HTTPException(status_code=401, detail="Could not validate credentials")
	row = db.get(AuthSession, payload.get("jti"))
	if row is not None:
		db.delete(row)
		db.commit()
	return {"ok": True}
