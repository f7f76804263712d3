import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

import config
import database
from errors import Forbidden, InvalidCredentials, Unauthenticated
from policy import Identity, Role

logger = logging.getLogger("school_records.auth")

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# auto_error is off so a missing header maps to our own 401 body
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)

ACCESS_TOKEN_EXPIRE_MINUTES = config.ACCESS_TOKEN_EXPIRE_MINUTES
PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*()"


def get_password_hash(password):
    return pwd_context.hash(password)


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def generate_password(length=12):
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def get_user_by_username(db: Session, username: str):
    return db.query(database.User).filter(database.User.username == username).first()


def authenticate_user(db: Session, username: str, password: str):
    user = get_user_by_username(db, username)
    if not user or not verify_password(password, user.hashed_password):
        return None
    return user


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def token_for(user):
    return create_access_token({"sub": str(user.id), "role": user.role})


def identity_from_token(token: str) -> Identity:
    """Verify a bearer token and turn its claims into an Identity.

    The token is trusted as issued: no database lookup happens here.
    """
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        return Identity(id=int(payload["sub"]), role=Role(payload["role"]))
    except (JWTError, KeyError, ValueError, TypeError) as e:
        logger.info("Rejected bearer token: %s", e)
        raise InvalidCredentials()


def get_current_identity(token: Optional[str] = Depends(oauth2_scheme)) -> Identity:
    if not token:
        raise Unauthenticated()
    return identity_from_token(token)


def require_roles(*roles: Role):
    """Dependency factory: reject callers whose role is not in ``roles``."""
    allowed = frozenset(roles)

    def dependency(identity: Identity = Depends(get_current_identity)) -> Identity:
        if identity.role not in allowed:
            raise Forbidden()
        return identity

    return dependency
