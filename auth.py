from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Query
from fastapi.security import OAuth2PasswordBearer
from passlib.context import CryptContext

from config import settings
from errors import InvalidIdentity
from identity import OwnerRef, resolve_identity

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # Unrecognized or corrupt stored hash
        return False


def create_token(data: dict, expires_minutes: int = 60 * 24):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _seller_from_token(token: Optional[str]) -> OwnerRef:
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Could not validate credentials")
    user_id = payload.get("sub") or payload.get("userId")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    try:
        return resolve_identity(user_id)
    except InvalidIdentity:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_seller(token: Optional[str] = Depends(oauth2_scheme)) -> OwnerRef:
    return _seller_from_token(token)


def get_stream_seller(
    token: Optional[str] = Depends(oauth2_scheme),
    query_token: Optional[str] = Query(default=None, alias="token"),
) -> OwnerRef:
    # EventSource cannot send headers, so the stream also takes ?token=
    return _seller_from_token(token or query_token)
