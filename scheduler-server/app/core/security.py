"""JWT helpers for operator and device tokens."""
from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.core.clock import utcnow
from app.core.config import get_settings
from app.schemas import TokenData

ROLE_ADMIN = "admin"
ROLE_OPERATOR = "operator"
ROLE_DEVICE = "device"
OPERATOR_ROLES = {ROLE_ADMIN, ROLE_OPERATOR}

settings = get_settings()
security = HTTPBearer()


def create_access_token(subject: str, role: str, expires_delta: Optional[timedelta] = None) -> str:
    expire_delta = expires_delta or timedelta(
        minutes=settings.security.device_token_expire_minutes
        if role == ROLE_DEVICE
        else settings.access_token_expire_minutes
    )
    payload = {
        "sub": subject,
        "role": role,
        "exp": utcnow() + expire_delta,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> TokenData:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="无法验证凭据") from exc

    subject = payload.get("sub")
    role = payload.get("role")
    if not all([subject, role]):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="无法验证凭据")
    return TokenData(subject=subject, role=role)


async def get_current_operator(credentials: HTTPAuthorizationCredentials = Depends(security)) -> TokenData:
    token_data = decode_access_token(credentials.credentials)
    if token_data.role not in OPERATOR_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="需要操作员权限")
    return token_data


async def get_current_device(credentials: HTTPAuthorizationCredentials = Depends(security)) -> str:
    """Return the device id carried by a device token."""
    token_data = decode_access_token(credentials.credentials)
    if token_data.role != ROLE_DEVICE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="需要设备凭据")
    return token_data.subject
