from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from jose import JWTError, jwt
import structlog

from ca_engine.core.config import settings
from ca_engine.core.database import get_db
from ca_engine.corporate_actions.service import CorporateActionEngine


security = HTTPBearer(auto_error=False)
logger = structlog.get_logger("dependencies")


async def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """Identity recorded as applied_by / reversed_by, taken from the JWT subject"""

    if not settings.AUTH_ENABLED:
        return settings.DEFAULT_APPLIED_BY

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise credentials_exception

    try:
        payload = jwt.decode(credentials.credentials, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        subject: Optional[str] = payload.get("sub")
        if subject is None:
            logger.warning("JWT payload has no subject")
            raise credentials_exception
    except JWTError as e:
        logger.warning("JWT decoding failed", error=str(e))
        raise credentials_exception

    return subject


async def get_engine(db: AsyncSession = Depends(get_db)) -> CorporateActionEngine:
    return CorporateActionEngine(db)
