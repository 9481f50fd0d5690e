from typing import Annotated, Iterable
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app import database
from app.database import get_db
from app.core.security import verify_access_token
from app.core.permissions import Principal, Role, require_role
from app.services.cache_service import CatalogCache, get_catalog_cache


logger = logging.getLogger(__name__)

# HTTP Bearer security scheme
security = HTTPBearer()


async def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Principal:
    """
    Dependency to get the authenticated caller.
    Validates the JWT token and returns the principal it names.
    """
    principal = verify_access_token(credentials.credentials)

    if principal is None:
        logger.warning("Token verification failed - invalid or expired token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return principal


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency returning the session factory, for jobs that open one transaction per item."""
    return database.async_session_factory


def get_cache() -> CatalogCache:
    """Dependency returning the process-wide catalog cache."""
    return get_catalog_cache()


def require_roles(*roles: Role, action: str = "perform this action"):
    """
    Dependency factory that requires one of the given roles.

    Usage:
        @router.get("/...", dependencies=[Depends(require_roles(Role.STAFF, Role.MANAGER))])
    """
    allowed: Iterable[Role] = frozenset(roles)

    async def role_checker(
        principal: Annotated[Principal, Depends(get_current_principal)],
    ) -> Principal:
        require_role(principal, allowed, action)
        return principal

    return role_checker


# Type aliases for cleaner dependency injection
CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
DB = Annotated[AsyncSession, Depends(get_db)]
Cache = Annotated[CatalogCache, Depends(get_cache)]
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
