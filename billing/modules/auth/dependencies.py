"""
Dependencias de autenticación para FastAPI.

La identidad la emite un proveedor externo; aquí solo se verifica el JWT y se
resuelve la empresa (tenant) a la que pertenece el usuario.
"""
from typing import Annotated
from uuid import UUID
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
import jwt
import logging

from billing.database.database import get_db
from billing.modules.auth.schemas import AuthContext
from billing.modules.company.models import Company
from billing.core.config import settings

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer()


def decode_access_token(token: str) -> dict:
    options = {"verify_aud": settings.AUTH_AUDIENCE is not None}
    return jwt.decode(
        token,
        settings.APP_SECRET_STRING,
        algorithms=[settings.ALGORITHM],
        audience=settings.AUTH_AUDIENCE,
        options=options,
    )


def get_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> AuthContext:
    """
    Obtener contexto de autenticación completo con tenant.
    Requiere el header X-Company-ID (validado por TenantMiddleware).
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="No se pudieron validar las credenciales",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_access_token(credentials.credentials)
        user_id = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except jwt.PyJWTError as e:
        logger.debug(f"Token rejected: {e}")
        raise credentials_exception

    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        try:
            tenant_id = UUID(request.headers.get("X-Company-ID", ""))
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="ID de empresa inválido"
            )

    company = db.query(Company).filter(
        Company.id == tenant_id,
        Company.owner_id == str(user_id),
        Company.is_active == True
    ).first()
    if company is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No tienes acceso a esta empresa"
        )

    return AuthContext(
        user_id=str(user_id),
        email=payload.get("email"),
        name=payload.get("name") or payload.get("email"),
        tenant_id=company.id
    )


AuthContextDep = Annotated[AuthContext, Depends(get_auth_context)]
