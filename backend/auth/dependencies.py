import logging

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import SQLAlchemyError

from backend.auth import jwt_handler
from backend.database import SessionLocal
from backend.models.user import ADMIN_ROLE, User
from backend.routes.common import database_unavailable

logger = logging.getLogger(__name__)

security = HTTPBearer()


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> User:
    try:
        payload = jwt_handler.decode_access_token(credentials.credentials)
        email, token_role = jwt_handler.token_identity(payload)
    except jwt.InvalidTokenError as exc:
        logger.info('Rejected bearer token: %s', exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
        if user is not None:
            db.expunge(user)
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc
    finally:
        db.close()

    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    if token_role and token_role != user.role:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token role does not match user")
    return user


def require_role(user: User, *roles: str, detail: str | None = None) -> None:
    if user.role not in roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail or f"Only {' or '.join(roles)} users can do this.",
        )


def is_admin(user: User) -> bool:
    return user.role == ADMIN_ROLE
