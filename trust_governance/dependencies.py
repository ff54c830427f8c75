"""
FastAPI dependencies for the Trust & Governance service
"""
from typing import Callable, Generator, Optional
from fastapi import Depends, Header
from sqlalchemy.orm import Session
from trust_governance.db.database import SessionLocal
from trust_governance.db.models import User
from trust_governance.config import settings
from trust_governance.errors import AuthenticationRequired, AuthorizationDenied


def get_db() -> Generator[Session, None, None]:
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    x_user_id: Optional[str] = Header(None),
    db: Session = Depends(get_db)
) -> User:
    """Resolve the caller from the identity header; the role always comes from the store"""
    if not x_user_id:
        raise AuthenticationRequired()
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise AuthenticationRequired()

    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_active:
        raise AuthenticationRequired()
    return user


def require_roles(*roles: str) -> Callable[..., User]:
    """Dependency factory restricting an endpoint to the given roles"""
    def checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise AuthorizationDenied()
        return user
    return checker


async def verify_api_key(x_api_key: Optional[str] = Header(None)) -> str:
    """Verify API key for internal endpoints"""
    if not x_api_key or x_api_key != settings.API_KEY:
        raise AuthenticationRequired("Invalid or missing API key")
    return x_api_key
