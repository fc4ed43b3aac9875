from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.models.user import User


def _user_from_token(token: str, db: Session) -> User:
    """Resolve the identity provider's bearer token to an active user."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    subject = payload.get("sub")
    if subject is None or not str(subject).isdigit():
        raise HTTPException(status_code=401, detail="Invalid token payload")

    user = db.query(User).filter(User.id == int(subject), User.is_active == True).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found or inactive")
    return user


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(settings.bearer_scheme),
    db: Session = Depends(get_db)
):
    return _user_from_token(credentials.credentials, db)


def get_current_admin(
    credentials: HTTPAuthorizationCredentials = Depends(settings.bearer_scheme),
    db: Session = Depends(get_db)
):
    user = _user_from_token(credentials.credentials, db)
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
