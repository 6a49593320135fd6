"""FastAPI dependencies for the API layer."""

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.errors import UnauthenticatedError
from app.core.security import subject_from_token
from app.database import get_db
from app.models import UserRef
from app.services.store import MatchmakingStore

bearer_scheme = HTTPBearer(auto_error=False)


def get_store(db: Session = Depends(get_db)) -> MatchmakingStore:
    return MatchmakingStore(db)


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> UserRef:
    """Retrieve the caller's user reference from the bearer token."""

    if credentials is None or not credentials.credentials:
        raise UnauthenticatedError()
    return get_user_from_token(credentials.credentials, db)


def get_user_from_token(token: str, db: Session) -> UserRef:
    """Resolve a user reference from a bearer token or raise ``UnauthenticatedError``."""

    user = db.get(UserRef, subject_from_token(token))
    if user is None:
        raise UnauthenticatedError()
    return user
