from typing import Optional

from fastapi import Cookie, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from firebase_admin import auth
from pydantic import BaseModel

from libs.common.errors import AuthorizationError
from libs.models.conversation import Conversation

SESSION_COOKIE = "adoq_session"


class User(BaseModel):
    uid: str
    email: Optional[str] = None


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    session_token: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE),
) -> User:
    token = token or session_token
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        decoded_token = auth.verify_id_token(token)
    except (ValueError, auth.InvalidIdTokenError, auth.UserDisabledError) as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication credentials: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except auth.CertificateFetchError:
        # Google signing keys could not be fetched, so no token can be verified right now
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable, please retry shortly",
        )

    email = decoded_token.get("email")
    if not email:
        # Conversations are owned by email, so a token without one cannot own anything
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session has no email address",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return User(uid=decoded_token["uid"], email=email.lower())


def ensure_owner(conversation: Conversation, user: User) -> None:
    """Raise AuthorizationError unless ``user`` owns ``conversation``."""
    if (conversation.user_id or "").lower() != (user.email or "").lower():
        raise AuthorizationError()
