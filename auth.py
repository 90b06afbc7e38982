"""
Authentication and role gates.

Two ways of proving identity are supported, picked with AUTH_MODE:

- cookie (default): an httpOnly `token` cookie holding a PyJWT token that
  was issued by `/api/generate-token` and lives for one day.
- bearer: `Authorization: Bearer <id token>` checked by the Firebase Admin
  SDK.

Either way the verified principal ends up on `request.state.principal`,
and `require_role` looks its role up in the users collection.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional, Callable, Dict, Any

import jwt
from fastapi import Depends, Request
from pydantic import BaseModel

from database import USERS, get_db
from errors import Unauthenticated, Forbidden, NotFound

logger = logging.getLogger(__name__)

SECRET_KEY = os.getenv("JWT_SECRET", "super-secret-edusync-key")
ALGORITHM = "HS256"
TOKEN_LIFETIME = timedelta(days=1)
COOKIE_NAME = "token"
AUTH_MODE = os.getenv("AUTH_MODE", "cookie").strip().lower()


class Principal(BaseModel):
    email: str
    uid: Optional[str] = None
    role: Optional[str] = None


# ---------- Tokens ----------

def create_access_token(email: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or TOKEN_LIFETIME)
    return jwt.encode({"email": email, "exp": expire}, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Principal:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthenticated("Invalid token")
    email = payload.get("email")
    if not email:
        raise Unauthenticated("Invalid token payload")
    return Principal(email=email)


# ---------- Verifiers ----------

class CookieTokenVerifier:
    def __call__(self, request: Request) -> Principal:
        token = request.cookies.get(COOKIE_NAME)
        if not token:
            raise Unauthenticated("Unauthorized access!")
        return decode_access_token(token)


def firebase_verify_id_token(token: str) -> Dict[str, Any]:
    """Return the claims of a Firebase ID token, raising ValueError when the token is rejected.

    Setup problems (missing SDK or credentials, unreachable key server) are
    not rejections and propagate unchanged.
    """
    import firebase_admin
    from firebase_admin import auth as firebase_auth

    try:
        firebase_admin.get_app()
    except ValueError:
        firebase_admin.initialize_app()

    try:
        return firebase_auth.verify_id_token(token)
    except (
        firebase_auth.InvalidIdTokenError,
        firebase_auth.ExpiredIdTokenError,
        firebase_auth.RevokedIdTokenError,
        firebase_auth.UserDisabledError,
    ) as exc:
        raise ValueError(str(exc)) from exc


class BearerTokenVerifier:
    """Delegates to an identity provider.

    `provider(token)` returns the token claims or raises ValueError to reject
    it. Any other exception is a server fault and is not turned into a 403.
    """

    def __init__(self, provider: Optional[Callable[[str], Dict[str, Any]]] = None):
        self.provider = provider or firebase_verify_id_token

    def __call__(self, request: Request) -> Principal:
        header = request.headers.get("Authorization") or ""
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise Unauthenticated("Missing or malformed authorization header")
        try:
            claims = self.provider(token.strip())
        except ValueError as exc:
            logger.info("Identity provider rejected token: %s", type(exc).__name__)
            raise Forbidden("Invalid identity token")
        email = (claims or {}).get("email")
        if not email:
            raise Forbidden("Identity token carries no email")
        return Principal(email=email, uid=claims.get("uid"))


_verifier = BearerTokenVerifier() if AUTH_MODE == "bearer" else CookieTokenVerifier()


def get_verifier():
    return _verifier


def get_principal(request: Request, verifier=Depends(get_verifier)) -> Principal:
    principal = verifier(request)
    request.state.principal = principal
    return principal


# ---------- Roles ----------

def resolve_role(db, email: str) -> str:
    user = db[USERS].find_one({"email": email}, {"role": 1})
    if not user:
        raise NotFound("User not found")
    return user.get("role")


def require_role(role: str):
    def _role_dep(principal: Principal = Depends(get_principal), db=Depends(get_db)) -> Principal:
        current = resolve_role(db, principal.email)
        if current != role:
            logger.info("Denied %s: role %s, needs %s", principal.email, current, role)
            raise Forbidden(f"Access denied - {role} privileges required")
        return principal.model_copy(update={"role": current})
    return _role_dep


require_student = require_role("student")
require_tutor = require_role("tutor")
require_admin = require_role("admin")


def ensure_same_identity(claimed: Optional[str], principal: Principal) -> None:
    """A client-asserted email must be the verified one."""
    if claimed != principal.email:
        raise Forbidden("Email does not match the authenticated user")
