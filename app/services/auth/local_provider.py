"""Local password/session-cookie authentication provider."""
from datetime import datetime, timezone
from typing import Optional

import bcrypt
from fastapi import Request
from sqlalchemy.orm import Session as DBSession

from app.config import settings
from app.models.user import User
from app.models.session import Session
from app.services.auth.base import AuthProvider


class LocalAuthProvider(AuthProvider):
    """
    Local authentication provider using password hashing and database sessions.

    Passwords are hashed with bcrypt. Sessions are stored in database with
    secure random tokens.
    """

    def _hash_password(self, password: str) -> str:
        """Hash a password using bcrypt."""
        return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

    async def get_user_from_request(self, db: DBSession, request: Request) -> Optional[User]:
        """Extract user from session cookie."""
        token = request.cookies.get(settings.session_cookie_name)
        if not token:
            return None

        # Find valid session
        now = datetime.now(timezone.utc)
        session = db.query(Session).filter(
            Session.token == token,
            Session.expires_at > now
        ).first()

        if not session:
            return None

        return session.user

    def get_user_by_email(self, db: DBSession, email: str) -> Optional[User]:
        return db.query(User).filter(User.email == email.lower()).first()

    def create_user(
        self,
        db: DBSession,
        email: str,
        password: str,
        name: Optional[str] = None,
    ) -> User:
        """Create a new user with hashed password."""
        user = User(
            email=email.lower(),
            name=name,
            password_hash=self._hash_password(password),
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user


# Singleton instance
local_auth_provider = LocalAuthProvider()
