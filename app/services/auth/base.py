"""Abstract base class for authentication providers."""
from abc import ABC, abstractmethod
from typing import Optional

from fastapi import Request
from sqlalchemy.orm import Session as DBSession

from app.models.user import User


class AuthProvider(ABC):
    """
    Abstract authentication provider interface.

    Login itself is handled by the account service; export routes only need
    to resolve the caller and look owners up by email.
    """

    @abstractmethod
    async def get_user_from_request(self, db: DBSession, request: Request) -> Optional[User]:
        """
        Extract and validate user from request (session cookie, OAuth token, etc).

        Returns User if authenticated, None otherwise.
        """
        pass

    @abstractmethod
    def get_user_by_email(self, db: DBSession, email: str) -> Optional[User]:
        """Look up an account by email (case-insensitive)."""
        pass

    @abstractmethod
    def create_user(
        self,
        db: DBSession,
        email: str,
        password: str,
        name: Optional[str] = None,
    ) -> User:
        """
        Create a new user with the given credentials.

        Returns the created User.
        """
        pass
