"""
User Directory Module
Looks up users by username, email or alias and checks their passwords

SECURITY STORY: "No such user" and "wrong password" are ordinary None /
False results rather than exceptions, so callers cannot accidentally leak
which of the two happened.
"""

import logging
from typing import Any, Callable, Mapping, Optional

import bcrypt
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from .errors import DirectoryLookupError
from ..utils.sanitization import sanitize_for_logging

logger = logging.getLogger(__name__)

Verifier = Callable[[bytes, bytes], bool]


def _as_bytes(value: Any) -> bytes:
    return value if isinstance(value, bytes) else str(value).encode("utf-8")


class UserDirectory:
    """
    Wraps the users collection

    Args:
        collection: pymongo Collection holding user documents
        server_name: Domain appended to bare usernames
        verifier: ``verifier(candidate, hashed) -> bool``; bcrypt by default
    """

    def __init__(self, collection: Collection, server_name: str,
                 verifier: Verifier = bcrypt.checkpw):
        self.collection = collection
        self.server_name = server_name
        self.verifier = verifier

    def email_for(self, username: str) -> str:
        return username if "@" in username else f"{username}@{self.server_name}"

    def lookup(self, username_or_email: str) -> Optional[Mapping[str, Any]]:
        """
        Find a user by primary email (or bare username) or by alias

        Returns:
            The user document, or None when nothing matches

        Raises:
            DirectoryLookupError: The query itself failed
        """
        query = {"$or": [
            {"email": self.email_for(username_or_email)},
            {"aliases.email": username_or_email},
        ]}
        try:
            user = self.collection.find_one(query)
        except PyMongoError as e:
            raise DirectoryLookupError(f"user lookup failed: {e}") from e
        if user is None:
            logger.debug("No user for '%s'", sanitize_for_logging(username_or_email, 80))
        return user

    def verify_password(self, user: Optional[Mapping[str, Any]],
                        candidate: Optional[str]) -> bool:
        """
        Check a candidate password against the user's stored hash

        Returns False without consulting the verifier when either the user
        or the candidate is missing. Verifier errors propagate unchanged.
        """
        if not user or not candidate:
            return False
        return bool(self.verifier(_as_bytes(candidate), _as_bytes(user.get("password", ""))))
