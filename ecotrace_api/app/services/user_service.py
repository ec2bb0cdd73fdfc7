"""
Business logic for users.

Users are stored in the ``users`` table.  Authentication is handled
outside this service; it only keeps the profile data that dashboards
and leaderboards display.
"""

import logging
import sqlite3
from typing import List, Optional

from ecotrace_api.app.core.db import get_connection
from ecotrace_api.app.core.timeutils import to_iso
from ecotrace_api.app.schemas.user import UserCreate, UserRead

logger = logging.getLogger(__name__)


def _row_to_user(row) -> UserRead:
    return UserRead(
        id=row["id"],
        username=row["username"],
        email=row["email"],
        github_id=row["github_id"],
        created_at=row["created_at"],
    )


class UserService:
    """Service class for user profiles."""

    @classmethod
    async def create_user(cls, data: UserCreate) -> UserRead:
        """Create a new user.

        Raises
        ------
        ValueError
            If a user with the same id or username already exists.
        """
        logger.info("Registering user %s (%s)", data.id, data.username)
        created_at = to_iso()
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO users (id, username, email, github_id, created_at) VALUES (?, ?, ?, ?, ?)",
                (data.id, data.username, data.email, data.github_id, created_at),
            )
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise ValueError(f"User {data.id} or username {data.username} already exists") from None
        finally:
            conn.close()
        return UserRead(**data.model_dump(), created_at=created_at)

    @classmethod
    async def get_user(cls, user_id: str) -> Optional[UserRead]:
        conn = get_connection()
        try:
            row = conn.execute(
                "SELECT id, username, email, github_id, created_at FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
        finally:
            conn.close()
        return _row_to_user(row) if row else None

    @classmethod
    async def list_users(cls, limit: int = 100, offset: int = 0) -> List[UserRead]:
        """Return users ordered by username."""
        conn = get_connection()
        try:
            rows = conn.execute(
                "SELECT id, username, email, github_id, created_at FROM users "
                "ORDER BY username LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_user(row) for row in rows]

    @classmethod
    async def get_usernames(cls, user_ids: List[str]) -> dict:
        """Map user ids to usernames; unknown ids are omitted."""
        if not user_ids:
            return {}
        placeholders = ", ".join("?" for _ in user_ids)
        conn = get_connection()
        try:
            rows = conn.execute(
                f"SELECT id, username FROM users WHERE id IN ({placeholders})",
                tuple(user_ids),
            ).fetchall()
        finally:
            conn.close()
        return {row["id"]: row["username"] for row in rows}
