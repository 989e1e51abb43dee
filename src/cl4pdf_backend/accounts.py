import hashlib
import logging
import secrets
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional
from uuid import uuid4

from .database import connect, deserialize_datetime, serialize_datetime
from .models import SubscriptionTier, User
from .utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = timedelta(days=7)


class AccountStore:
    """
    User profiles, bearer sessions and usage counters in SQLite.

    Stands in for the hosted identity service: tokens are stored only as
    SHA-256 hashes, and usage counters are changed with single conditional
    UPDATE statements so concurrent requests cannot overshoot a limit.
    """

    def __init__(
        self,
        db_path: Path,
        free_usage_limit: int = 10,
        unlimited_usage: int = -1,
        clock: Callable = utc_now,
    ):
        self.db_path = Path(db_path)
        self.free_usage_limit = free_usage_limit
        self.unlimited_usage = unlimited_usage
        self._clock = clock
        self._init_db()

    def _init_db(self):
        """Initialize the database schema if it doesn't exist."""
        with connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT UNIQUE NOT NULL,
                    full_name TEXT,
                    subscription_tier TEXT NOT NULL DEFAULT 'free',
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    usage_limit INTEGER NOT NULL,
                    is_active BOOLEAN NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS user_sessions (
                    id TEXT PRIMARY KEY,
                    token_hash TEXT UNIQUE NOT NULL,
                    user_id TEXT NOT NULL REFERENCES users(id),
                    expires_at TEXT NOT NULL,
                    is_active BOOLEAN NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            """)

    def _hash_token(self, token: str) -> str:
        """SHA-256 hash of a session token."""
        return hashlib.sha256(token.encode()).hexdigest()

    def create_user(
        self,
        email: str,
        full_name: Optional[str] = None,
        subscription_tier: SubscriptionTier = SubscriptionTier.FREE,
        usage_limit: Optional[int] = None,
        usage_count: int = 0,
    ) -> User:
        """Create a user; free accounts get the free limit, paid ones are unlimited."""
        if usage_limit is None:
            usage_limit = (
                self.free_usage_limit
                if subscription_tier == SubscriptionTier.FREE
                else self.unlimited_usage
            )
        user = User(
            id=str(uuid4()),
            email=email,
            full_name=full_name,
            subscription_tier=subscription_tier,
            usage_count=usage_count,
            usage_limit=usage_limit,
        )
        with connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO users (id, email, full_name, subscription_tier, usage_count, usage_limit, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                user.id,
                user.email,
                user.full_name,
                user.subscription_tier.value,
                user.usage_count,
                user.usage_limit,
                serialize_datetime(self._clock()),
            ))
        return user

    def create_session(self, user_id: str, ttl: timedelta = DEFAULT_SESSION_TTL) -> str:
        """
        Open a session for a user.

        Returns:
            The raw bearer token. Only its hash is stored, so this is the
            only time it is available.
        """
        raw_token = f"cl4_{secrets.token_urlsafe(32)}"
        now = self._clock()
        with connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO user_sessions (id, token_hash, user_id, expires_at, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (
                str(uuid4()),
                self._hash_token(raw_token),
                user_id,
                serialize_datetime(now + ttl),
                serialize_datetime(now),
            ))
        return raw_token

    def authenticate(self, token: str) -> Optional[User]:
        """
        Resolve a bearer token to its user.

        Returns None for unknown, revoked or expired sessions; an expired
        session is deactivated on the way out. Deactivated users are still
        returned so the caller can tell them apart.
        """
        if not token:
            return None

        with connect(self.db_path) as conn:
            session = conn.execute(
                "SELECT * FROM user_sessions WHERE token_hash = ? AND is_active = 1",
                (self._hash_token(token),),
            ).fetchone()
            if not session:
                return None

            if deserialize_datetime(session["expires_at"]) < self._clock():
                conn.execute("UPDATE user_sessions SET is_active = 0 WHERE id = ?", (session["id"],))
                logger.info(f"Session {session['id']} expired")
                return None

            row = conn.execute("SELECT * FROM users WHERE id = ?", (session["user_id"],)).fetchone()
            return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with connect(self.db_path) as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return self._row_to_user(row) if row else None

    def set_active(self, user_id: str, is_active: bool) -> bool:
        with connect(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE users SET is_active = ? WHERE id = ?", (int(is_active), user_id)
            )
            return cursor.rowcount > 0

    def reserve_usage(self, user_id: str) -> bool:
        """
        Atomically take one unit of quota if the user is below their limit.

        Check and increment are a single statement, so two concurrent
        requests cannot both take the last unit. Returns True when a unit
        was reserved.
        """
        with connect(self.db_path) as conn:
            cursor = conn.execute("""
                UPDATE users SET usage_count = usage_count + 1
                WHERE id = ? AND (usage_limit = ? OR usage_count < usage_limit)
            """, (user_id, self.unlimited_usage))
            return cursor.rowcount > 0

    def release_usage(self, user_id: str) -> None:
        """Give back a unit taken by reserve_usage for a job that failed."""
        with connect(self.db_path) as conn:
            conn.execute(
                "UPDATE users SET usage_count = usage_count - 1 WHERE id = ? AND usage_count > 0",
                (user_id,),
            )

    def increment_usage(self, user_id: str) -> None:
        """Count one completed operation, without any limit check."""
        with connect(self.db_path) as conn:
            conn.execute(
                "UPDATE users SET usage_count = usage_count + 1 WHERE id = ?", (user_id,)
            )

    def _row_to_user(self, row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            full_name=row["full_name"],
            subscription_tier=SubscriptionTier(row["subscription_tier"]),
            usage_count=row["usage_count"],
            usage_limit=row["usage_limit"],
            is_active=bool(row["is_active"]),
        )
