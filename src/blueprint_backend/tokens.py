import hashlib
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple
from uuid import uuid4

from .database import Database, serialize_datetime
from .utils import utcnow


@dataclass
class ActorToken:
    id: str
    actor: str
    prefix: str
    is_active: bool
    created_at: str


class TokenManager:
    """
    Resolves bearer tokens to actor ids.

    Token issuance belongs to the authentication service; this store only
    keeps SHA-256 hashes of the tokens it was handed, never the raw value.
    """

    def __init__(self, database: Database):
        self.database = database

    def _hash_token(self, token: str) -> str:
        """SHA-256 hash of the bearer token."""
        return hashlib.sha256(token.encode()).hexdigest()

    def create_token(self, actor: str, token: Optional[str] = None) -> Tuple[str, ActorToken]:
        """
        Register a token for an actor.

        Returns:
            Tuple[str, ActorToken]: (raw_token, token_record)
            WARNING: raw_token is shown ONLY ONCE here.
        """
        raw_token = token or f"bp_{secrets.token_urlsafe(32)}"
        record = ActorToken(
            id=str(uuid4()),
            actor=actor,
            prefix=raw_token[:8],
            is_active=True,
            created_at=serialize_datetime(utcnow()),
        )

        with self.database.connection() as conn:
            conn.execute(
                """
                INSERT INTO actor_tokens (id, token_hash, prefix, actor, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (record.id, self._hash_token(raw_token), record.prefix, actor, record.created_at),
            )
        return raw_token, record

    def resolve(self, token: Optional[str]) -> Optional[str]:
        """Return the actor owning an active token, or None."""
        if not token:
            return None

        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT actor FROM actor_tokens WHERE token_hash = ? AND is_active = 1",
                (self._hash_token(token),),
            ).fetchone()
        return row["actor"] if row else None

    def revoke_token(self, token_id: str) -> bool:
        """Revoke a token by ID."""
        with self.database.connection() as conn:
            cursor = conn.execute("UPDATE actor_tokens SET is_active = 0 WHERE id = ?", (token_id,))
            return cursor.rowcount > 0
