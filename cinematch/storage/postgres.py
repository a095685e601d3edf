from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from cinematch.logging import get_logger
from cinematch.storage.common import LIST_FIELDS, merge_ids
from cinematch.storage.errors import ConstraintViolation, UserNotFound
from cinematch.storage.models import (
    GrantKind,
    OneTimeGrant,
    RefreshTokenEntry,
    User,
    normalize_email,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        display_name TEXT,
        email_verified BOOLEAN DEFAULT FALSE,
        watched BIGINT[] NOT NULL DEFAULT '{}',
        to_watch BIGINT[] NOT NULL DEFAULT '{}',
        liked_tmdb_ids BIGINT[] NOT NULL DEFAULT '{}',
        disliked_tmdb_ids BIGINT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        jti TEXT NOT NULL,
        hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, jti)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS one_time_grant (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS one_time_grant_user_kind ON one_time_grant (user_id, kind)",
)


class PostgresStore:
    """Postgres-backed account store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        display_name: Optional[str] = None,
        email_verified: Optional[bool] = False,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            password_hash=password_hash,
            display_name=display_name,
            email_verified=email_verified,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, display_name, email_verified, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.password_hash,
                        user.display_name,
                        user.email_verified,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
            if not row:
                return None
            return self._user_from_row(conn, row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
            if not row:
                return None
            return self._user_from_row(conn, row)

    def set_email_verified(self, user_id: str, verified: bool = True) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET email_verified = %s, updated_at = now() WHERE id = %s",
                (verified, user_id),
            )
            if cur.rowcount == 0:
                raise UserNotFound(user_id)

    def set_password_hash(
        self, user_id: str, password_hash: str, *, revoke_sessions: bool = True
    ) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            if cur.rowcount == 0:
                raise UserNotFound(user_id)
            if revoke_sessions:
                conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))

    # refresh-token ledger
    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT jti, hash, created_at FROM refresh_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [RefreshTokenEntry(jti=r["jti"], hash=r["hash"], created_at=r["created_at"]) for r in rows]

    def add_refresh_token(
        self, user_id: str, entry: RefreshTokenEntry, *, max_entries: Optional[int] = None
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO refresh_token (user_id, jti, hash, created_at) VALUES (%s, %s, %s, %s)",
                    (user_id, entry.jti, entry.hash, entry.created_at),
                )
                if max_entries is not None:
                    conn.execute(
                        """
                        DELETE FROM refresh_token
                        WHERE user_id = %s AND jti NOT IN (
                            SELECT jti FROM refresh_token WHERE user_id = %s
                            ORDER BY created_at DESC LIMIT %s
                        )
                        """,
                        (user_id, user_id, max_entries),
                    )
        except errors.ForeignKeyViolation:
            raise UserNotFound(user_id)

    def replace_refresh_token(
        self, user_id: str, old_jti: str, entry: RefreshTokenEntry
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET jti = %s, hash = %s, created_at = %s
                WHERE user_id = %s AND jti = %s
                """,
                (entry.jti, entry.hash, entry.created_at, user_id, old_jti),
            )
            return cur.rowcount == 1

    def remove_refresh_token(self, user_id: str, jti: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s AND jti = %s", (user_id, jti)
            )
            return cur.rowcount > 0

    def clear_refresh_tokens(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))

    # one-time grants
    def replace_grant(self, grant: OneTimeGrant) -> OneTimeGrant:
        kind = GrantKind(grant.kind).value
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM one_time_grant WHERE user_id = %s AND kind = %s",
                (grant.user_id, kind),
            )
            conn.execute(
                """
                INSERT INTO one_time_grant (id, kind, user_id, hash, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (grant.id, kind, grant.user_id, grant.hash, grant.expires_at, grant.created_at),
            )
        return grant

    def get_grant(self, kind: GrantKind, user_id: str) -> Optional[OneTimeGrant]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM one_time_grant WHERE user_id = %s AND kind = %s
                ORDER BY created_at DESC LIMIT 1
                """,
                (user_id, GrantKind(kind).value),
            ).fetchone()
        if not row:
            return None
        return OneTimeGrant(
            id=row["id"],
            kind=GrantKind(row["kind"]),
            user_id=row["user_id"],
            hash=row["hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def delete_grants(self, kind: GrantKind, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM one_time_grant WHERE user_id = %s AND kind = %s",
                (user_id, GrantKind(kind).value),
            )
            return cur.rowcount

    # personal lists and reactions
    def get_lists(self, user_id: str) -> Tuple[List[int], List[int]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT watched, to_watch FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            raise UserNotFound(user_id)
        return list(row["watched"]), list(row["to_watch"])

    def merge_lists(
        self, user_id: str, watched: Iterable[int], to_watch: Iterable[int]
    ) -> Tuple[List[int], List[int]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT watched, to_watch FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not row:
                raise UserNotFound(user_id)
            merged_watched = merge_ids(row["watched"], watched)
            merged_to_watch = merge_ids(row["to_watch"], to_watch)
            conn.execute(
                """
                UPDATE app_user SET watched = %s::bigint[], to_watch = %s::bigint[], updated_at = now()
                WHERE id = %s
                """,
                (merged_watched, merged_to_watch, user_id),
            )
        return merged_watched, merged_to_watch

    def update_list(self, user_id: str, list_name: str, action: str, tmdb_id: int) -> None:
        column = LIST_FIELDS[list_name]
        if action == "add":
            sql = (
                f"UPDATE app_user SET {column} = CASE WHEN %s::bigint = ANY({column}) "
                f"THEN {column} ELSE array_append({column}, %s::bigint) END, updated_at = now() "
                "WHERE id = %s"
            )
            params: Tuple[Any, ...] = (tmdb_id, tmdb_id, user_id)
        else:
            sql = (
                f"UPDATE app_user SET {column} = array_remove({column}, %s::bigint), "
                "updated_at = now() WHERE id = %s"
            )
            params = (tmdb_id, user_id)
        with self._connect() as conn:
            cur = conn.execute(sql, params)
            if cur.rowcount == 0:
                raise UserNotFound(user_id)

    def get_reactions(self, user_id: str) -> Tuple[List[int], List[int]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT liked_tmdb_ids, disliked_tmdb_ids FROM app_user WHERE id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            raise UserNotFound(user_id)
        return list(row["liked_tmdb_ids"]), list(row["disliked_tmdb_ids"])

    def set_reaction(
        self, user_id: str, tmdb_id: int, reaction: str
    ) -> Tuple[List[int], List[int]]:
        liked_expr = "array_remove(liked_tmdb_ids, %(id)s::bigint)"
        disliked_expr = "array_remove(disliked_tmdb_ids, %(id)s::bigint)"
        if reaction == "like":
            liked_expr = f"array_append({liked_expr}, %(id)s::bigint)"
        elif reaction == "dislike":
            disliked_expr = f"array_append({disliked_expr}, %(id)s::bigint)"
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user SET liked_tmdb_ids = {liked_expr},
                    disliked_tmdb_ids = {disliked_expr}, updated_at = now()
                WHERE id = %(user_id)s
                RETURNING liked_tmdb_ids, disliked_tmdb_ids
                """,
                {"id": tmdb_id, "user_id": user_id},
            ).fetchone()
        if not row:
            raise UserNotFound(user_id)
        return list(row["liked_tmdb_ids"]), list(row["disliked_tmdb_ids"])

    def _user_from_row(self, conn, row: Dict[str, Any]) -> User:
        token_rows = conn.execute(
            "SELECT jti, hash, created_at FROM refresh_token WHERE user_id = %s ORDER BY created_at",
            (row["id"],),
        ).fetchall()
        return User(
            id=row["id"],
            email=row["email"],
            password_hash=row["password_hash"],
            display_name=row.get("display_name"),
            email_verified=row.get("email_verified"),
            refresh_tokens=[
                RefreshTokenEntry(jti=r["jti"], hash=r["hash"], created_at=r["created_at"])
                for r in token_rows
            ],
            watched=list(row.get("watched") or []),
            to_watch=list(row.get("to_watch") or []),
            liked_tmdb_ids=list(row.get("liked_tmdb_ids") or []),
            disliked_tmdb_ids=list(row.get("disliked_tmdb_ids") or []),
            created_at=row["created_at"],
        )

