from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation, RoleDeleteOutcome
from warden.storage.models import (
    Permission,
    PermissionType,
    Role,
    RolePage,
    RolePatch,
    RoleQuery,
    User,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        user_name TEXT NOT NULL UNIQUE,
        password TEXT NOT NULL,
        nick_name TEXT,
        avatar TEXT,
        disabled BOOLEAN NOT NULL DEFAULT false,
        deleted BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role (
        id SERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        disabled BOOLEAN NOT NULL DEFAULT false,
        deleted BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS role_live_name_idx ON role (name) WHERE NOT deleted",
    """
    CREATE TABLE IF NOT EXISTS permission (
        id SERIAL PRIMARY KEY,
        permission TEXT NOT NULL,
        type TEXT NOT NULL DEFAULT 'API',
        name TEXT,
        parent_id INTEGER REFERENCES permission (id),
        path TEXT,
        icon TEXT,
        sort INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_in_permission (
        role_id INTEGER NOT NULL REFERENCES role (id),
        permission_id INTEGER NOT NULL REFERENCES permission (id),
        PRIMARY KEY (role_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_in_role (
        user_id TEXT NOT NULL REFERENCES app_user (id),
        role_id INTEGER NOT NULL REFERENCES role (id),
        position INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, role_id)
    )
    """,
)


def _escape_like(pattern: str) -> str:
    """Escape ``\\``, ``%`` and ``_`` so a keyword matches literally under ``ESCAPE '\\'``."""
    return pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresStore:
    """Postgres-backed credential store.

    Each ``with self._connect()`` block is one transaction: the pool commits
    on a clean exit and rolls back when an exception escapes.
    """

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
        """Create the credential tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any], role_ids: Sequence[int]) -> User:
        return User(
            id=str(row["id"]),
            user_name=row["user_name"],
            password=row["password"],
            nick_name=row.get("nick_name"),
            avatar=row.get("avatar"),
            role_ids=list(role_ids),
            disabled=bool(row.get("disabled", False)),
            deleted=bool(row.get("deleted", False)),
            created_at=row.get("created_at", datetime.utcnow()),
        )

    @staticmethod
    def _row_to_role(row: Dict[str, Any], permission_ids: Sequence[int]) -> Role:
        return Role(
            id=int(row["id"]),
            name=row["name"],
            description=row.get("description"),
            disabled=bool(row.get("disabled", False)),
            deleted=bool(row.get("deleted", False)),
            permission_ids=list(permission_ids),
            created_at=row.get("created_at", datetime.utcnow()),
            updated_at=row.get("updated_at", datetime.utcnow()),
        )

    @staticmethod
    def _row_to_permission(row: Dict[str, Any]) -> Permission:
        return Permission(
            id=int(row["id"]),
            permission=row["permission"],
            type=PermissionType(row.get("type") or PermissionType.API.value),
            name=row.get("name"),
            parent_id=row.get("parent_id"),
            path=row.get("path"),
            icon=row.get("icon"),
            sort=int(row.get("sort") or 0),
        )

    def _user_role_ids(self, conn, user_id: str) -> List[int]:
        rows = conn.execute(
            "SELECT role_id FROM user_in_role WHERE user_id = %s ORDER BY position, role_id",
            (user_id,),
        ).fetchall()
        return [int(r["role_id"]) for r in rows]

    def _role_permission_ids(self, conn, role_ids: Sequence[int]) -> Dict[int, List[int]]:
        grants: Dict[int, List[int]] = {rid: [] for rid in role_ids}
        if not role_ids:
            return grants
        rows = conn.execute(
            """
            SELECT role_id, permission_id FROM role_in_permission
            WHERE role_id = ANY(%s) ORDER BY role_id, permission_id
            """,
            (list(role_ids),),
        ).fetchall()
        for row in rows:
            grants.setdefault(int(row["role_id"]), []).append(int(row["permission_id"]))
        return grants

    @staticmethod
    def _insert_grants(conn, role_id: int, permission_ids: Sequence[int]) -> None:
        for permission_id in dict.fromkeys(permission_ids):
            conn.execute(
                "INSERT INTO role_in_permission (role_id, permission_id) VALUES (%s, %s)",
                (role_id, permission_id),
            )

    @staticmethod
    def _sync_sequence(conn, table: str) -> None:
        # explicit ids (seed data) must not collide with later SERIAL values
        conn.execute(
            f"SELECT setval(pg_get_serial_sequence('{table}', 'id'), GREATEST((SELECT MAX(id) FROM {table}), 1))"  # noqa: S608
        )

    # users
    def create_user(
        self,
        user_name: str,
        password_hash: str,
        *,
        nick_name: Optional[str] = None,
        avatar: Optional[str] = None,
        role_ids: Optional[Sequence[int]] = None,
        user_id: Optional[str] = None,
    ) -> User:
        user_id = user_id or str(uuid.uuid4())
        ordered_roles = list(dict.fromkeys(role_ids or []))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, user_name, password, nick_name, avatar)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, user_name, password_hash, nick_name, avatar),
                ).fetchone()
                for position, role_id in enumerate(ordered_roles):
                    conn.execute(
                        "INSERT INTO user_in_role (user_id, role_id, position) VALUES (%s, %s, %s)",
                        (user_id, role_id, position),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("user name already exists", {"field": "user_name"})
        return self._row_to_user(row, ordered_roles)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s AND NOT deleted", (user_id,)
            ).fetchone()
            if not row:
                return None
            return self._row_to_user(row, self._user_role_ids(conn, user_id))

    def get_user_by_name(self, user_name: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE user_name = %s AND NOT deleted", (user_name,)
            ).fetchone()
            if not row:
                return None
            return self._row_to_user(row, self._user_role_ids(conn, str(row["id"])))

    def assign_roles(self, user_id: str, role_ids: Sequence[int]) -> Optional[User]:
        ordered_roles = list(dict.fromkeys(role_ids))
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s AND NOT deleted FOR UPDATE", (user_id,)
            ).fetchone()
            if not row:
                return None
            conn.execute("DELETE FROM user_in_role WHERE user_id = %s", (user_id,))
            for position, role_id in enumerate(ordered_roles):
                conn.execute(
                    "INSERT INTO user_in_role (user_id, role_id, position) VALUES (%s, %s, %s)",
                    (user_id, role_id, position),
                )
        return self._row_to_user(row, ordered_roles)

    # permissions
    def create_permission(
        self,
        permission: str,
        type: PermissionType = PermissionType.API,
        *,
        name: Optional[str] = None,
        parent_id: Optional[int] = None,
        path: Optional[str] = None,
        icon: Optional[str] = None,
        sort: int = 0,
        permission_id: Optional[int] = None,
    ) -> Permission:
        try:
            with self._connect() as conn:
                if permission_id is not None:
                    row = conn.execute(
                        """
                        INSERT INTO permission (id, permission, type, name, parent_id, path, icon, sort)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (permission_id, permission, PermissionType(type).value, name, parent_id, path, icon, sort),
                    ).fetchone()
                    self._sync_sequence(conn, "permission")
                else:
                    row = conn.execute(
                        """
                        INSERT INTO permission (permission, type, name, parent_id, path, icon, sort)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (permission, PermissionType(type).value, name, parent_id, path, icon, sort),
                    ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission id already exists", {"field": "id"})
        return self._row_to_permission(row)

    def list_permissions_by_ids(self, permission_ids: Iterable[int]) -> List[Permission]:
        ids = list(dict.fromkeys(permission_ids))
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM permission WHERE id = ANY(%s) ORDER BY sort, id", (ids,)
            ).fetchall()
        return [self._row_to_permission(r) for r in rows]

    # roles
    def create_role(
        self,
        name: str,
        *,
        description: Optional[str] = None,
        disabled: bool = False,
        permission_ids: Optional[Sequence[int]] = None,
        role_id: Optional[int] = None,
    ) -> Role:
        grants = list(dict.fromkeys(permission_ids or []))
        try:
            with self._connect() as conn:
                if role_id is not None:
                    row = conn.execute(
                        """
                        INSERT INTO role (id, name, description, disabled)
                        VALUES (%s, %s, %s, %s) RETURNING *
                        """,
                        (role_id, name, description, bool(disabled)),
                    ).fetchone()
                else:
                    row = conn.execute(
                        """
                        INSERT INTO role (name, description, disabled)
                        VALUES (%s, %s, %s) RETURNING *
                        """,
                        (name, description, bool(disabled)),
                    ).fetchone()
                if role_id is not None:
                    self._sync_sequence(conn, "role")
                self._insert_grants(conn, int(row["id"]), grants)
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return self._row_to_role(row, grants)

    def find_role_by_name(self, name: str, *, exclude_id: Optional[int] = None) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM role
                WHERE name = %s AND NOT deleted AND (%s::int IS NULL OR id <> %s::int)
                """,
                (name, exclude_id, exclude_id),
            ).fetchone()
            if not row:
                return None
            grants = self._role_permission_ids(conn, [int(row["id"])])
        return self._row_to_role(row, grants.get(int(row["id"]), []))

    def get_role(self, role_id: int) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM role WHERE id = %s AND NOT deleted", (role_id,)
            ).fetchone()
            if not row:
                return None
            grants = self._role_permission_ids(conn, [role_id])
        return self._row_to_role(row, grants.get(role_id, []))

    def list_roles(self, query: RoleQuery) -> RolePage:
        clauses = ["NOT deleted"]
        params: List[Any] = []
        if query.disabled is not None:
            clauses.append("disabled = %s")
            params.append(query.disabled)
        if query.keyword:
            clauses.append("name ILIKE %s ESCAPE '\\'")
            params.append(f"%{_escape_like(query.keyword)}%")
        if query.begin_time is not None:
            clauses.append("created_at >= %s")
            params.append(query.begin_time)
        if query.end_time is not None:
            clauses.append("created_at <= %s")
            params.append(query.end_time)
        where = " AND ".join(clauses)
        direction = "ASC" if query.sort == "asc" else "DESC"
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM role WHERE {where} ORDER BY created_at {direction}, id {direction} LIMIT %s OFFSET %s",  # noqa: S608
                (*params, query.page_size, query.offset),
            ).fetchall()
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM role WHERE {where}",  # noqa: S608
                tuple(params),
            ).fetchone()
        # list view does not carry grants
        roles = [self._row_to_role(r, []) for r in rows]
        return RolePage(list=roles, total=int(total_row["total"]) if total_row else 0)

    def list_active_roles_by_ids(self, role_ids: Iterable[int]) -> List[Role]:
        ids = list(dict.fromkeys(role_ids))
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM role WHERE id = ANY(%s) AND NOT disabled AND NOT deleted",
                (ids,),
            ).fetchall()
            grants = self._role_permission_ids(conn, [int(r["id"]) for r in rows])
        by_id = {int(r["id"]): r for r in rows}
        return [
            self._row_to_role(by_id[rid], grants.get(rid, []))
            for rid in ids
            if rid in by_id
        ]

    def update_role(self, role_id: int, patch: RolePatch) -> Optional[Role]:
        assignments: List[str] = []
        params: List[Any] = []
        if patch.is_set("name") and patch.name is not None:
            assignments.append("name = %s")
            params.append(patch.name)
        if patch.is_set("description"):
            assignments.append("description = %s")
            params.append(patch.description)
        if patch.is_set("disabled") and patch.disabled is not None:
            assignments.append("disabled = %s")
            params.append(bool(patch.disabled))
        assignments.append("updated_at = now()")
        replacement = patch.replacement_permissions()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE role SET {', '.join(assignments)} WHERE id = %s AND NOT deleted RETURNING *",  # noqa: S608
                    (*params, role_id),
                ).fetchone()
                if not row:
                    return None
                if replacement is not None:
                    conn.execute("DELETE FROM role_in_permission WHERE role_id = %s", (role_id,))
                    self._insert_grants(conn, role_id, replacement)
                grants = self._role_permission_ids(conn, [role_id])
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return self._row_to_role(row, grants.get(role_id, []))

    def list_role_user_ids(self, role_id: int) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT u.id FROM user_in_role ur JOIN app_user u ON u.id = ur.user_id
                WHERE ur.role_id = %s AND NOT u.deleted
                ORDER BY u.id
                """,
                (role_id,),
            ).fetchall()
        return [str(r["id"]) for r in rows]

    def soft_delete_roles(self, role_ids: Sequence[int]) -> RoleDeleteOutcome:
        """Check assignments and soft delete in one transaction.

        The role rows are locked ``FOR UPDATE`` so a concurrent delete cannot
        interleave; a concurrent user assignment still races unless the
        caller's isolation level forbids it.
        """
        wanted = list(dict.fromkeys(role_ids))
        if not wanted:
            return RoleDeleteOutcome.NOT_FOUND
        with self._connect() as conn:
            found = conn.execute(
                "SELECT id FROM role WHERE id = ANY(%s) AND NOT deleted FOR UPDATE",
                (wanted,),
            ).fetchall()
            in_use = conn.execute(
                """
                SELECT 1 FROM user_in_role ur JOIN app_user u ON u.id = ur.user_id
                WHERE ur.role_id = ANY(%s) AND NOT u.deleted
                LIMIT 1
                """,
                ([int(r["id"]) for r in found],),
            ).fetchone()
            if in_use:
                return RoleDeleteOutcome.IN_USE
            if len(found) != len(wanted):
                return RoleDeleteOutcome.NOT_FOUND
            conn.execute(
                "UPDATE role SET deleted = true, updated_at = now() WHERE id = ANY(%s)",
                (wanted,),
            )
        self.logger.info("roles_soft_deleted", role_ids=wanted)
        return RoleDeleteOutcome.DELETED
