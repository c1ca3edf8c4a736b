"""
projects/store.py -- SQLAlchemy Core persistence for projects and memberships.

Pattern: Repository + Data Mapper (same as auth/store.py).

Race safety for default projects:
  ensure_default_project() is called from the tenancy resolver on ordinary
  reads, so two first requests for a brand-new user can arrive together.
  Two constraints make the outcome single-valued without application locks:

    uq_projects_default_owner  UNIQUE(user_id) WHERE is_default = 1
    uq_project_members         UNIQUE(project_id, user_id)

  The losing transaction hits IntegrityError, rolls back, and adopts the
  winner's default project.

The stores share one database (Settings.database_url) but keep separate
MetaData, so there are no cross-table foreign keys. Deleting a user calls
remove_user_memberships() explicitly.

Layer rule: may import from auth/ and core/. No imports from api/ or web/.
"""

from __future__ import annotations

import logging

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, UniqueConstraint, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.store import make_engine, now_iso
from core.config import get_settings
from projects.models import Project

logger = logging.getLogger("pmtracker.projects")

DEFAULT_PROJECT_NAME = "Default"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_projects = Table(
    "projects",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),  # owner
    Column("name", String(255), nullable=False),
    Column("is_default", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

Index(
    "uq_projects_default_owner",
    _projects.c.user_id,
    unique=True,
    sqlite_where=_projects.c.is_default == 1,
    postgresql_where=_projects.c.is_default == 1,
)

_members = Table(
    "project_members",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("project_id", Integer, nullable=False),
    Column("user_id", Integer, nullable=False),
    Column("added_by_user_id", Integer),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("project_id", "user_id", name="uq_project_members"),
)


class ProjectStore:
    """Repository for projects and their memberships.

    Usage:
        store = ProjectStore()
        pid = store.create_project(owner_id, "Website")
        store.is_member(pid, owner_id)        # True
        store.ensure_default_project(user_id)
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(self, owner_id: int, name: str, is_default: bool = False) -> int:
        """Create a project and the owner's membership atomically. Returns the project id.

        Raises IntegrityError if is_default is set and the owner already has a
        default project.
        """
        with self.engine.begin() as conn:
            return self._insert_project(conn, owner_id, name, is_default)

    def _insert_project(self, conn: Connection, owner_id: int, name: str, is_default: bool) -> int:
        stamp = now_iso()
        project_id = conn.execute(
            _projects.insert().values(
                user_id=owner_id,
                name=name.strip(),
                is_default=1 if is_default else 0,
                created_at=stamp,
                updated_at=stamp,
            )
        ).inserted_primary_key[0]
        conn.execute(
            _members.insert().values(
                project_id=project_id,
                user_id=owner_id,
                added_by_user_id=owner_id,
                created_at=stamp,
            )
        )
        return project_id

    def get_project(self, project_id: int) -> Project | None:
        with self.engine.connect() as conn:
            row = conn.execute(_projects.select().where(_projects.c.id == project_id)).fetchone()
            if row is None:
                return None
            project = _row_to_project(row)
            project.member_user_ids = self._member_ids(conn, project_id)
        return project

    def list_projects_for_member(self, user_id: int) -> list[Project]:
        """Return every project user_id is a member of, oldest first, with member ids."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _projects.select()
                .join(_members, _members.c.project_id == _projects.c.id)
                .where(_members.c.user_id == user_id)
                .order_by(_projects.c.created_at.asc(), _projects.c.id.asc())
            ).fetchall()
            projects = [_row_to_project(r) for r in rows]
            for project in projects:
                project.member_user_ids = self._member_ids(conn, project.id)
        return projects

    def find_owned_by_name(self, owner_id: int, name: str, exclude_id: int | None = None) -> Project | None:
        """Case-insensitive name lookup among one owner's projects."""
        query = _projects.select().where(
            (_projects.c.user_id == owner_id) & (func.lower(_projects.c.name) == name.strip().lower())
        )
        if exclude_id is not None:
            query = query.where(_projects.c.id != exclude_id)
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_project(row) if row is not None else None

    def rename_project(self, project_id: int, name: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _projects.update()
                .where(_projects.c.id == project_id)
                .values(name=name.strip(), updated_at=now_iso())
            )
        return result.rowcount > 0

    def count_owned(self, owner_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_projects).where(_projects.c.user_id == owner_id)
            ).scalar()
        return result or 0

    def delete_project(self, project_id: int) -> bool:
        """Delete a project and all of its memberships."""
        with self.engine.begin() as conn:
            conn.execute(_members.delete().where(_members.c.project_id == project_id))
            result = conn.execute(_projects.delete().where(_projects.c.id == project_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Memberships
    # ------------------------------------------------------------------

    def is_member(self, project_id: int, user_id: int) -> bool:
        """True iff the project exists and user_id holds a membership in it."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_members.c.id)
                .join(_projects, _projects.c.id == _members.c.project_id)
                .where((_members.c.project_id == project_id) & (_members.c.user_id == user_id))
            ).fetchone()
        return row is not None

    def member_user_ids(self, project_id: int) -> list[int]:
        with self.engine.connect() as conn:
            return self._member_ids(conn, project_id)

    def _member_ids(self, conn: Connection, project_id: int) -> list[int]:
        rows = conn.execute(
            select(_members.c.user_id).where(_members.c.project_id == project_id).order_by(_members.c.user_id)
        ).fetchall()
        return [r.user_id for r in rows]

    def replace_members(self, project_id: int, user_ids: list[int], added_by: int) -> list[int]:
        """Replace the member set of a project. The owner always stays a member.

        Callers are responsible for filtering user_ids down to existing users.
        Returns the resulting member ids, sorted.
        """
        with self.engine.begin() as conn:
            owner = conn.execute(select(_projects.c.user_id).where(_projects.c.id == project_id)).scalar()
            wanted = list(dict.fromkeys(user_ids))
            if owner is not None and owner not in wanted:
                wanted.append(owner)
            conn.execute(_members.delete().where(_members.c.project_id == project_id))
            stamp = now_iso()
            for member_id in wanted:
                conn.execute(
                    _members.insert().values(
                        project_id=project_id,
                        user_id=member_id,
                        added_by_user_id=added_by,
                        created_at=stamp,
                    )
                )
            return self._member_ids(conn, project_id)

    def remove_user_memberships(self, user_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_members.delete().where(_members.c.user_id == user_id))
        return result.rowcount

    # ------------------------------------------------------------------
    # Default project provisioning
    # ------------------------------------------------------------------

    def first_project_for_member(self, user_id: int) -> int | None:
        """Return the earliest-created project user_id is a member of, or None."""
        with self.engine.connect() as conn:
            return self._first_project_id(conn, user_id)

    def _first_project_id(self, conn: Connection, user_id: int) -> int | None:
        row = conn.execute(
            select(_projects.c.id)
            .join(_members, _members.c.project_id == _projects.c.id)
            .where(_members.c.user_id == user_id)
            .order_by(_projects.c.created_at.asc(), _projects.c.id.asc())
            .limit(1)
        ).fetchone()
        return row.id if row is not None else None

    def ensure_default_project(self, user_id: int) -> int:
        """Return a project user_id can act in, creating "Default" if there is none.

        This is NOT a read-only call: when the user has no membership it
        inserts a project row and a membership row. The lookup and the insert
        share one transaction; a concurrent caller that loses the race on
        uq_projects_default_owner adopts the winner's project instead of
        creating a second one.
        """
        try:
            with self.engine.begin() as conn:
                existing = self._first_project_id(conn, user_id)
                if existing is not None:
                    return existing
                project_id = self._insert_project(conn, user_id, DEFAULT_PROJECT_NAME, is_default=True)
        except IntegrityError:
            return self._adopt_default_project(user_id)
        logger.info("Provisioned default project %d for user %d", project_id, user_id)
        return project_id

    def _adopt_default_project(self, user_id: int) -> int:
        with self.engine.begin() as conn:
            existing = self._first_project_id(conn, user_id)
            if existing is not None:
                return existing
            project_id = conn.execute(
                select(_projects.c.id).where((_projects.c.user_id == user_id) & (_projects.c.is_default == 1))
            ).scalar()
            if project_id is None:
                # The IntegrityError was not the default-project race; surface it.
                raise RuntimeError(f"Could not provision a default project for user {user_id}")
            conn.execute(
                _members.insert().values(
                    project_id=project_id,
                    user_id=user_id,
                    added_by_user_id=user_id,
                    created_at=now_iso(),
                )
            )
        logger.info("Restored membership in default project %d for user %d", project_id, user_id)
        return project_id

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_project(row) -> Project:
    return Project(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        is_default=bool(row.is_default),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
