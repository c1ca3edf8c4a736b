"""
projects/models.py -- Domain dataclass for projects.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Project:
    """A data scope. user_id is the owner (creator).

    is_default marks the project auto-provisioned for a user who had no
    membership. At most one default project exists per owner.
    """

    user_id: int
    name: str
    id: int | None = None
    is_default: bool = False
    created_at: str | None = None
    updated_at: str | None = None
    member_user_ids: list[int] = field(default_factory=list)

