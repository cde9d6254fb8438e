from __future__ import annotations

import logging
from typing import List

from backend.store import RecordStore, expense_groups, group_members, users

log = logging.getLogger(__name__)

ROLE_ADMIN = "admin"

PERMISSION_KEYS = (
    "can_add_expense",
    "can_edit_expense",
    "can_delete_expense",
    "can_manage_categories",
    "can_manage_tags",
    "can_manage_wallets",
    "can_invite_members",
    "can_view_reports",
)


class GroupNotFound(LookupError):
    """Raised when a group does not exist or the user is not one of its members."""


def admin_permissions() -> dict[str, bool]:
    return {key: True for key in PERMISSION_KEYS}


def create_group(
    store: RecordStore, user_id: int, name: str, description: str | None = None
) -> dict:
    """Create a shared group; its creator joins as the admin member."""
    name = name.strip()
    if not name:
        raise ValueError("Group name required.")
    with store.transaction() as tx:
        [group] = tx.insert(
            expense_groups,
            [{"name": name, "description": description, "created_by": user_id}],
        )
        tx.insert(
            group_members,
            [
                {
                    "group_id": group["id"],
                    "user_id": user_id,
                    "role": ROLE_ADMIN,
                    "permissions": admin_permissions(),
                }
            ],
        )
    log.info("User %s created group %s", user_id, group["id"])
    return group


def is_member(store: RecordStore, group_id: int, user_id: int) -> bool:
    return bool(store.select(group_members, {"group_id": group_id, "user_id": user_id}))


def require_member(store: RecordStore, group_id: int | None, user_id: int) -> None:
    """Check that a record may be attached to ``group_id``; None means no group."""
    if group_id is not None and not is_member(store, group_id, user_id):
        raise GroupNotFound(f"Group {group_id} not found.")


def list_groups(store: RecordStore, user_id: int) -> List[dict]:
    """Groups ``user_id`` belongs to, newest first."""
    memberships = store.select(group_members, {"user_id": user_id})
    groups: List[dict] = []
    for membership in memberships:
        groups.extend(store.select(expense_groups, {"id": membership["group_id"]}))
    groups.sort(key=lambda row: (row["created_at"], row["id"]), reverse=True)
    return groups


def get_group(store: RecordStore, group_id: int, user_id: int) -> dict:
    require_member(store, group_id, user_id)
    [group] = store.select(expense_groups, {"id": group_id})
    return group


def list_members(store: RecordStore, group_id: int, user_id: int) -> List[dict]:
    get_group(store, group_id, user_id)
    members = store.select(group_members, {"group_id": group_id}, order_by=["joined_at", "id"])
    for member in members:
        [profile] = store.select(users, {"id": member["user_id"]}) or [{}]
        member["email"] = profile.get("email")
        member["full_name"] = profile.get("full_name")
    return members
