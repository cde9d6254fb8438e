import unittest

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from backend.groups import (
    PERMISSION_KEYS,
    GroupNotFound,
    create_group,
    get_group,
    is_member,
    list_groups,
    list_members,
    require_member,
)
from backend.store import RecordStore, expense_groups, group_members, metadata, users


class GroupTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        metadata.create_all(engine)
        self.store = RecordStore(engine)
        self.owner, self.other = self.store.insert(
            users,
            [
                {"email": "owner@example.com", "hashed_password": "x", "full_name": "Owner"},
                {"email": "other@example.com", "hashed_password": "x"},
            ],
        )

    def test_creator_joins_as_admin_with_every_permission(self) -> None:
        group = create_group(self.store, self.owner["id"], "  Flat 4B ", "Shared bills")

        [member] = list_members(self.store, group["id"], self.owner["id"])
        self.assertEqual(group["name"], "Flat 4B")
        self.assertEqual(member["role"], "admin")
        self.assertEqual(member["permissions"], {key: True for key in PERMISSION_KEYS})
        self.assertEqual(member["email"], "owner@example.com")
        self.assertTrue(is_member(self.store, group["id"], self.owner["id"]))
        self.assertFalse(is_member(self.store, group["id"], self.other["id"]))

    def test_lists_only_groups_the_user_belongs_to(self) -> None:
        first = create_group(self.store, self.owner["id"], "Trip")
        second = create_group(self.store, self.owner["id"], "Flat")
        create_group(self.store, self.other["id"], "Office")

        groups = list_groups(self.store, self.owner["id"])

        self.assertEqual([row["id"] for row in groups], [second["id"], first["id"]])

    def test_non_members_cannot_read_a_group(self) -> None:
        group = create_group(self.store, self.owner["id"], "Trip")

        with self.assertRaises(GroupNotFound):
            get_group(self.store, group["id"], self.other["id"])
        with self.assertRaises(GroupNotFound):
            list_members(self.store, group["id"], self.other["id"])
        with self.assertRaises(GroupNotFound):
            get_group(self.store, 999, self.owner["id"])

    def test_records_attach_only_to_groups_the_user_belongs_to(self) -> None:
        group = create_group(self.store, self.owner["id"], "Trip")

        require_member(self.store, group["id"], self.owner["id"])
        require_member(self.store, None, self.other["id"])
        with self.assertRaises(GroupNotFound):
            require_member(self.store, group["id"], self.other["id"])
        with self.assertRaises(GroupNotFound):
            require_member(self.store, 999, self.owner["id"])

    def test_blank_name_writes_nothing(self) -> None:
        with self.assertRaises(ValueError):
            create_group(self.store, self.owner["id"], "   ")

        self.assertEqual(self.store.select(expense_groups), [])
        self.assertEqual(self.store.select(group_members), [])


if __name__ == "__main__":
    unittest.main()
