import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.mappers import (
    has_editor_rights,
    has_role_level,
    index_users,
    map_audit_log,
    map_comments,
    map_post,
    map_posts,
    map_tags,
    membership_for_org,
    unwrap_items,
    user_display_name,
)


class TestRoles(unittest.TestCase):
    def test_role_levels(self) -> None:
        self.assertTrue(has_role_level("OrgAdmin", "Editor"))
        self.assertTrue(has_role_level("Editor", "Editor"))
        self.assertFalse(has_role_level("Viewer", "Editor"))
        self.assertFalse(has_role_level("Ghost", "Viewer"))
        self.assertFalse(has_role_level("OrgAdmin", "Ghost"))

    def test_memberships(self) -> None:
        memberships = [{"organizationId": "o1", "role": "Viewer"}, {"organizationId": "o2", "role": "Editor"}]
        self.assertTrue(has_editor_rights(memberships))
        self.assertFalse(has_editor_rights(memberships[:1]))
        self.assertFalse(has_editor_rights(None))
        self.assertEqual(membership_for_org(memberships, "o2")["role"], "Editor")
        self.assertIsNone(membership_for_org(memberships, "o3"))


class TestMappers(unittest.TestCase):
    def test_unwrap_items(self) -> None:
        self.assertEqual(unwrap_items({"items": [1]}), [1])
        self.assertEqual(unwrap_items([2]), [2])
        self.assertEqual(unwrap_items({"data": []}), [])

    def test_map_post(self) -> None:
        post = map_post(
            {
                "id": 7,
                "title": "Hi",
                "content": "Body",
                "author": {"name": "Ann"},
                "createdAt": "2024-01-01",
                "tags": [{"tag": {"id": "t1", "name": "news"}}, {"tagId": "t2", "name": "tech"}],
            }
        )
        self.assertEqual(post["id"], "7")
        self.assertEqual(post["author_name"], "Ann")
        self.assertEqual(post["version"], 1)
        self.assertEqual(post["tags"], [{"id": "t1", "name": "news"}, {"id": "t2", "name": "tech"}])

    def test_list_mappers(self) -> None:
        self.assertEqual(len(map_posts({"items": [{"id": 1}, {"id": 2}]})), 2)
        self.assertEqual(map_tags([{"id": "t", "name": "n"}]), [{"id": "t", "name": "n"}])
        comments = map_comments({"items": [{"id": "c", "content": "x", "author": {"id": "u", "name": "U"}}]})
        self.assertEqual(comments[0]["author_id"], "u")

    def test_audit_log(self) -> None:
        row = map_audit_log({"id": 1, "userId": 2, "action": "create", "resource": "post", "resourceId": None})
        self.assertEqual(row["id"], "1")
        self.assertEqual(row["user_id"], "2")
        self.assertIsNone(row["resource_id"])

    def test_user_index_and_display(self) -> None:
        users = index_users([{"id": "abcdef123456"}, {"id": "u2", "name": "Bo", "email": "bo@x.io"}, {"name": "no id"}])
        self.assertEqual(set(users), {"abcdef123456", "u2"})
        self.assertEqual(user_display_name(users, "u2"), "Bo (bo@x.io)")
        self.assertEqual(user_display_name(users, "abcdef123456"), "Unknown User (unknown@example.com)")
        self.assertEqual(user_display_name(users, "zzzzzzzzzzzz"), "User zzzzzzzz...")


if __name__ == "__main__":
    unittest.main()
