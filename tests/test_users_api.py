"""
tests/test_users_api.py -- Integration tests for /api/users.

Covers:
  - Listing requires a session
  - Admin-only creation with invitation link; duplicate name/email -> 409
  - Self-or-admin profile edits
  - Admin-only deletion, last-user guard, membership cleanup
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

from auth.tokens import hash_invitation_token


class TestListUsers:
    def test_requires_session(self, app_env) -> None:
        assert app_env.client.get("/api/users").status_code == 401

    def test_lists_all_users(self, app_env) -> None:
        app_env.add_user("Member", "member@example.com")
        app_env.login(app_env.admin_id)
        resp = app_env.client.get("/api/users")
        assert resp.status_code == 200
        assert [u["name"] for u in resp.json()] == ["Admin", "Member"]
        assert "password_hash" not in resp.json()[0]


class TestCreateUser:
    def test_admin_creates_user_with_invitation(self, app_env) -> None:
        app_env.login(app_env.admin_id)
        resp = app_env.client.post("/api/users", json={"email": "New.Person@Example.com"})
        assert resp.status_code == 201
        body = resp.json()
        assert body["name"] == "new.person"
        assert body["email"] == "new.person@example.com"
        assert body["is_admin"] is False

        link = urlparse(body["invitation_link"])
        assert link.path == "/invite"
        token = parse_qs(link.query)["token"][0]
        invitation = app_env.users.find_valid_invitation(hash_invitation_token(token))
        assert invitation is not None
        assert invitation.user_id == body["id"]

    def test_non_admin_forbidden(self, app_env) -> None:
        member = app_env.add_user("Member", "member@example.com")
        app_env.login(member)
        resp = app_env.client.post("/api/users", json={"email": "other@example.com"})
        assert resp.status_code == 403
        assert resp.json() == {"error": "Admin access required"}

    def test_duplicate_email_conflict(self, app_env) -> None:
        app_env.login(app_env.admin_id)
        resp = app_env.client.post("/api/users", json={"email": "ADMIN@example.com", "name": "Someone"})
        assert resp.status_code == 409

    def test_duplicate_name_conflict(self, app_env) -> None:
        app_env.login(app_env.admin_id)
        resp = app_env.client.post("/api/users", json={"email": "fresh@example.com", "name": "admin"})
        assert resp.status_code == 409

    def test_invalid_email(self, app_env) -> None:
        app_env.login(app_env.admin_id)
        assert app_env.client.post("/api/users", json={"email": "nope"}).status_code == 422


class TestUpdateUser:
    def test_user_renames_self(self, app_env) -> None:
        member = app_env.add_user("Member", "member@example.com")
        app_env.login(member)
        resp = app_env.client.patch(f"/api/users/{member}", json={"name": "Renamed"})
        assert resp.status_code == 200
        assert resp.json()["name"] == "Renamed"
        assert app_env.users.get_by_id(member).email == "member@example.com"

    def test_user_cannot_edit_others(self, app_env) -> None:
        member = app_env.add_user("Member", "member@example.com")
        app_env.login(member)
        resp = app_env.client.patch(f"/api/users/{app_env.admin_id}", json={"name": "Hijacked"})
        assert resp.status_code == 403

    def test_admin_edits_others(self, app_env) -> None:
        member = app_env.add_user("Member", "member@example.com")
        app_env.login(app_env.admin_id)
        resp = app_env.client.patch(f"/api/users/{member}", json={"name": "Member", "email": "m2@example.com"})
        assert resp.status_code == 200
        assert resp.json()["email"] == "m2@example.com"

    def test_name_taken(self, app_env) -> None:
        member = app_env.add_user("Member", "member@example.com")
        app_env.login(member)
        resp = app_env.client.patch(f"/api/users/{member}", json={"name": "ADMIN"})
        assert resp.status_code == 409

    def test_unknown_user(self, app_env) -> None:
        app_env.login(app_env.admin_id)
        assert app_env.client.patch("/api/users/999", json={"name": "Ghost"}).status_code == 404


class TestDeleteUser:
    def test_admin_deletes_user_and_memberships(self, app_env) -> None:
        member = app_env.add_user("Member", "member@example.com")
        shared = app_env.projects.create_project(app_env.admin_id, "Shared")
        app_env.projects.replace_members(shared, [member], added_by=app_env.admin_id)
        app_env.login(app_env.admin_id)

        resp = app_env.client.delete(f"/api/users/{member}")

        assert resp.status_code == 200
        assert app_env.users.get_by_id(member) is None
        assert app_env.projects.member_user_ids(shared) == [app_env.admin_id]

    def test_last_user_cannot_be_deleted(self, app_env) -> None:
        app_env.login(app_env.admin_id)
        resp = app_env.client.delete(f"/api/users/{app_env.admin_id}")
        assert resp.status_code == 400
        assert resp.json() == {"error": "Cannot delete the last user"}

    def test_non_admin_forbidden(self, app_env) -> None:
        member = app_env.add_user("Member", "member@example.com")
        app_env.login(member)
        assert app_env.client.delete(f"/api/users/{app_env.admin_id}").status_code == 403

    def test_unknown_user(self, app_env) -> None:
        app_env.login(app_env.admin_id)
        assert app_env.client.delete("/api/users/999").status_code == 404
