"""
tests/test_context.py -- Unit tests for the identity & tenancy resolver.

Requests are built directly from ASGI scopes so each candidate source
(session cookie, header, query parameter, plain cookie) can be set in
isolation. Stores run on a real SQLite file (file_stores fixture) because the
concurrency tests use threads.
"""

from __future__ import annotations

import threading
from urllib.parse import urlencode

import pytest
from starlette.requests import Request

from auth.models import User
from auth.tokens import AUTH_COOKIE_NAME, PROJECT_COOKIE_NAME, USER_COOKIE_NAME, SessionTokenCodec
from auth.store import MAX_ROW_ID
from projects.context import (
    DEFAULT_USER_ID,
    fallback_user_id,
    parse_positive_id,
    resolve_project_id,
    resolve_user_id,
)
from projects.store import DEFAULT_PROJECT_NAME, ProjectStore

CODEC = SessionTokenCodec("resolver-test-secret-0123456789abcdef")

OVERSIZED_ID = "99999999999999999999999"


def make_request(headers: dict | None = None, query: dict | None = None, cookies: dict | None = None) -> Request:
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    if cookies:
        raw_headers.append((b"cookie", "; ".join(f"{k}={v}" for k, v in cookies.items()).encode()))
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/api/context",
        "query_string": urlencode(query or {}).encode(),
        "headers": raw_headers,
    }
    return Request(scope)


def _user(store, name: str) -> int:
    return store.create_user(User(name=name, email=f"{name.lower()}@example.com"))


# ---------------------------------------------------------------------------
# parse_positive_id
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("1", 1),
        ("42", 42),
        (" 7 ", 7),
        ("007", 7),
        ("0", None),
        ("-3", None),
        ("+3", None),
        ("3.5", None),
        ("1e3", None),
        ("abc", None),
        (str(MAX_ROW_ID), MAX_ROW_ID),
        (str(MAX_ROW_ID + 1), None),
        (OVERSIZED_ID, None),
        ("", None),
        (None, None),
    ],
)
def test_parse_positive_id(raw, expected) -> None:
    assert parse_positive_id(raw) == expected


# ---------------------------------------------------------------------------
# User resolution
# ---------------------------------------------------------------------------


class TestResolveUserId:
    def test_session_token_wins_over_every_hint(self, file_stores) -> None:
        users, _ = file_stores
        alice, bob, carol = _user(users, "Alice"), _user(users, "Bob"), _user(users, "Carol")
        request = make_request(
            headers={"x-user-id": str(bob)},
            query={"userId": str(carol)},
            cookies={AUTH_COOKIE_NAME: CODEC.create(alice), USER_COOKIE_NAME: str(bob)},
        )
        assert resolve_user_id(request, users, CODEC) == alice

    def test_gate_result_is_reused(self, file_stores) -> None:
        users, _ = file_stores
        _user(users, "Alice")
        bob = _user(users, "Bob")
        request = make_request(headers={"x-user-id": "1"})
        request.state.session_user_id = bob
        assert resolve_user_id(request, users, CODEC) == bob

    def test_header_beats_query_and_cookie(self, file_stores) -> None:
        users, _ = file_stores
        _user(users, "Alice")
        bob, carol = _user(users, "Bob"), _user(users, "Carol")
        request = make_request(
            headers={"x-user-id": str(bob)},
            query={"userId": str(carol)},
            cookies={USER_COOKIE_NAME: str(carol)},
        )
        assert resolve_user_id(request, users, CODEC) == bob

    def test_query_beats_cookie(self, file_stores) -> None:
        users, _ = file_stores
        _user(users, "Alice")
        bob, carol = _user(users, "Bob"), _user(users, "Carol")
        request = make_request(query={"userId": str(bob)}, cookies={USER_COOKIE_NAME: str(carol)})
        assert resolve_user_id(request, users, CODEC) == bob

    def test_plain_cookie_used_last(self, file_stores) -> None:
        users, _ = file_stores
        _user(users, "Alice")
        bob = _user(users, "Bob")
        request = make_request(cookies={USER_COOKIE_NAME: str(bob)})
        assert resolve_user_id(request, users, CODEC) == bob

    def test_invalid_token_falls_through_to_hints(self, file_stores) -> None:
        users, _ = file_stores
        _user(users, "Alice")
        bob = _user(users, "Bob")
        request = make_request(headers={"x-user-id": str(bob)}, cookies={AUTH_COOKIE_NAME: "garbage"})
        assert resolve_user_id(request, users, CODEC) == bob

    def test_malformed_hints_are_ignored(self, file_stores) -> None:
        users, _ = file_stores
        _user(users, "Alice")
        bob = _user(users, "Bob")
        request = make_request(headers={"x-user-id": "abc"}, query={"userId": "-2"}, cookies={USER_COOKIE_NAME: str(bob)})
        assert resolve_user_id(request, users, CODEC) == bob

    def test_oversized_hints_are_ignored(self, file_stores) -> None:
        users, _ = file_stores
        _user(users, "Alice")
        bob = _user(users, "Bob")
        request = make_request(
            headers={"x-user-id": OVERSIZED_ID},
            query={"userId": OVERSIZED_ID},
            cookies={USER_COOKIE_NAME: str(bob)},
        )
        assert resolve_user_id(request, users, CODEC) == bob

    def test_oversized_cookie_falls_back(self, file_stores) -> None:
        users, _ = file_stores
        _user(users, "Alice")
        request = make_request(cookies={USER_COOKIE_NAME: OVERSIZED_ID})
        assert resolve_user_id(request, users, CODEC) == DEFAULT_USER_ID

    def test_unknown_user_falls_back_to_default(self, file_stores) -> None:
        users, _ = file_stores
        _user(users, "Alice")
        _user(users, "Bob")
        request = make_request(headers={"x-user-id": "999"})
        assert resolve_user_id(request, users, CODEC) == DEFAULT_USER_ID

    def test_valid_token_for_deleted_user_falls_back(self, file_stores) -> None:
        users, _ = file_stores
        _user(users, "Alice")
        bob = _user(users, "Bob")
        users.delete_user(bob)
        request = make_request(cookies={AUTH_COOKIE_NAME: CODEC.create(bob)})
        assert resolve_user_id(request, users, CODEC) == DEFAULT_USER_ID

    def test_no_candidates_falls_back(self, file_stores) -> None:
        users, _ = file_stores
        _user(users, "Alice")
        assert resolve_user_id(make_request(), users, CODEC) == DEFAULT_USER_ID


class TestFallbackUserId:
    def test_default_user_when_present(self, file_stores) -> None:
        users, _ = file_stores
        _user(users, "Alice")
        _user(users, "Bob")
        assert fallback_user_id(users) == DEFAULT_USER_ID

    def test_earliest_user_when_default_missing(self, file_stores) -> None:
        users, _ = file_stores
        alice, bob = _user(users, "Alice"), _user(users, "Bob")
        users.delete_user(alice)
        assert fallback_user_id(users) == bob

    def test_empty_store(self, file_stores) -> None:
        users, _ = file_stores
        assert fallback_user_id(users) == DEFAULT_USER_ID


# ---------------------------------------------------------------------------
# Project resolution
# ---------------------------------------------------------------------------


class TestResolveProjectId:
    def test_header_project_used_when_member(self, file_stores) -> None:
        users, projects = file_stores
        alice = _user(users, "Alice")
        first = projects.create_project(alice, "First")
        second = projects.create_project(alice, "Second")
        request = make_request(headers={"x-project-id": str(second)}, cookies={PROJECT_COOKIE_NAME: str(first)})
        assert resolve_project_id(request, alice, projects) == second

    def test_query_beats_cookie(self, file_stores) -> None:
        users, projects = file_stores
        alice = _user(users, "Alice")
        first = projects.create_project(alice, "First")
        second = projects.create_project(alice, "Second")
        request = make_request(query={"projectId": str(second)}, cookies={PROJECT_COOKIE_NAME: str(first)})
        assert resolve_project_id(request, alice, projects) == second

    def test_non_member_candidate_skipped_for_next(self, file_stores) -> None:
        users, projects = file_stores
        alice, bob = _user(users, "Alice"), _user(users, "Bob")
        alices = projects.create_project(alice, "Alice's")
        bobs = projects.create_project(bob, "Bob's")
        request = make_request(headers={"x-project-id": str(bobs)}, cookies={PROJECT_COOKIE_NAME: str(alices)})
        assert resolve_project_id(request, alice, projects) == alices

    def test_nonexistent_project_skipped(self, file_stores) -> None:
        users, projects = file_stores
        alice = _user(users, "Alice")
        own = projects.create_project(alice, "Mine")
        request = make_request(headers={"x-project-id": "4040"})
        assert resolve_project_id(request, alice, projects) == own

    @pytest.mark.parametrize(
        "hint",
        [
            {"headers": {"x-project-id": OVERSIZED_ID}},
            {"query": {"projectId": OVERSIZED_ID}},
            {"cookies": {PROJECT_COOKIE_NAME: OVERSIZED_ID}},
        ],
    )
    def test_oversized_candidate_skipped(self, file_stores, hint) -> None:
        users, projects = file_stores
        alice = _user(users, "Alice")
        own = projects.create_project(alice, "Mine")
        request = make_request(**hint)
        assert resolve_project_id(request, alice, projects) == own

    def test_no_candidate_returns_earliest_membership(self, file_stores) -> None:
        users, projects = file_stores
        alice = _user(users, "Alice")
        first = projects.create_project(alice, "First")
        projects.create_project(alice, "Second")
        assert resolve_project_id(make_request(), alice, projects) == first

    def test_shared_project_counts_as_membership(self, file_stores) -> None:
        users, projects = file_stores
        alice, bob = _user(users, "Alice"), _user(users, "Bob")
        shared = projects.create_project(alice, "Shared")
        projects.replace_members(shared, [bob], added_by=alice)
        request = make_request(headers={"x-project-id": str(shared)})
        assert resolve_project_id(request, bob, projects) == shared

    def test_default_project_provisioned(self, file_stores) -> None:
        users, projects = file_stores
        alice = _user(users, "Alice")
        project_id = resolve_project_id(make_request(), alice, projects)
        project = projects.get_project(project_id)
        assert project.name == DEFAULT_PROJECT_NAME
        assert project.is_default
        assert project.user_id == alice
        assert project.member_user_ids == [alice]

    def test_default_project_reused(self, file_stores) -> None:
        users, projects = file_stores
        alice = _user(users, "Alice")
        first = resolve_project_id(make_request(), alice, projects)
        second = resolve_project_id(make_request(), alice, projects)
        assert first == second
        assert projects.count_owned(alice) == 1

    def test_rejected_candidates_then_default(self, file_stores) -> None:
        users, projects = file_stores
        alice, bob = _user(users, "Alice"), _user(users, "Bob")
        bobs = projects.create_project(bob, "Bob's")
        request = make_request(headers={"x-project-id": str(bobs)}, query={"projectId": "zero"})
        project_id = resolve_project_id(request, alice, projects)
        assert project_id != bobs
        assert projects.get_project(project_id).user_id == alice


# ---------------------------------------------------------------------------
# Default project race safety
# ---------------------------------------------------------------------------


class TestEnsureDefaultProject:
    def test_lost_membership_is_restored_not_duplicated(self, file_stores) -> None:
        users, projects = file_stores
        alice = _user(users, "Alice")
        original = projects.ensure_default_project(alice)
        projects.remove_user_memberships(alice)

        restored = projects.ensure_default_project(alice)

        assert restored == original
        assert projects.count_owned(alice) == 1
        assert projects.is_member(original, alice)

    def test_concurrent_first_requests_share_one_default(self, file_stores, tmp_path) -> None:
        users, _ = file_stores
        alice = _user(users, "Alice")
        url = f"sqlite:///{tmp_path / 'pm.db'}"
        stores = [ProjectStore(db_url=url) for _ in range(4)]
        barrier = threading.Barrier(len(stores))
        results: list[int] = []
        errors: list[BaseException] = []

        def worker(store: ProjectStore) -> None:
            barrier.wait()
            try:
                results.append(store.ensure_default_project(alice))
            except BaseException as exc:  # collected and asserted below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(s,)) for s in stores]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        for s in stores:
            s.close()

        assert errors == []
        assert len(set(results)) == 1
        checker = ProjectStore(db_url=url)
        try:
            assert checker.count_owned(alice) == 1
            assert checker.member_user_ids(results[0]) == [alice]
        finally:
            checker.close()
