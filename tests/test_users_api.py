"""
tests/test_users_api.py -- Integration tests for /api/v1/users/* (ownership and roles).

Coverage:
  - own profile
  - owner may read/update self; other users get 403
  - non-admin cannot change roles; admin can
  - admin list is newest first and carries requiredRoles/yourRole on 403
  - admin delete; self-delete blocked
  - email change drops verification until the new address is confirmed
"""

from __future__ import annotations

import pytest

from auth.models import Role
from auth.notifier import VERIFY_EMAIL
from conftest import bearer

API = "/api/v1/users"


@pytest.fixture
def admin(api_client, signup) -> dict:
    """A verified account promoted to admin directly in the store."""
    _client, store, _ = api_client
    account = signup(name="Admin User")
    stored = store.find_by_id(account["id"], with_secrets=True)
    stored.role = Role.admin
    store.save(stored)
    return account


class TestProfile:
    def test_own_profile(self, api_client, signup) -> None:
        client, _, _ = api_client
        account = signup()
        resp = client.get(f"{API}/profile", headers=bearer(account["accessToken"]))
        assert resp.status_code == 200
        user = resp.json()["data"]["user"]
        assert user["id"] == account["id"]
        assert user["role"] == "user"

    def test_owner_reads_self_but_not_others(self, api_client, signup) -> None:
        client, _, _ = api_client
        alice, bob = signup(), signup()
        assert client.get(f"{API}/{alice['id']}", headers=bearer(alice["accessToken"])).status_code == 200
        resp = client.get(f"{API}/{bob['id']}", headers=bearer(alice["accessToken"]))
        assert resp.status_code == 403
        assert resp.json()["success"] is False

    def test_admin_reads_anyone(self, api_client, signup, admin) -> None:
        client, _, _ = api_client
        other = signup()
        assert client.get(f"{API}/{other['id']}", headers=bearer(admin["accessToken"])).status_code == 200

    def test_missing_user_is_404_for_admin(self, api_client, admin) -> None:
        client, _, _ = api_client
        assert client.get(f"{API}/999999", headers=bearer(admin["accessToken"])).status_code == 404


class TestUpdate:
    def test_owner_updates_name(self, api_client, signup) -> None:
        client, _, _ = api_client
        account = signup()
        resp = client.put(f"{API}/{account['id']}", json={"name": "Renamed"}, headers=bearer(account["accessToken"]))
        assert resp.status_code == 200
        user = resp.json()["data"]["user"]
        assert user["name"] == "Renamed"
        assert user["email"] == account["email"]

    def test_user_cannot_update_someone_else(self, api_client, signup) -> None:
        client, _, _ = api_client
        alice, bob = signup(), signup()
        resp = client.put(f"{API}/{bob['id']}", json={"name": "Hacked"}, headers=bearer(alice["accessToken"]))
        assert resp.status_code == 403

    def test_user_cannot_promote_self(self, api_client, signup) -> None:
        client, _, _ = api_client
        account = signup()
        resp = client.put(f"{API}/{account['id']}", json={"role": "admin"}, headers=bearer(account["accessToken"]))
        assert resp.status_code == 403

    def test_admin_changes_role(self, api_client, signup, admin) -> None:
        client, _, _ = api_client
        other = signup()
        resp = client.put(f"{API}/{other['id']}", json={"role": "admin"}, headers=bearer(admin["accessToken"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["role"] == "admin"

    def test_email_change_requires_reverification(self, api_client, signup) -> None:
        client, _, dispatcher = api_client
        account = signup()
        new_email = "changed-" + account["email"]
        resp = client.put(f"{API}/{account['id']}", json={"email": new_email}, headers=bearer(account["accessToken"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["isEmailVerified"] is False

        # Guard now refuses the unverified account.
        resp = client.get(f"{API}/profile", headers=bearer(account["accessToken"]))
        assert resp.status_code == 403
        assert resp.json()["code"] == "EMAIL_NOT_VERIFIED"

        token = dispatcher.last_token(new_email, VERIFY_EMAIL)
        assert client.post("/api/v1/auth/verify-email", json={"token": token}).status_code == 200
        assert client.get(f"{API}/profile", headers=bearer(account["accessToken"])).status_code == 200

    def test_empty_body_is_400(self, api_client, signup) -> None:
        client, _, _ = api_client
        account = signup()
        resp = client.put(f"{API}/{account['id']}", json={}, headers=bearer(account["accessToken"]))
        assert resp.status_code == 400


class TestAdministration:
    def test_non_admin_list_is_403_with_roles(self, api_client, signup) -> None:
        client, _, _ = api_client
        account = signup()
        resp = client.get(API, headers=bearer(account["accessToken"]))
        assert resp.status_code == 403
        body = resp.json()
        assert body["requiredRoles"] == ["admin"]
        assert body["yourRole"] == "user"

    def test_admin_list_newest_first(self, api_client, signup, admin) -> None:
        client, _, _ = api_client
        newest = signup()
        resp = client.get(API, headers=bearer(admin["accessToken"]))
        assert resp.status_code == 200
        body = resp.json()
        users = body["data"]["users"]
        assert body["count"] == len(users)
        assert users[0]["id"] == newest["id"]
        assert all("hashedPassword" not in u for u in users)

    def test_admin_deletes_user(self, api_client, signup, admin) -> None:
        client, _, _ = api_client
        victim = signup()
        resp = client.delete(f"{API}/{victim['id']}", headers=bearer(admin["accessToken"]))
        assert resp.status_code == 200
        assert client.get(f"{API}/profile", headers=bearer(victim["accessToken"])).status_code == 401
        resp = client.delete(f"{API}/{victim['id']}", headers=bearer(admin["accessToken"]))
        assert resp.status_code == 404

    def test_admin_cannot_delete_self(self, api_client, admin) -> None:
        client, _, _ = api_client
        resp = client.delete(f"{API}/{admin['id']}", headers=bearer(admin["accessToken"]))
        assert resp.status_code == 400

    def test_user_cannot_delete(self, api_client, signup) -> None:
        client, _, _ = api_client
        alice, bob = signup(), signup()
        assert client.delete(f"{API}/{bob['id']}", headers=bearer(alice["accessToken"])).status_code == 403
