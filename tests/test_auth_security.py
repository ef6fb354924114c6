from __future__ import annotations

import os
import unittest
from collections.abc import Generator
from unittest.mock import patch

from fastapi.testclient import TestClient

from timeclock import security
from timeclock.db import get_db
from timeclock.errors import ApiError
from timeclock.main import app
from timeclock.models import AuditLog, Profile, ProfileRole
from timeclock.security import (
    create_access_token,
    create_refresh_token,
    decode_token,
    hash_password,
    verify_password,
)
from timeclock.settings import get_settings

TEST_ENV = {"JWT_SECRET": "unit-test-secret", "ALLOW_REFRESH": "true"}


def _override_get_db(fake_db):
    def _override() -> Generator[object, None, None]:
        yield fake_db

    return _override


class _FakeAuthDB:
    def __init__(self, profile: Profile | None):
        self.profile = profile
        self.added: list[object] = []

    def scalar(self, statement):  # type: ignore[no-untyped-def]
        if "profiles" in str(statement):
            return self.profile
        return None

    def get(self, model, pk):  # type: ignore[no-untyped-def]
        if model is Profile and self.profile is not None and pk == self.profile.id:
            return self.profile
        return None

    def add(self, obj: object) -> None:
        self.added.append(obj)

    def commit(self) -> None:
        return

    def rollback(self) -> None:
        return


def _profile(*, role: ProfileRole = ProfileRole.WORKER, is_active: bool = True, password: str = "CleanPass123!") -> Profile:
    return Profile(
        id=7,
        email="ana@example.com",
        full_name="Ana",
        password_hash=hash_password(password),
        role=role,
        is_active=is_active,
    )


class TokenTests(unittest.TestCase):
    def setUp(self) -> None:
        self._env = patch.dict(os.environ, TEST_ENV, clear=False)
        self._env.start()
        get_settings.cache_clear()

    def tearDown(self) -> None:
        self._env.stop()
        get_settings.cache_clear()

    def test_access_token_round_trip_claims(self) -> None:
        token, expires_in, claims = create_access_token(_profile(role=ProfileRole.ADMIN))

        decoded = decode_token(token, expected_type="access")

        self.assertEqual(expires_in, 3600)
        self.assertEqual(decoded["sub"], "7")
        self.assertEqual(decoded["role"], "admin")
        self.assertEqual(decoded["jti"], claims["jti"])

    def test_refresh_token_is_not_an_access_token(self) -> None:
        token, _ = create_refresh_token(_profile())
        with self.assertRaises(ApiError) as ctx:
            decode_token(token, expected_type="access")
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(ctx.exception.code, "INVALID_TOKEN")

    def test_tampered_token_is_rejected(self) -> None:
        token, _, _ = create_access_token(_profile())
        with self.assertRaises(ApiError) as ctx:
            decode_token(token[:-2] + "xx", expected_type="access")
        self.assertEqual(ctx.exception.code, "INVALID_TOKEN")

    def test_verify_password_tolerates_broken_hash(self) -> None:
        self.assertTrue(verify_password("CleanPass123!", hash_password("CleanPass123!")))
        self.assertFalse(verify_password("CleanPass123!", "not-a-hash"))


class AuthEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self._env = patch.dict(os.environ, TEST_ENV, clear=False)
        self._env.start()
        get_settings.cache_clear()
        security._FAILED_ATTEMPTS.clear()

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        security._FAILED_ATTEMPTS.clear()
        self._env.stop()
        get_settings.cache_clear()

    def test_login_issues_tokens(self) -> None:
        fake_db = _FakeAuthDB(_profile())
        app.dependency_overrides[get_db] = _override_get_db(fake_db)
        client = TestClient(app)

        response = client.post("/api/auth/login", json={"email": " Ana@Example.com ", "password": "CleanPass123!"})

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["token_type"], "bearer")
        self.assertIsNotNone(payload["refresh_token"])
        self.assertEqual(decode_token(payload["access_token"], expected_type="access")["sub"], "7")
        actions = [row.action for row in fake_db.added if isinstance(row, AuditLog)]
        self.assertEqual(actions, ["LOGIN_SUCCESS"])

    def test_login_with_wrong_password(self) -> None:
        app.dependency_overrides[get_db] = _override_get_db(_FakeAuthDB(_profile()))
        client = TestClient(app)

        response = client.post("/api/auth/login", json={"email": "ana@example.com", "password": "nope"})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "INVALID_CREDENTIALS")

    def test_login_is_throttled_after_repeated_failures(self) -> None:
        app.dependency_overrides[get_db] = _override_get_db(_FakeAuthDB(None))
        client = TestClient(app)

        for _ in range(10):
            response = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "nope"})
            self.assertEqual(response.status_code, 401)

        response = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "nope"})
        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.json()["error"]["code"], "TOO_MANY_ATTEMPTS")

    def test_refresh_issues_new_access_token(self) -> None:
        profile = _profile()
        app.dependency_overrides[get_db] = _override_get_db(_FakeAuthDB(profile))
        refresh_token, _ = create_refresh_token(profile)
        client = TestClient(app)

        response = client.post("/api/auth/refresh", json={"refresh_token": refresh_token})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(decode_token(response.json()["access_token"], expected_type="access")["sub"], "7")

    def test_bearer_token_resolves_profile(self) -> None:
        profile = _profile()
        app.dependency_overrides[get_db] = _override_get_db(_FakeAuthDB(profile))
        token, _, _ = create_access_token(profile)
        client = TestClient(app)

        response = client.get("/api/me/profile", headers={"Authorization": f"Bearer {token}"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["email"], "ana@example.com")

    def test_inactive_profile_is_forbidden(self) -> None:
        profile = _profile(is_active=False)
        app.dependency_overrides[get_db] = _override_get_db(_FakeAuthDB(profile))
        token, _, _ = create_access_token(profile)
        client = TestClient(app)

        response = client.get("/api/me/profile", headers={"Authorization": f"Bearer {token}"})

        self.assertEqual(response.status_code, 403)

    def test_worker_token_cannot_reach_admin_routes(self) -> None:
        profile = _profile()
        app.dependency_overrides[get_db] = _override_get_db(_FakeAuthDB(profile))
        token, _, _ = create_access_token(profile)
        client = TestClient(app)

        response = client.get("/api/admin/workers", headers={"Authorization": f"Bearer {token}"})

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")


if __name__ == "__main__":
    unittest.main()
