"""Tests for session-token validation and role-based permissions."""

from __future__ import annotations

import pytest
from jose import jwt
from pydantic import SecretStr

from scopostay_api.middleware.rbac import Permission, Role, parse_role, role_has_permission
from scopostay_api.security import TokenConfig, TokenManager

SECRET = "unit-test-secret"


@pytest.fixture()
def manager() -> TokenManager:
    return TokenManager(TokenConfig(jwt_secret=SecretStr(SECRET)))


class TestTokenManager:
    def test_round_trip(self, manager: TokenManager) -> None:
        token = manager.generate_token("user-1", "tenant-a", role="admin", email="a@example.com")
        claims = manager.validate_token(token)
        assert claims.sub == "user-1"
        assert claims.tenant_id == "tenant-a"
        assert claims.role == "admin"
        assert claims.email == "a@example.com"

    def test_expired(self, manager: TokenManager) -> None:
        token = manager.generate_token("user-1", "tenant-a", ttl_seconds=-30)
        with pytest.raises(PermissionError, match="expired"):
            manager.validate_token(token)

    def test_wrong_key(self, manager: TokenManager) -> None:
        other = TokenManager(TokenConfig(jwt_secret=SecretStr("another-secret")))
        with pytest.raises(PermissionError):
            manager.validate_token(other.generate_token("user-1", "tenant-a"))

    def test_wrong_audience(self, manager: TokenManager) -> None:
        token = jwt.encode(
            {"sub": "user-1", "aud": "anon", "app_metadata": {"tenant_id": "tenant-a"}},
            SECRET,
            algorithm="HS256",
        )
        with pytest.raises(PermissionError):
            manager.validate_token(token)

    def test_token_without_tenant(self, manager: TokenManager) -> None:
        token = jwt.encode({"sub": "user-1", "aud": "authenticated"}, SECRET, algorithm="HS256")
        with pytest.raises(PermissionError, match="tenant"):
            manager.validate_token(token)

    def test_role_defaults_to_member(self, manager: TokenManager) -> None:
        token = jwt.encode(
            {"sub": "user-1", "aud": "authenticated", "app_metadata": {"tenant_id": "tenant-a"}},
            SECRET,
            algorithm="HS256",
        )
        assert manager.validate_token(token).role == "member"


class TestRoles:
    @pytest.mark.parametrize(("raw", "expected"), [("admin", Role.ADMIN), (" Member ", Role.MEMBER)])
    def test_parse_role(self, raw: str, expected: Role) -> None:
        assert parse_role(raw) is expected

    def test_unknown_role(self) -> None:
        with pytest.raises(ValueError, match="Unknown role"):
            parse_role("owner")

    def test_permissions(self) -> None:
        assert role_has_permission(Role.MEMBER, Permission.READ_BILLING)
        assert not role_has_permission(Role.MEMBER, Permission.MANAGE_BILLING)
        assert role_has_permission(Role.ADMIN, Permission.MANAGE_BILLING)
