"""
Auth Header Tests
=================
"""

import pytest

from copilot_stream.core.auth_headers import (
    ApiContext,
    AuthSession,
    AuthUser,
    create_auth_headers,
    is_uuid,
    merge_headers,
)

TENANT = "7c9e6679-7425-40de-944b-e07fc1f90ae7"


class TestIsUuid:
    @pytest.mark.parametrize("value", [TENANT, TENANT.upper()])
    def test_valid(self, value):
        assert is_uuid(value)

    @pytest.mark.parametrize(
        "value",
        [
            None,
            "",
            "acme-corp",
            "7c9e6679-7425-60de-944b-e07fc1f90ae7",  # version 6
            "7c9e6679-7425-40de-c44b-e07fc1f90ae7",  # variant c
        ],
    )
    def test_invalid(self, value):
        assert not is_uuid(value)


class TestCreateAuthHeaders:
    def test_full_session(self):
        session = AuthSession(
            user=AuthUser(id="user-1", tenant_id=TENANT), access_token="secret-token"
        )

        headers = create_auth_headers(session)

        assert headers == {
            "Authorization": "Bearer secret-token",
            "X-Tenant-ID": TENANT,
            "X-User-ID": "user-1",
        }

    def test_wire_dict_session(self):
        headers = create_auth_headers(
            {"user": {"id": "u", "tenantId": TENANT}, "accessToken": "tok"}
        )

        assert headers["X-Tenant-ID"] == TENANT
        assert headers["Authorization"] == "Bearer tok"

    def test_slug_tenant_omitted(self):
        session = AuthSession(user=AuthUser(id="user-1", tenant_id="acme-corp"))

        headers = create_auth_headers(session)

        assert "X-Tenant-ID" not in headers
        assert headers == {"X-User-ID": "user-1"}

    @pytest.mark.parametrize("session", [None, {}, AuthSession(access_token="tok")])
    def test_no_user_gives_no_headers(self, session):
        assert create_auth_headers(session) == {}

    def test_context_headers(self):
        session = AuthSession(user=AuthUser(id="user-1"))
        context = ApiContext(session_id="s-1", thread_id="t-1", agent_id="agent-9")

        headers = create_auth_headers(session, context)

        assert headers["X-Session-ID"] == "s-1"
        assert headers["X-Thread-ID"] == "t-1"
        assert headers["X-Agent-ID"] == "agent-9"
        assert "X-Conversation-ID" not in headers
        assert "X-Workspace-ID" not in headers

    def test_context_from_wire_dict(self):
        headers = create_auth_headers(
            {"user": {"id": "u"}}, {"conversationId": "c-1", "workspaceId": "w-1"}
        )

        assert headers["X-Conversation-ID"] == "c-1"
        assert headers["X-Workspace-ID"] == "w-1"


class TestMergeHeaders:
    def test_later_values_win(self):
        merged = merge_headers({"A": "1", "B": "1"}, [("B", "2")], None, {"C": "3"})

        assert merged == {"A": "1", "B": "2", "C": "3"}

    def test_empty(self):
        assert merge_headers() == {}
