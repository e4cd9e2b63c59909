from __future__ import annotations

from typing import Any, Mapping

import pytest
import requests

from donations.services.identity_provider import (
    IdentityProviderClient,
    IdentityProviderConfig,
    IdentityProviderError,
    ProviderErrorKind,
    classify_provider_error,
)


class DummyResponse:
    def __init__(self, status_code: int = 200, *, payload: Any = None, text: str | None = None, reason: str | None = None):
        self.status_code = status_code
        self._payload = payload
        self.text = text or ""
        self.reason = reason or ""

    def json(self) -> Mapping[str, Any] | None:
        if self._payload is None:
            raise ValueError("no json payload")
        return self._payload


def _build_client(record: list[dict[str, Any]], *, response: DummyResponse | Exception) -> IdentityProviderClient:
    def _request(method: str, url: str, headers: dict[str, str], json_payload, params, timeout: int):
        record.append(
            {
                "method": method,
                "url": url,
                "headers": headers,
                "json": json_payload,
                "params": params,
                "timeout": timeout,
            }
        )
        if isinstance(response, Exception):
            raise response
        return response

    config = IdentityProviderConfig(base_url="auth.example.org", service_key="service-key", timeout_seconds=12)
    return IdentityProviderClient(config=config, request_func=_request)


def test_client_requires_url_and_service_key():
    with pytest.raises(ValueError):
        IdentityProviderClient(config=IdentityProviderConfig(base_url="", service_key="key"))

    with pytest.raises(ValueError):
        IdentityProviderClient(config=IdentityProviderConfig(base_url="auth.example.org", service_key=""))


@pytest.mark.parametrize(
    ("status_code", "message", "expected"),
    [
        (429, "Too many requests", ProviderErrorKind.TRANSIENT),
        (500, "Database error creating new user", ProviderErrorKind.TRANSIENT),
        (503, None, ProviderErrorKind.TRANSIENT),
        (None, "connection reset", ProviderErrorKind.TRANSIENT),
        (422, "A user with this email address has already been registered", ProviderErrorKind.CONFLICT),
        (409, None, ProviderErrorKind.CONFLICT),
        (400, "User already exists", ProviderErrorKind.CONFLICT),
        (400, "Invalid email", ProviderErrorKind.FATAL),
        (401, "Invalid API key", ProviderErrorKind.FATAL),
    ],
)
def test_classify_provider_error(status_code, message, expected):
    assert classify_provider_error(status_code, message) is expected


def test_list_accounts_sends_pagination_and_auth():
    calls: list[dict[str, Any]] = []
    response = DummyResponse(
        payload={"users": [{"id": "a1", "email": "Contributor0005@Example.org", "user_metadata": {"contributor_id": 5}}]}
    )
    client = _build_client(calls, response=response)

    accounts = client.list_accounts(page=2, per_page=500)

    assert len(accounts) == 1
    assert accounts[0].id == "a1"
    assert accounts[0].email == "contributor0005@example.org"
    assert accounts[0].metadata == {"contributor_id": 5}
    assert calls[0]["method"] == "GET"
    assert calls[0]["url"] == "https://auth.example.org/auth/v1/admin/users"
    assert calls[0]["params"] == {"page": 2, "per_page": 500}
    assert calls[0]["headers"]["Authorization"] == "Bearer service-key"
    assert calls[0]["timeout"] == 12


def test_create_account_posts_confirmed_user_with_metadata():
    calls: list[dict[str, Any]] = []
    response = DummyResponse(200, payload={"id": "new-id", "email": "contributor0007@example.org"})
    client = _build_client(calls, response=response)

    metadata = IdentityProviderClient.build_import_metadata(7, "Mona")
    account = client.create_account("contributor0007@example.org", metadata=metadata)

    assert account.id == "new-id"
    body = calls[0]["json"]
    assert calls[0]["method"] == "POST"
    assert body["email"] == "contributor0007@example.org"
    assert body["email_confirm"] is True
    assert len(body["password"]) >= 24
    assert body["user_metadata"]["contributor_id"] == 7
    assert body["user_metadata"]["contributor_name"] == "Mona"
    assert body["user_metadata"]["created_by_import"] is True


def test_create_account_maps_registered_email_to_conflict():
    calls: list[dict[str, Any]] = []
    response = DummyResponse(422, payload={"msg": "A user with this email address has already been registered"})
    client = _build_client(calls, response=response)

    with pytest.raises(IdentityProviderError) as excinfo:
        client.create_account("contributor0007@example.org")

    assert excinfo.value.kind is ProviderErrorKind.CONFLICT
    assert excinfo.value.status_code == 422
    assert "already been registered" in str(excinfo.value)


def test_server_errors_are_transient():
    calls: list[dict[str, Any]] = []
    client = _build_client(calls, response=DummyResponse(500, text="Database error saving new user"))

    with pytest.raises(IdentityProviderError) as excinfo:
        client.create_account("contributor0007@example.org")

    assert excinfo.value.is_transient
    assert excinfo.value.is_server_error


def test_network_failures_are_transient():
    calls: list[dict[str, Any]] = []
    client = _build_client(calls, response=requests.ConnectionError("connection refused"))

    with pytest.raises(IdentityProviderError) as excinfo:
        client.list_accounts()

    assert excinfo.value.kind is ProviderErrorKind.TRANSIENT
    assert excinfo.value.status_code is None


def test_delete_account_accepts_no_content():
    calls: list[dict[str, Any]] = []
    client = _build_client(calls, response=DummyResponse(204))

    client.delete_account("abc")

    assert calls[0]["method"] == "DELETE"
    assert calls[0]["url"].endswith("/auth/v1/admin/users/abc")
