"""Tests for worker task authentication."""

from unittest.mock import MagicMock, patch

from tourbook.api import task_auth
from tourbook.api.task_auth import extract_bearer_token, verify_task_auth, verify_task_oidc


def _request(headers: dict) -> MagicMock:
    request = MagicMock()
    request.headers = headers
    return request


def test_extract_bearer_token():
    assert extract_bearer_token(_request({"Authorization": "Bearer abc"})) == "abc"
    assert extract_bearer_token(_request({"Authorization": "Basic abc"})) is None
    assert extract_bearer_token(_request({})) is None


def test_local_secret_accepted(monkeypatch):
    monkeypatch.setenv("TASKS_OIDC_AUDIENCE", "tourbook-tasks-local")
    monkeypatch.setenv("INTERNAL_TASK_SECRET", "s3cret")
    assert verify_task_auth(_request({"X-Internal-Task-Secret": "s3cret"})) is True


def test_local_secret_ignored_in_production(monkeypatch):
    monkeypatch.setenv("TASKS_OIDC_AUDIENCE", "https://worker.example.com")
    monkeypatch.setenv("INTERNAL_TASK_SECRET", "s3cret")
    assert verify_task_auth(_request({"X-Internal-Task-Secret": "s3cret"})) is False


def test_wrong_local_secret(monkeypatch):
    monkeypatch.setenv("TASKS_OIDC_AUDIENCE", "tourbook-tasks-local")
    monkeypatch.setenv("INTERNAL_TASK_SECRET", "s3cret")
    assert verify_task_auth(_request({"X-Internal-Task-Secret": "guess"})) is False


def test_oidc_fails_closed_without_audience(monkeypatch):
    monkeypatch.delenv("TASKS_OIDC_AUDIENCE", raising=False)
    with patch.object(task_auth.id_token, "verify_oauth2_token") as verify:
        assert verify_task_oidc("token") is False
    verify.assert_not_called()


def test_oidc_valid_token(monkeypatch):
    monkeypatch.setenv("TASKS_OIDC_AUDIENCE", "https://worker.example.com")
    monkeypatch.setenv("TASKS_OIDC_SERVICE_ACCOUNT", "tasks@p.iam.gserviceaccount.com")
    with patch.object(
        task_auth.id_token,
        "verify_oauth2_token",
        return_value={"email": "tasks@p.iam.gserviceaccount.com"},
    ):
        assert verify_task_auth(_request({"Authorization": "Bearer tok"})) is True


def test_oidc_wrong_service_account(monkeypatch):
    monkeypatch.setenv("TASKS_OIDC_AUDIENCE", "https://worker.example.com")
    monkeypatch.setenv("TASKS_OIDC_SERVICE_ACCOUNT", "tasks@p.iam.gserviceaccount.com")
    with patch.object(
        task_auth.id_token, "verify_oauth2_token", return_value={"email": "other@x.com"}
    ):
        assert verify_task_oidc("tok") is False


def test_oidc_invalid_token(monkeypatch):
    monkeypatch.setenv("TASKS_OIDC_AUDIENCE", "https://worker.example.com")
    with patch.object(
        task_auth.id_token, "verify_oauth2_token", side_effect=ValueError("bad token")
    ):
        assert verify_task_oidc("a.b.c") is False
