import pytest
from unittest.mock import patch, MagicMock

from onboarding.provisioning.user_client import create_local_user
from onboarding.settings import settings


@pytest.fixture(autouse=True)
def user_service_url():
    with patch.object(settings, "USER_SERVICE_URL", "http://users.test/local-users"):
        yield


def _resp(status_code, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    return resp


@patch("httpx.Client.post")
def test_create_local_user_posts_party(mock_post):
    mock_post.return_value = _resp(201)

    assert create_local_user("r1", "BP123", "AGENT") is True

    args, kwargs = mock_post.call_args
    assert args[0] == "http://users.test/local-users"
    assert kwargs["json"] == {"recordId": "r1", "externalPartyId": "BP123", "entityKind": "AGENT"}
    assert kwargs["headers"]["Idempotency-Key"] == "local-user:BP123"


@patch("httpx.Client.post")
def test_existing_user_counts_as_created(mock_post):
    mock_post.return_value = _resp(409, "exists")
    assert create_local_user("r1", "BP123", "AGENT") is True


@patch("httpx.Client.post")
def test_failure_raises(mock_post):
    mock_post.return_value = _resp(500, "boom")
    with pytest.raises(RuntimeError):
        create_local_user("r1", "BP123", "AGENT")


def test_missing_url_raises():
    with patch.object(settings, "USER_SERVICE_URL", ""):
        with pytest.raises(RuntimeError):
            create_local_user("r1", "BP123", "AGENT")
