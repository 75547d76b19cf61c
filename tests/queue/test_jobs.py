import pytest
from unittest.mock import patch, MagicMock

from onboarding.queue.jobs import create_local_user_job, enqueue_local_user_creation
from onboarding.settings import settings


@patch("onboarding.queue.jobs.get_queue")
def test_enqueue_local_user_creation(mock_get_queue):
    mock_queue = MagicMock()
    mock_get_queue.return_value = mock_queue

    with patch.object(settings, "ENABLE_LOCAL_USER_PROVISIONING", True):
        assert enqueue_local_user_creation("r1", "BP123", "AGENT") is True

    args, kwargs = mock_queue.enqueue.call_args
    assert args == (create_local_user_job, "r1", "BP123", "AGENT")
    assert kwargs["retry"].max == 5


@patch("onboarding.queue.jobs.get_queue")
def test_enqueue_disabled(mock_get_queue):
    with patch.object(settings, "ENABLE_LOCAL_USER_PROVISIONING", False):
        assert enqueue_local_user_creation("r1", "BP123", "AGENT") is False
    assert not mock_get_queue.called


@patch("onboarding.queue.jobs.log")
@patch("onboarding.queue.jobs.create_local_user")
def test_create_local_user_job(mock_create, mock_log):
    create_local_user_job("r1", "BP123", "CUSTOMER")
    mock_create.assert_called_with("r1", "BP123", "CUSTOMER")
    mock_log.assert_called_once()
    assert mock_log.call_args.kwargs["event"] == "local_user_job_start"


@patch("onboarding.queue.jobs.log")
@patch("onboarding.queue.jobs.create_local_user")
def test_create_local_user_job_reraises_for_rq_retry(mock_create, mock_log):
    mock_create.side_effect = RuntimeError("User service failed: 500")
    with pytest.raises(RuntimeError):
        create_local_user_job("r1", "BP123", "AGENT")
    assert mock_log.call_args.kwargs["event"] == "local_user_job_exception"
