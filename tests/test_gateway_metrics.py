from unittest.mock import patch, MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

import onboarding.observability.metrics as metrics


def test_percentile_nearest_rank():
    assert metrics._percentile([], 0.5) == 0.0
    assert metrics._percentile([3.0, 1.0, 2.0], 0.5) == 2.0
    assert metrics._p50_p95([0.1] * 9 + [2.0]) == (0.1, 2.0)


@patch("onboarding.observability.metrics.get_redis")
def test_record_step_outcome_tracks_failures(mock_get_redis):
    mock_redis = MagicMock()
    mock_get_redis.return_value = mock_redis

    metrics.record_step_outcome("APPROVE", "SUCCESS", "r1")
    assert not mock_redis.lpush.called

    metrics.record_step_outcome("APPROVE", "TRANSIENT_FAILURE", "r2")
    mock_redis.hincrby.assert_called_with(metrics.K_STEP_OUTCOMES, "APPROVE:TRANSIENT_FAILURE", 1)
    mock_redis.lpush.assert_called_with(metrics.K_STEP_FAIL_RECENT, "r2")

    metrics.record_step_outcome("APPROVE", "RESULT_NOT_PERSISTED", "r3")
    mock_redis.lpush.assert_called_with(metrics.K_STEP_FAIL_RECENT, "r3")


@patch("onboarding.observability.metrics.log")
@patch("onboarding.observability.metrics.get_redis")
def test_metrics_write_failure_is_logged_not_raised(mock_get_redis, mock_log):
    mock_get_redis.return_value.hincrby.side_effect = RedisConnectionError("down")

    metrics.record_gateway_call("create", "answered", 120)

    assert mock_log.call_args.kwargs["event"] == "metrics_write_failed"


@patch("onboarding.observability.metrics.get_redis")
def test_gateway_snapshot(mock_get_redis):
    mock_redis = MagicMock()
    mock_get_redis.return_value = mock_redis

    def hgetall(key):
        if key == metrics.K_GW_CALLS:
            return {"create:answered": "3", "create:timeout": "1"}
        return {"APPROVE:SUCCESS": "3"}

    def lrange(key, start, end):
        if key == metrics.K_GW_LAT:
            return ["100", "200", "300", "bad"]
        return ["r9"]

    mock_redis.hgetall.side_effect = hgetall
    mock_redis.lrange.side_effect = lrange

    snap = metrics.get_gateway_snapshot()

    assert snap["gateway_calls"] == {"create:answered": 3, "create:timeout": 1}
    assert snap["gateway_availability"] == 75.0
    assert snap["p50_gateway_latency"] == 0.2
    assert snap["p95_gateway_latency"] == 0.3
    assert snap["step_outcomes"] == {"APPROVE:SUCCESS": 3}
    assert snap["recent_failed_records"] == ["r9"]
