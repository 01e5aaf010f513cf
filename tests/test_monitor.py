"""Tests for TrendMonitor."""
import pytest
from swarm_guard.budget import ResourceManager
from swarm_guard.monitor import MonitorConfig, TrendMonitor


def feed(monitor, agent_id, samples):
    for timestamp, tokens in samples:
        monitor.record_token_usage(agent_id, tokens, timestamp=timestamp)


def test_token_rate_over_recent_window():
    m = TrendMonitor()
    feed(m, "a", [(0.0, 100), (10.0, 600)])
    assert m.token_rate("a") == pytest.approx(50.0)
    assert m.token_rate("unknown") is None


def test_token_history_is_bounded():
    m = TrendMonitor(MonitorConfig(token_history_size=5))
    feed(m, "a", [(float(i), i * 10) for i in range(8)])
    history = m.token_history("a")
    assert len(history) == 5
    assert history[0].tokens == 30


def test_token_variance_needs_two_agents():
    m = TrendMonitor()
    feed(m, "a", [(0.0, 100)])
    assert m.get_token_variance() is None

    feed(m, "b", [(0.0, 300)])
    variance = m.get_token_variance()
    assert variance.mean == pytest.approx(200.0)
    assert variance.variance == pytest.approx(10000.0)
    assert variance.std_dev == pytest.approx(100.0)
    assert (variance.max, variance.min, variance.range) == (300, 100, 200)


def test_variance_alert_flags_outlier():
    m = TrendMonitor()
    for i in range(9):
        feed(m, f"steady-{i}", [(0.0, 100)])
    feed(m, "runaway", [(0.0, 1000)])

    alert = m.check_token_variance_alert()
    assert alert.alert_type == "high_token_variance"
    assert alert.agent_id == "runaway"
    assert alert.detail["deviations_from_mean"] == pytest.approx(3.0)


def test_variance_alert_skipped_when_all_equal():
    m = TrendMonitor()
    feed(m, "a", [(0.0, 500)])
    feed(m, "b", [(0.0, 500)])
    assert m.check_token_variance_alert() is None


def test_acceleration_alert_on_quadratic_growth():
    m = TrendMonitor()
    feed(m, "a", [(0.0, 0), (1.0, 1000), (2.0, 4000), (3.0, 9000), (4.0, 16000)])
    alert = m.check_acceleration_alert()
    assert alert.alert_type == "token_acceleration"
    assert alert.detail["acceleration"] == pytest.approx(2000.0)
    assert alert.detail["current_tokens"] == 16000


def test_no_acceleration_alert_on_linear_growth():
    m = TrendMonitor()
    feed(m, "a", [(float(t), t * 1000) for t in range(5)])
    assert m.check_acceleration_alert() is None


def test_acceleration_needs_full_window():
    m = TrendMonitor()
    feed(m, "a", [(0.0, 0), (1.0, 1000), (2.0, 4000), (3.0, 9000)])
    assert m.check_acceleration_alert() is None


def test_stagnation_alert():
    m = TrendMonitor()
    feed(m, "a", [(0.0, 500), (200.0, 550)])
    alert = m.check_stagnation_alert()
    assert alert.alert_type == "agent_stagnation"
    assert alert.detail["time_stagnant"] == pytest.approx(200.0)
    assert alert.detail["token_change"] == 50


def test_no_stagnation_when_tokens_move_or_time_is_short():
    m = TrendMonitor()
    feed(m, "busy", [(0.0, 500), (200.0, 5000)])
    feed(m, "quick", [(0.0, 500), (30.0, 510)])
    assert m.check_stagnation_alert() is None


def test_get_all_alerts_collects_each_kind():
    m = TrendMonitor()
    feed(m, "a", [(0.0, 500), (200.0, 550)])
    alerts = m.get_all_alerts()
    assert [a.alert_type for a in alerts] == ["agent_stagnation"]


def test_predict_context_overflow():
    m = TrendMonitor()
    for i, pct in enumerate([10.0, 20.0, 30.0, 40.0, 50.0]):
        m.record_context_percentage(pct, timestamp=i * 60.0)

    prediction = m.predict_context_overflow()
    assert prediction.current_percentage == pytest.approx(50.0)
    assert prediction.rate_per_minute == pytest.approx(10.0)
    assert prediction.time_to_threshold_seconds == pytest.approx(120.0)
    assert prediction.time_to_threshold_minutes == pytest.approx(2.0)
    assert prediction.predicted_overflow_time == pytest.approx(360.0)


@pytest.mark.parametrize(
    "percentages",
    [
        [10.0, 20.0, 30.0, 40.0],             # too few samples
        [50.0, 50.0, 50.0, 50.0, 50.0],       # flat
        [60.0, 50.0, 40.0, 30.0, 20.0],       # falling
        [50.0, 60.0, 70.0, 80.0, 90.0],       # already past threshold
    ],
)
def test_no_overflow_prediction(percentages):
    m = TrendMonitor()
    for i, pct in enumerate(percentages):
        m.record_context_percentage(pct, timestamp=i * 60.0)
    assert m.predict_context_overflow() is None


def test_no_overflow_prediction_without_time_span():
    m = TrendMonitor()
    for pct in [10.0, 20.0, 30.0, 40.0, 50.0]:
        m.record_context_percentage(pct, timestamp=100.0)
    assert m.predict_context_overflow() is None


def test_metrics_summary_windows_events():
    m = TrendMonitor()
    now = 10_000.0
    m.record_loop_detection("a", timestamp=now - 10)
    m.record_loop_detection("a", timestamp=now - 4000)
    m.record_intervention("a", success=True, timestamp=now)
    m.record_intervention("a", success=False, timestamp=now)
    m.record_scope_adjustment("b", timestamp=now - 60)
    m.record_agent_failure("b", "timeout", timestamp=now)
    m.record_agent_failure("b", "timeout", timestamp=now)
    m.record_agent_failure("b", "crash", timestamp=now)
    m.record_compaction(timestamp=now - 5)
    m.record_compaction(timestamp=now - 7200)
    m.record_context_percentage(42.5, timestamp=now)

    summary = m.get_metrics_summary(now=now)
    assert summary.loop_detection_rates == {"a": 1}
    assert summary.intervention_success_rates == {"a": pytest.approx(50.0)}
    assert summary.scope_adjustments_last_hour == {"b": 1}
    assert summary.agent_failures == {"b": {"timeout": 2, "crash": 1}}
    assert summary.compactions_last_hour == 1
    assert summary.context_percentage == 42.5
    assert summary.token_usage is None


def test_forget_agent_removes_every_trace():
    resources = ResourceManager()
    m = TrendMonitor(resources=resources)
    feed(m, "a", [(0.0, 100), (1.0, 200)])
    feed(m, "b", [(0.0, 100)])
    m.record_loop_detection("a", timestamp=0.0)
    m.record_agent_failure("a", "crash", timestamp=0.0)
    resources.track_usage("a", 100, 0.5)

    assert m.forget_agent("a") is True
    assert m.tracked_agents() == ["b"]
    assert m.token_rate("a") is None
    assert resources.tracked_agents() == []
    summary = m.get_metrics_summary(now=0.0)
    assert "a" not in summary.loop_detection_rates
    assert "a" not in summary.agent_failures
    assert m.forget_agent("a") is False


def test_config_validation():
    with pytest.raises(ValueError):
        MonitorConfig(acceleration_window=2)
    with pytest.raises(ValueError):
        MonitorConfig(token_history_size=3)


def test_event_history_is_bounded():
    m = TrendMonitor(MonitorConfig(event_history_size=3))
    for i in range(10):
        m.record_loop_detection("a", timestamp=float(i))
        m.record_agent_failure("a", "timeout", timestamp=float(i))
        m.record_compaction(timestamp=float(i))

    summary = m.get_metrics_summary(now=10.0)
    assert summary.loop_detection_rates == {"a": 3}
    assert summary.agent_failures == {"a": {"timeout": 3}}
    assert summary.compactions_last_hour == 3
