import math

import pytest

from zonelimit.metrics import (
    LabeledCounter,
    LabeledGauge,
    LabeledHistogram,
    MetricsCollector,
    get_metrics,
    register_metrics,
    reset_metrics,
)


@pytest.fixture(autouse=True)
def fresh_metrics():
    reset_metrics()
    yield
    reset_metrics()


def test_metrics_flow():
    window = 10
    max_events = 2
    metrics = register_metrics()
    assert get_metrics() is metrics
    collector = MetricsCollector()

    collector.record_config("test_zone", max_events, window)
    assert metrics.config.value("test_zone", str(max_events), f"{window}s") == 1

    for _ in range(max_events):
        collector.record_request_per_key("test_zone", "static")
        collector.record_process_time_per_key(0.002, "test_zone", "static")

    assert metrics.requests_total.value("test_zone", "") >= max_events
    assert metrics.requests_total.value("test_zone", "static") >= max_events

    collector.record_declined_request("test_zone", "static")
    assert metrics.declined_total.value("test_zone", "") == 1
    assert metrics.declined_total.value("test_zone", "static") == 1

    assert metrics.process_time.count("test_zone", "") == max_events
    assert metrics.process_time.count("test_zone", "static") == max_events


def test_register_is_idempotent():
    first = register_metrics()
    collector = MetricsCollector()
    collector.record_request_per_key("zone", "key")
    second = register_metrics()
    assert second.requests_total.value("zone", "key") == 1
    assert second.requests_total.value("zone", "") == 1
    assert get_metrics() is first


def test_reset_forgets_metrics():
    first = register_metrics()
    reset_metrics()
    assert get_metrics() is None
    assert register_metrics() is not first


def test_collector_without_registration_records_nothing():
    collector = MetricsCollector()
    collector.record_request_per_key("z", "k")
    metrics = register_metrics()
    assert metrics.requests_total.value("z", "k") == 0


def test_disabled_collector_records_nothing():
    metrics = register_metrics()
    collector = MetricsCollector(enabled=False)
    collector.record_request_per_key("z", "k")
    collector.update_keys_count("z", 5)
    assert metrics.requests_total.value("z", "k") == 0
    assert metrics.keys_total.value("z") == 0


def test_zone_flag_labels():
    metrics = register_metrics()
    collector = MetricsCollector()
    collector.record_request(False)
    collector.record_process_time(0.5, False)
    assert metrics.requests_total.value("false", "") == 1
    assert metrics.process_time.count("false", "") == 1
    assert metrics.process_time.sum("false", "") == 0.5


def test_keys_count_gauge_is_overwritten():
    metrics = register_metrics()
    collector = MetricsCollector()
    collector.update_keys_count("zone", 3)
    collector.update_keys_count("zone", 1)
    assert metrics.keys_total.value("zone") == 1


def test_wrong_label_count():
    counter = LabeledCounter("c", "help", ("zone", "key"))
    with pytest.raises(ValueError):
        counter.inc("only-zone")
    gauge = LabeledGauge("g", "help", ("zone",))
    with pytest.raises(ValueError):
        gauge.set(1, "a", "b")


def test_histogram_buckets_are_cumulative():
    histogram = LabeledHistogram("h", "help", ("zone",), (0.001, 0.005, 1.0))
    histogram.observe(0.003, "z")
    histogram.observe(2.0, "z")
    counts = histogram.bucket_counts("z")
    assert counts[0.001] == 0
    assert counts[0.005] == 1
    assert counts[1.0] == 1
    assert counts[math.inf] == 2
    assert histogram.count("z") == 2


def test_histogram_unknown_series_is_empty():
    histogram = LabeledHistogram("h", "help", ("zone",), (0.1,))
    assert histogram.count("nothing") == 0
    assert histogram.sum("nothing") == 0.0
    assert histogram.bucket_counts("nothing") == {0.1: 0, math.inf: 0}