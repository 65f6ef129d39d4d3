import time

from shield_gateway.detectors import MicrostructureBiasDetector, TempoAnomalyDetector
from shield_gateway.scheduler import StatsScheduler
from shield_gateway.sequence import Direction


def _scheduler(interval=5.0):
    tempo = TempoAnomalyDetector()
    micro = MicrostructureBiasDetector()
    return StatsScheduler(tempo, micro, interval, clock_ms=lambda: 42), tempo, micro


def test_run_once_on_empty_inputs():
    sched, _, _ = _scheduler()
    snap = sched.run_once()
    assert snap["computed_at_ms"] == 42
    assert snap["tempo_status"] == "NORMAL"
    assert snap["obi"]["signal"] == "BALANCED"
    assert snap["imbalance_trend"] == "INSUFFICIENT"
    assert snap["trade_count"] == 0
    assert sched.latest() is snap


def test_run_once_reflects_robotic_tempo_and_sell_bias():
    sched, tempo, micro = _scheduler()
    ts = 0
    for _ in range(12):
        ts += 1000
        tempo.record_action(ts)
        micro.record_trade(Direction.B, 10, ts)
    snap = sched.run_once()
    assert snap["tempo"]["robotic"] is True
    assert snap["tempo_status"] == "SUSPICIOUS"
    assert snap["obi"]["obi"] == -1.0
    assert snap["obi"]["signal"] == "SELL_BIAS"
    assert snap["trade_count"] == 12


def test_start_publishes_immediately_and_stop_joins():
    sched, _, _ = _scheduler(interval=0.01)
    sched.start()
    try:
        assert sched.running
        assert sched.latest()["trade_count"] == 0
        time.sleep(0.05)
    finally:
        sched.stop()
    assert not sched.running
