import random

import pytest

from shield_gateway.detectors import FrequencyAnomalyDetector, chi_square_uniform, runs_test
from shield_gateway.errors import InsufficientDataError
from shield_gateway.sequence import Direction, OutcomeEvent


def _seq(values: str):
    return tuple(OutcomeEvent(Direction(v), None, i * 1000) for i, v in enumerate(values))


def test_fewer_than_15_outcomes_never_votes():
    det = FrequencyAnomalyDetector()
    for n in range(0, 15):
        with pytest.raises(InsufficientDataError) as ei:
            det.evaluate(_seq("A" * n), {})
        assert ei.value.details == {"detector_id": "frequency", "have": n, "need": 15}


def test_all_same_side_triggers():
    vote = FrequencyAnomalyDetector().evaluate(_seq("A" * 16), {})
    assert vote.triggered
    assert vote.score == pytest.approx(0.85)
    flags = vote.details["flags"]
    assert flags["chi_square"] and flags["runs"] and flags["cycles"] and flags["entropy"]
    # Too short for tail repetition.
    assert not flags["pattern_repeat"]
    assert vote.details["max_consecutive"] == 16


def test_period_two_sequence_triggers_cycle_check():
    vote = FrequencyAnomalyDetector().evaluate(_seq("AB" * 10), {})
    assert vote.triggered
    assert vote.score > 0.60
    assert vote.details["flags"]["cycles"]
    assert vote.details["cycles"][0] == {"period": 2, "strength": 1.0}
    assert len(vote.details["cycles"]) <= 2
    assert vote.details["flags"]["pattern_repeat"]


def test_runs_statistics():
    runs, expected, z, longest = runs_test("AABBAABB")
    assert runs == 4
    assert expected == pytest.approx(5.0)
    assert longest == 2
    assert chi_square_uniform(8, 8) == 0.0
    assert chi_square_uniform(16, 0) == pytest.approx(16.0)


def test_fair_coin_rarely_triggers():
    rng = random.Random(1234)
    values = "".join(rng.choice("AB") for _ in range(1000))
    det = FrequencyAnomalyDetector()
    windows = 0
    triggered = 0
    for end in range(40, len(values) + 1, 5):
        windows += 1
        if det.evaluate(_seq(values[end - 40:end]), {}).triggered:
            triggered += 1
    assert windows > 100
    assert triggered / windows < 0.15


def test_learn_records_tail_patterns_without_changing_score():
    det = FrequencyAnomalyDetector()
    seq = _seq("AB" * 10)
    before = det.evaluate(seq, {}).score
    det.learn(seq, was_trap=True)
    det.learn(seq, was_trap=False)
    assert det.learned_patterns == {"ABABABABAB": {"count": 2, "traps": 1}}
    vote = det.evaluate(seq, {})
    assert vote.details["known_pattern"] == {"count": 2, "traps": 1}
    assert vote.score == before


def test_learn_needs_ten_outcomes():
    det = FrequencyAnomalyDetector()
    det.learn(_seq("ABA"), was_trap=True)
    assert det.learned_patterns == {}


def test_patterns_export_and_restore():
    det = FrequencyAnomalyDetector()
    det.learn(_seq("AAAAABBBBB"), was_trap=True)
    exported = det.export_patterns()

    other = FrequencyAnomalyDetector()
    restored = other.restore_patterns(exported + [["not-a-pattern", {}], "garbage"])
    assert restored == 1
    assert other.learned_patterns == {"AAAAABBBBB": {"count": 1, "traps": 1}}
    other.reset()
    assert other.learned_patterns == {}
