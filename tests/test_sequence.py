import pytest

from shield_gateway.errors import SHIELD_E_VALIDATION, ValidationError
from shield_gateway.sequence import (
    Direction,
    OutcomeEvent,
    OutcomeSequence,
    parse_direction,
    parse_optional_direction,
    values_of,
)


def _ev(v: str, ts: int = 0) -> OutcomeEvent:
    return OutcomeEvent(Direction(v), None, ts)


def test_sequence_evicts_oldest_at_capacity():
    seq = OutcomeSequence(capacity=40)
    for i in range(45):
        seq.append(_ev("A" if i % 2 else "B", ts=i))
    snap = seq.snapshot()
    assert len(seq) == 40
    assert snap[0].timestamp_ms == 5
    assert snap[-1].timestamp_ms == 44


def test_snapshot_is_unaffected_by_later_appends():
    seq = OutcomeSequence(capacity=3)
    for v in "AAB":
        seq.append(_ev(v))
    before = seq.snapshot()
    seq.append(_ev("B"))
    assert values_of(before) == "AAB"
    assert values_of(seq.snapshot()) == "ABB"


def test_clear_empties_sequence():
    seq = OutcomeSequence(capacity=5)
    seq.append(_ev("A"))
    seq.clear()
    assert len(seq) == 0
    assert seq.snapshot() == ()


def test_parse_direction_accepts_case_and_enum():
    assert parse_direction("a") is Direction.A
    assert parse_direction(" B ") is Direction.B
    assert parse_direction(Direction.A) is Direction.A
    assert parse_optional_direction(None) is None
    assert Direction.A.opposite is Direction.B


@pytest.mark.parametrize("bad", ["C", "", None, 1, "AB"])
def test_parse_direction_rejects_garbage(bad):
    with pytest.raises(ValidationError) as ei:
        parse_direction(bad, "candidate")
    assert ei.value.code == SHIELD_E_VALIDATION
    assert ei.value.details["field"] == "candidate"


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        OutcomeSequence(capacity=0)
