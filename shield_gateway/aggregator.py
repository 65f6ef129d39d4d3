"""Unweighted voting over the registered detectors.

The aggregator is fail-open per detector: an abstention or any exception from
a detector counts as "not triggered", and the evaluation as a whole never
fails. Confidence is the triggered fraction of the registered set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from . import metrics
from .detectors import DetectorVote, Detector
from .errors import InsufficientDataError
from .ops_stats import OpsStats
from .sequence import OutcomeEvent

logger = logging.getLogger("shield_gateway.aggregator")


@dataclass(frozen=True)
class AggregateResult:
    confidence: float
    ballots: Tuple[DetectorVote, ...]
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def votes(self) -> Dict[str, bool]:
        return {b.detector_id: bool(b.triggered) for b in self.ballots}

    @property
    def triggered_count(self) -> int:
        return sum(1 for b in self.ballots if b.triggered)

    @property
    def abstentions(self) -> List[str]:
        return [b.detector_id for b in self.ballots if b.abstained]

    def details(self) -> Dict[str, Any]:
        return {b.detector_id: b.to_dict() for b in self.ballots}


class VotingAggregator:
    """Polls a closed, explicitly registered detector set."""

    def __init__(self, detectors: Sequence[Detector] = (), ops_stats: Optional[OpsStats] = None):
        self._detectors: List[Detector] = []
        self.ops_stats = ops_stats
        for d in detectors:
            self.register(d)

    def register(self, detector: Detector) -> None:
        det_id = getattr(detector, "detector_id", None)
        if not det_id:
            raise ValueError("detector must expose a non-empty detector_id")
        if any(d.detector_id == det_id for d in self._detectors):
            raise ValueError(f"detector already registered: {det_id}")
        self._detectors.append(detector)

    @property
    def detector_ids(self) -> List[str]:
        return [d.detector_id for d in self._detectors]

    def get(self, detector_id: str) -> Detector:
        for d in self._detectors:
            if d.detector_id == detector_id:
                return d
        raise KeyError(detector_id)

    def evaluate(
        self,
        sequence: Tuple[OutcomeEvent, ...],
        context: Optional[Mapping[str, Any]] = None,
    ) -> AggregateResult:
        ctx: Mapping[str, Any] = context or {}
        ballots: List[DetectorVote] = []
        errors: Dict[str, str] = {}
        for det in self._detectors:
            det_id = det.detector_id
            try:
                vote = det.evaluate(sequence, ctx)
            except InsufficientDataError as e:
                vote = DetectorVote.abstain(
                    det_id, "insufficient_data", have=e.details.get("have"), need=e.details.get("need")
                )
            except Exception as e:
                logger.warning("Detector %s failed, counted as abstention: %s", det_id, e)
                errors[det_id] = f"{type(e).__name__}: {e}"
                vote = DetectorVote.abstain(det_id, "error", error=errors[det_id])
                if self.ops_stats is not None:
                    self.ops_stats.record_detector_error(det_id)
            if vote.abstained and det_id not in errors and self.ops_stats is not None:
                self.ops_stats.record_abstention(det_id)
            metrics.record_detector_vote(det_id, vote)
            ballots.append(vote)

        registered = len(self._detectors)
        triggered = sum(1 for b in ballots if b.triggered)
        confidence = (triggered / registered) if registered else 0.0
        logger.debug(
            "votes=%s confidence=%.2f",
            {b.detector_id: b.triggered for b in ballots},
            confidence,
        )
        return AggregateResult(confidence=confidence, ballots=tuple(ballots), errors=errors)
