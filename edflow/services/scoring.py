"""
EWS scoring engine: a registry of named, versioned scoring algorithms.

Every score that reaches the journey log must come from here. Algorithms are
pure functions of a CanonicalObservation; once an id is registered its
behaviour is frozen, so a new algorithm always gets a new id and historical
scores stay valid.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal, Protocol

import structlog

from edflow.config import DEFAULT_ALGORITHM, ScoringConfig
from edflow.domain.models import CanonicalObservation, EwsResult

logger = structlog.get_logger(__name__)

# (inclusive upper bound, points); the last band has no upper bound
Bands = Sequence[tuple[float | None, int]]

_ALERT_VALUES = {"a", "alert"}


class UnknownAlgorithmError(KeyError):
    """Raised when a caller asks for an algorithm id that is not registered."""

    def __init__(self, algorithm_id: str) -> None:
        super().__init__(algorithm_id)
        self.algorithm_id = algorithm_id

    def __str__(self) -> str:
        return f"Unknown EWS algorithm: {self.algorithm_id!r}"


class ScoringAlgorithm(Protocol):
    """
    Protocol every registered algorithm implements.

    ``breakdown`` returns points per parameter; the score is their sum.
    """

    algo_id: str

    def breakdown(self, vitals: CanonicalObservation) -> dict[str, int]: ...


def score_band(value: float | None, bands: Bands) -> int:
    """Points for ``value`` from the first band whose upper bound it does not exceed."""
    if value is None:
        return 0
    for upper, points in bands:
        if upper is None or value <= upper:
            return points
    return 0


def _is_alert(loc: str | None) -> bool:
    return loc is None or loc.strip().lower() in _ALERT_VALUES


RR_BANDS: Bands = ((8, 3), (11, 1), (20, 0), (24, 2), (None, 3))
SPO2_BANDS: Bands = ((91, 3), (93, 2), (95, 1), (None, 0))
TEMP_BANDS: Bands = ((35.0, 3), (36.0, 1), (38.0, 0), (39.0, 1), (None, 2))
SBP_BANDS: Bands = ((90, 3), (100, 2), (110, 1), (219, 0), (None, 3))
HR_BANDS: Bands = ((40, 3), (50, 1), (90, 0), (110, 1), (130, 2), (None, 3))

SPO2_SCALE2_BANDS: Bands = ((83, 3), (85, 2), (87, 1), (None, 0))
AUS_SBP_BANDS: Bands = ((90, 3), (100, 2), (110, 1), (219, 0), (None, 2))


@dataclass(frozen=True)
class AdultSimpleV1:
    """Baseline adult score. Supplemental oxygen adds a flat point."""

    algo_id: str = "adult-simple-v1"

    def breakdown(self, vitals: CanonicalObservation) -> dict[str, int]:
        return {
            "rr": score_band(vitals.rr, RR_BANDS),
            "spo2": score_band(vitals.spo2, SPO2_BANDS),
            "o2": 1 if vitals.oxygen.on_oxygen else 0,
            "temp": score_band(vitals.temp, TEMP_BANDS),
            "sbp": score_band(vitals.sbp, SBP_BANDS),
            "hr": score_band(vitals.hr, HR_BANDS),
            "loc": 0 if _is_alert(vitals.loc) else 3,
        }


@dataclass(frozen=True)
class AusEwsV1:
    """
    Australian chart variant.

    Differs from the baseline in three places: SBP >= 220 scores 2, oxygen
    therapy carries no point, and SpO2 can be read on scale 2 for patients
    with chronic hypoxaemia.
    """

    algo_id: str = "aus-ews-v1"
    spo2_scale: Literal[1, 2] = 1

    def breakdown(self, vitals: CanonicalObservation) -> dict[str, int]:
        spo2_bands = SPO2_BANDS if self.spo2_scale == 1 else SPO2_SCALE2_BANDS
        return {
            "rr": score_band(vitals.rr, RR_BANDS),
            "spo2": score_band(vitals.spo2, spo2_bands),
            "temp": score_band(vitals.temp, TEMP_BANDS),
            "sbp": score_band(vitals.sbp, AUS_SBP_BANDS),
            "hr": score_band(vitals.hr, HR_BANDS),
            "loc": 0 if _is_alert(vitals.loc) else 3,
        }


class AlgorithmRegistry:
    """Named algorithms. Ids are write-once."""

    def __init__(self) -> None:
        self._algorithms: dict[str, ScoringAlgorithm] = {}

    def register(self, algorithm: ScoringAlgorithm) -> None:
        if not hasattr(algorithm, "breakdown"):
            raise TypeError(f"Algorithm {algorithm} must implement ScoringAlgorithm protocol")
        if algorithm.algo_id in self._algorithms:
            raise ValueError(f"Algorithm id {algorithm.algo_id!r} is already registered")
        self._algorithms[algorithm.algo_id] = algorithm
        logger.info("ews_algorithm_registered", algo_id=algorithm.algo_id)

    def get(self, algorithm_id: str) -> ScoringAlgorithm:
        try:
            return self._algorithms[algorithm_id]
        except KeyError:
            raise UnknownAlgorithmError(algorithm_id) from None

    def __contains__(self, algorithm_id: object) -> bool:
        return algorithm_id in self._algorithms

    def ids(self) -> list[str]:
        return sorted(self._algorithms)


registry = AlgorithmRegistry()
registry.register(AdultSimpleV1())
registry.register(AusEwsV1())
registry.register(AusEwsV1(algo_id="aus-ews-v1-spo2-scale2", spo2_scale=2))


def register_algorithm(algorithm: ScoringAlgorithm) -> None:
    registry.register(algorithm)


def get_algorithm(algorithm_id: str) -> ScoringAlgorithm:
    return registry.get(algorithm_id)


def available_algorithms() -> list[str]:
    return registry.ids()


class ScoringEngine:
    """
    Resolves algorithm ids against a registry under a configured policy.

    With policy ``"error"`` an unknown id raises UnknownAlgorithmError; with
    ``"fallback"`` it is logged and the default algorithm is used instead.
    """

    def __init__(
        self, config: ScoringConfig | None = None, algorithms: AlgorithmRegistry | None = None
    ) -> None:
        self.config = config or ScoringConfig()
        self.algorithms = algorithms or registry
        self.logger = logger.bind(component="scoring_engine")
        # Fail fast on a misconfigured default
        self.algorithms.get(self.config.default_algorithm)

    def resolve(self, algorithm_id: str | None = None) -> ScoringAlgorithm:
        requested = algorithm_id or self.config.default_algorithm
        if requested in self.algorithms:
            return self.algorithms.get(requested)
        if self.config.unknown_algorithm_policy == "fallback":
            self.logger.warning(
                "ews_algorithm_fallback",
                requested=requested,
                fallback=self.config.default_algorithm,
            )
            return self.algorithms.get(self.config.default_algorithm)
        raise UnknownAlgorithmError(requested)

    def compute_score(self, vitals: CanonicalObservation, algorithm_id: str | None = None) -> int:
        return sum(self.resolve(algorithm_id).breakdown(vitals).values())

    def score_breakdown(
        self, vitals: CanonicalObservation, algorithm_id: str | None = None
    ) -> EwsResult:
        algorithm = self.resolve(algorithm_id)
        by_param = algorithm.breakdown(vitals)
        score = sum(by_param.values())
        any_three = any(points >= 3 for points in by_param.values())

        if any_three or score >= 7:
            band: Literal["low", "medium", "high"] = "high"
        elif score >= 4:
            band = "medium"
        else:
            band = "low"

        return EwsResult(
            score=score,
            algo_id=algorithm.algo_id,
            band=band,
            by_param=by_param,
            any_three=any_three,
            requires_escalation=band == "high",
        )


_default_engine = ScoringEngine(ScoringConfig(default_algorithm=DEFAULT_ALGORITHM))


def compute_score(vitals: CanonicalObservation, algorithm_id: str | None = None) -> int:
    """Score ``vitals`` with the named algorithm, or the baseline when none is given."""
    return _default_engine.compute_score(vitals, algorithm_id)


def score_breakdown(vitals: CanonicalObservation, algorithm_id: str | None = None) -> EwsResult:
    return _default_engine.score_breakdown(vitals, algorithm_id)
