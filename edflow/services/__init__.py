"""
Core services for the journey engine.

This package contains the event log, scoring, projections, the monitoring
scheduler and the JourneyService facade that wires them together.
"""

from .event_log import JourneyEventLog, from_record
from .journey import JourneyService, TaskBoard
from .normalizer import normalize
from .projections import PatientProjection, ProjectionCache, build_room_phase_index, project
from .scheduler import MonitoringScheduler, Result
from .scoring import (
    ScoringEngine,
    UnknownAlgorithmError,
    available_algorithms,
    compute_score,
    register_algorithm,
    score_breakdown,
)

__all__ = [
    "JourneyEventLog",
    "from_record",
    "JourneyService",
    "TaskBoard",
    "normalize",
    "PatientProjection",
    "ProjectionCache",
    "build_room_phase_index",
    "project",
    "MonitoringScheduler",
    "Result",
    "ScoringEngine",
    "UnknownAlgorithmError",
    "available_algorithms",
    "compute_score",
    "register_algorithm",
    "score_breakdown",
]
