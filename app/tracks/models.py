"""Transient structures produced by the activity file decoder.

None of these are persisted. Only the derived metrics and the encoded
polyline end up on the Activity row.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, Field


@dataclass(frozen=True, slots=True)
class TrackPoint:
    """A positioned sample from a record message."""

    timestamp: datetime | None
    latitude: float
    longitude: float
    elevation: float | None = None
    heart_rate: int | None = None
    power: int | None = None
    cadence: int | None = None
    speed: float | None = None
    distance: float | None = None

    @property
    def coordinate(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)


class SessionSummary(BaseModel):
    """Device-calculated aggregates from the session message.

    These take precedence over anything recomputed from the track.
    """

    sport: str | None = None
    sub_sport: str | None = None
    start_time: datetime | None = None
    total_elapsed_time: float | None = None
    total_timer_time: float | None = None
    total_distance: float | None = None
    total_ascent: float | None = None
    total_descent: float | None = None
    avg_speed: float | None = None
    max_speed: float | None = None
    avg_heart_rate: int | None = None
    max_heart_rate: int | None = None
    avg_cadence: int | None = None
    avg_power: int | None = None
    max_power: int | None = None
    normalized_power: int | None = None
    training_stress_score: float | None = None
    intensity_factor: float | None = None
    threshold_power: int | None = None
    total_work: int | None = None  # joules
    total_calories: int | None = None


class DecodedActivity(BaseModel):
    """Result of decoding one activity file."""

    track_points: list[TrackPoint] = Field(default_factory=list)
    power_samples: list[int] = Field(default_factory=list)
    summary: SessionSummary | None = None
    record_count: int = 0
    skipped_records: int = 0

    model_config = {"arbitrary_types_allowed": True}

    @property
    def has_gps(self) -> bool:
        return bool(self.track_points)
