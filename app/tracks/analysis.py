"""Derive Activity column values from a decoded activity file.

Two separate mappings are produced so the caller can hand them to
fill_fields() in precedence order: device summary first, locally derived
second. Nothing here touches the database.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from app.ingestion.merge import coalesce
from app.tracks.models import DecodedActivity, SessionSummary, TrackPoint
from app.tracks.polyline import encode_polyline, simplify_track
from app.tracks.power import (
    intensity_factor,
    mean_maximal_power,
    normalized_power,
    round_half_up,
    training_stress_score,
)


@dataclass
class TrackMetrics:
    device: dict[str, Any] = field(default_factory=dict)
    derived: dict[str, Any] = field(default_factory=dict)

    @property
    def sources(self) -> list[dict[str, Any]]:
        """Sources in precedence order."""
        return [self.device, self.derived]

    def resolved(self) -> dict[str, Any]:
        """Merged view with device values taking precedence."""
        keys = set(self.device) | set(self.derived)
        return {key: coalesce(self.device.get(key), self.derived.get(key)) for key in keys}


def _round_or_none(value: float | None) -> int | None:
    return int(round(value)) if value is not None else None


def device_fields(summary: SessionSummary | None) -> dict[str, Any]:
    """Map the FIT session summary onto Activity columns, dropping missing values."""
    if summary is None:
        return {}
    values = {
        "start_date": summary.start_time,
        "distance": summary.total_distance,
        "moving_time": _round_or_none(summary.total_timer_time),
        "elapsed_time": _round_or_none(summary.total_elapsed_time),
        "total_elevation_gain": summary.total_ascent,
        "average_speed": summary.avg_speed,
        "max_speed": summary.max_speed,
        "average_watts": summary.avg_power,
        "max_watts": summary.max_power,
        "normalized_power": summary.normalized_power,
        "intensity_factor": summary.intensity_factor,
        "training_stress_score": summary.training_stress_score,
        "threshold_power": summary.threshold_power,
        "kilojoules": summary.total_work / 1000 if summary.total_work is not None else None,
        "average_heartrate": summary.avg_heart_rate,
        "max_heartrate": summary.max_heart_rate,
        "average_cadence": summary.avg_cadence,
        "calories": summary.total_calories,
    }
    return {key: value for key, value in values.items() if value is not None}


def _mean(values: Sequence[float]) -> float | None:
    return sum(values) / len(values) if values else None


def derived_fields(
    track_points: Sequence[TrackPoint],
    power_samples: Sequence[float],
    *,
    threshold_power: float | None = None,
    duration_seconds: float | None = None,
) -> dict[str, Any]:
    """Recompute metrics from the raw streams."""
    values: dict[str, Any] = {}

    coords = [point.coordinate for point in track_points]
    polyline = encode_polyline(simplify_track(coords))
    if polyline is not None:
        values["map_summary_polyline"] = polyline

    if power_samples:
        np_watts = normalized_power(power_samples)
        curve = mean_maximal_power(power_samples)
        values["average_watts"] = round_half_up(_mean(power_samples))
        values["max_watts"] = max(power_samples)
        if np_watts is not None:
            values["normalized_power"] = np_watts
            duration = duration_seconds or len(power_samples)
            factor = intensity_factor(np_watts, threshold_power)
            tss = training_stress_score(np_watts, threshold_power, duration)
            if factor is not None:
                values["intensity_factor"] = factor
            if tss is not None:
                values["training_stress_score"] = tss
        if curve:
            values["power_curve"] = curve
            values["kilojoules"] = round(sum(power_samples) / 1000, 1)

    heart_rates = [point.heart_rate for point in track_points if point.heart_rate is not None]
    if heart_rates:
        values["average_heartrate"] = round_half_up(_mean(heart_rates))
        values["max_heartrate"] = max(heart_rates)

    if track_points and track_points[0].timestamp is not None:
        values["start_date"] = track_points[0].timestamp

    return values


def derive_track_metrics(decoded: DecodedActivity) -> TrackMetrics:
    """Build device and derived mappings for a decoded activity file."""
    device = device_fields(decoded.summary)
    derived = derived_fields(
        decoded.track_points,
        decoded.power_samples,
        threshold_power=device.get("threshold_power"),
        duration_seconds=device.get("moving_time"),
    )
    return TrackMetrics(device=device, derived=derived)
