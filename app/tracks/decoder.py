"""FIT activity file decoder.

Turns a FIT buffer into positioned track points, a power sample stream and
the device session summary.

Rules:
- Buffers shorter than the FIT header, or with an unreadable header, are MalformedFileError
- A corrupt stream (CRC mismatch, truncation, bad definitions) is DecodeError and
  nothing decoded so far is returned
- A single record whose values cannot be coerced is skipped and counted
- Messages the profile does not know are ignored
"""

from __future__ import annotations

import io
from datetime import datetime, timezone
from typing import Any

import fitparse
from fitparse.utils import FitHeaderError, FitParseError
from loguru import logger

from app.ingestion.errors import DecodeError, MalformedFileError
from app.tracks.models import DecodedActivity, SessionSummary, TrackPoint

MIN_FIT_FILE_BYTES = 12
SEMICIRCLES_TO_DEGREES = 180.0 / 2**31


def _to_degrees(value: Any) -> float | None:
    if value is None:
        return None
    # Raw semicircles come back as int; a units-converting processor yields float degrees
    if isinstance(value, int):
        return value * SEMICIRCLES_TO_DEGREES
    return float(value)


def _as_utc(value: Any) -> datetime | None:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(round(float(value)))


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


def _first(values: dict[str, Any], *names: str) -> Any:
    for name in names:
        value = values.get(name)
        if value is not None:
            return value
    return None


def _track_point(values: dict[str, Any]) -> TrackPoint | None:
    """Build a TrackPoint from record values, or None when the record has no valid position."""
    latitude = _to_degrees(values.get("position_lat"))
    longitude = _to_degrees(values.get("position_long"))
    if latitude is None or longitude is None:
        return None
    if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
        return None

    return TrackPoint(
        timestamp=_as_utc(values.get("timestamp")),
        latitude=latitude,
        longitude=longitude,
        elevation=_optional_float(_first(values, "enhanced_altitude", "altitude")),
        heart_rate=_optional_int(values.get("heart_rate")),
        power=_optional_int(values.get("power")),
        cadence=_optional_int(values.get("cadence")),
        speed=_optional_float(_first(values, "enhanced_speed", "speed")),
        distance=_optional_float(values.get("distance")),
    )


def _session_summary(values: dict[str, Any]) -> SessionSummary:
    sport = values.get("sport")
    sub_sport = values.get("sub_sport")
    return SessionSummary(
        sport=str(sport) if sport is not None else None,
        sub_sport=str(sub_sport) if sub_sport is not None else None,
        start_time=_as_utc(values.get("start_time")),
        total_elapsed_time=_optional_float(values.get("total_elapsed_time")),
        total_timer_time=_optional_float(values.get("total_timer_time")),
        total_distance=_optional_float(values.get("total_distance")),
        total_ascent=_optional_float(values.get("total_ascent")),
        total_descent=_optional_float(values.get("total_descent")),
        avg_speed=_optional_float(_first(values, "enhanced_avg_speed", "avg_speed")),
        max_speed=_optional_float(_first(values, "enhanced_max_speed", "max_speed")),
        avg_heart_rate=_optional_int(values.get("avg_heart_rate")),
        max_heart_rate=_optional_int(values.get("max_heart_rate")),
        avg_cadence=_optional_int(values.get("avg_cadence")),
        avg_power=_optional_int(values.get("avg_power")),
        max_power=_optional_int(values.get("max_power")),
        normalized_power=_optional_int(values.get("normalized_power")),
        training_stress_score=_optional_float(values.get("training_stress_score")),
        intensity_factor=_optional_float(values.get("intensity_factor")),
        threshold_power=_optional_int(values.get("threshold_power")),
        total_work=_optional_int(values.get("total_work")),
        total_calories=_optional_int(values.get("total_calories")),
    )


def decode_activity_file(data: bytes) -> DecodedActivity:
    """Decode a FIT activity file.

    Args:
        data: Raw FIT file bytes

    Returns:
        DecodedActivity with positioned track points, the power stream from all
        records (indoor rides have power but no position) and the session summary

    Raises:
        MalformedFileError: Buffer too small or header unreadable
        DecodeError: Stream corrupt part-way through
    """
    if len(data) < MIN_FIT_FILE_BYTES:
        raise MalformedFileError(f"FIT file too small: {len(data)} bytes (minimum {MIN_FIT_FILE_BYTES})")

    try:
        fit_file = fitparse.FitFile(io.BytesIO(data))
    except FitParseError as e:
        raise MalformedFileError(f"Unreadable FIT header: {e}") from e

    track_points: list[TrackPoint] = []
    power_samples: list[int] = []
    summary: SessionSummary | None = None
    record_count = 0
    skipped = 0

    try:
        for message in fit_file.get_messages():
            if message.name == "record":
                record_count += 1
                values = message.get_values()
                try:
                    point = _track_point(values)
                    power = _optional_int(values.get("power"))
                except (TypeError, ValueError) as e:
                    skipped += 1
                    logger.debug(f"[FIT_DECODER] Skipping unreadable record #{record_count}: {e}")
                    continue
                if power is not None:
                    power_samples.append(power)
                if point is not None:
                    track_points.append(point)
            elif message.name == "session" and summary is None:
                try:
                    summary = _session_summary(message.get_values())
                except (TypeError, ValueError) as e:
                    logger.warning(f"[FIT_DECODER] Ignoring unreadable session message: {e}")
    except FitHeaderError as e:
        raise MalformedFileError(f"Unreadable FIT header: {e}") from e
    except FitParseError as e:
        raise DecodeError(f"Corrupt FIT stream after {record_count} records: {e}") from e

    if skipped:
        logger.info(f"[FIT_DECODER] Skipped {skipped}/{record_count} unreadable records")

    return DecodedActivity(
        track_points=track_points,
        power_samples=power_samples,
        summary=summary,
        record_count=record_count,
        skipped_records=skipped,
    )
