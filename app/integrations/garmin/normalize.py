"""Normalization layer for Garmin activity data.

Pure mappers from Garmin Health API payloads to Activity columns and
track points. No side effects.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from app.tracks.models import TrackPoint
from app.utils.timezone import from_epoch_seconds

ACTIVITY_TYPE_MAP: dict[str, str] = {
    "cycling": "Ride",
    "road_biking": "Ride",
    "road_cycling": "Ride",
    "cyclocross": "Ride",
    "track_cycling": "Ride",
    "recumbent_cycling": "Ride",
    "bmx": "Ride",
    "virtual_ride": "VirtualRide",
    "indoor_cycling": "VirtualRide",
    "mountain_biking": "MountainBikeRide",
    "gravel_cycling": "GravelRide",
    "e_biking": "EBikeRide",
    "running": "Run",
    "treadmill_running": "Run",
    "indoor_running": "Run",
    "track_running": "Run",
    "ultra_run": "Run",
    "trail_running": "TrailRun",
    "walking": "Walk",
    "casual_walking": "Walk",
    "speed_walking": "Walk",
    "indoor_walking": "Walk",
    "treadmill_walking": "Walk",
    "hiking": "Hike",
    "swimming": "Swim",
    "lap_swimming": "Swim",
    "open_water_swimming": "Swim",
    "pool_swimming": "Swim",
    "strength_training": "WeightTraining",
    "elliptical": "Elliptical",
    "stair_climbing": "StairStepper",
    "rowing": "Rowing",
    "indoor_rowing": "Rowing",
    "yoga": "Yoga",
    "resort_skiing": "AlpineSki",
    "resort_snowboarding": "Snowboard",
    "cross_country_skiing": "NordicSki",
    "backcountry_skiing": "BackcountrySki",
    "stand_up_paddleboarding": "StandUpPaddling",
    "kayaking": "Kayaking",
    "surfing": "Surfing",
}

INDOOR_TYPES = {
    "indoor_cycling",
    "virtual_ride",
    "treadmill_running",
    "indoor_running",
    "indoor_walking",
    "treadmill_walking",
    "indoor_rowing",
}


def _first(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def _number(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.debug(f"[GARMIN_NORMALIZE] Ignoring non-numeric value: {value!r}")
        return None


def _integer(value: Any) -> int | None:
    number = _number(value)
    return int(round(number)) if number is not None else None


def _type_key(garmin_type: str | None) -> str:
    return (garmin_type or "").strip().lower().replace(" ", "_")


def map_activity_type(garmin_type: str | None) -> str:
    """Map a Garmin activityType to a Strava-compatible type name."""
    return ACTIVITY_TYPE_MAP.get(_type_key(garmin_type), "Workout")


def generate_activity_name(garmin_type: str | None, start: datetime | None) -> str:
    """Name like "Morning Ride" for activities Garmin sends without one."""
    hour = (start or datetime.now(timezone.utc)).hour
    if hour < 12:
        time_of_day = "Morning"
    elif hour < 17:
        time_of_day = "Afternoon"
    else:
        time_of_day = "Evening"
    label = re.sub(r"(?<!^)(?=[A-Z])", " ", map_activity_type(garmin_type))
    return f"{time_of_day} {label}"


def is_indoor(payload: dict[str, Any]) -> bool:
    if _type_key(payload.get("activityType")) in INDOOR_TYPES:
        return True
    device = str(payload.get("deviceName") or "").lower()
    return "indoor" in device or "trainer" in device


def normalize_garmin_activity(payload: dict[str, Any]) -> dict[str, Any]:
    """Map a Garmin activity summary onto Activity columns.

    Missing values are omitted rather than set to None, so the result can be
    used directly as a fill-only source.

    Args:
        payload: Garmin activity summary (push item, detail summary or API response)

    Returns:
        Dict of Activity column values
    """
    garmin_type = payload.get("activityType")
    start = from_epoch_seconds(_number(payload.get("startTimeInSeconds")))

    values: dict[str, Any] = {
        "name": _first(payload, "activityName", "activityDescription") or generate_activity_name(garmin_type, start),
        "activity_type": map_activity_type(garmin_type),
        "start_date": start,
        "distance": _number(_first(payload, "distanceInMeters", "distance")),
        "moving_time": _integer(_first(payload, "movingDurationInSeconds", "durationInSeconds")),
        "elapsed_time": _integer(_first(payload, "elapsedDurationInSeconds", "durationInSeconds")),
        "total_elevation_gain": _number(_first(payload, "elevationGainInMeters", "totalElevationGainInMeters")),
        "average_speed": _number(payload.get("averageSpeedInMetersPerSecond")),
        "max_speed": _number(payload.get("maxSpeedInMetersPerSecond")),
        "average_watts": _number(_first(payload, "averageBikingPowerInWatts", "averagePowerInWatts")),
        "max_watts": _number(_first(payload, "maxBikingPowerInWatts", "maxPowerInWatts")),
        "normalized_power": _number(payload.get("normalizedPowerInWatts")),
        "average_heartrate": _number(payload.get("averageHeartRateInBeatsPerMinute")),
        "max_heartrate": _number(payload.get("maxHeartRateInBeatsPerMinute")),
        "average_cadence": _number(
            _first(payload, "averageBikeCadenceInRoundsPerMinute", "averageRunCadenceInStepsPerMinute")
        ),
        "calories": _number(_first(payload, "activeKilocalories", "calories")),
        "trainer": is_indoor(payload),
    }
    return {key: value for key, value in values.items() if value is not None}


def track_points_from_samples(samples: list[dict[str, Any]]) -> tuple[list[TrackPoint], list[int]]:
    """Convert activityDetails samples into track points and a power stream.

    Returns:
        (positioned track points, power samples from every sample that has power)
    """
    points: list[TrackPoint] = []
    power: list[int] = []
    for sample in samples:
        if not isinstance(sample, dict):
            continue
        watts = _integer(sample.get("powerInWatts"))
        if watts is not None:
            power.append(watts)
        latitude = _number(sample.get("latitudeInDegree"))
        longitude = _number(sample.get("longitudeInDegree"))
        if latitude is None or longitude is None:
            continue
        points.append(
            TrackPoint(
                timestamp=from_epoch_seconds(_number(sample.get("startTimeInSeconds"))),
                latitude=latitude,
                longitude=longitude,
                elevation=_number(sample.get("elevationInMeters")),
                heart_rate=_integer(sample.get("heartRate")),
                power=watts,
                cadence=_integer(sample.get("bikeCadenceInRPM")),
                speed=_number(sample.get("speedMetersPerSecond")),
                distance=_number(sample.get("totalDistanceInMeters")),
            )
        )
    return points, power
