from datetime import datetime, timezone

from app.integrations.garmin.normalize import (
    generate_activity_name,
    is_indoor,
    map_activity_type,
    normalize_garmin_activity,
    track_points_from_samples,
)

GARMIN_RIDE = {
    "userId": "garmin-user-1",
    "activityId": 12345,
    "activityType": "ROAD_BIKING",
    "startTimeInSeconds": 1714548600,  # 2024-05-01 07:30 UTC
    "durationInSeconds": 3600,
    "distanceInMeters": 30120.5,
    "elevationGainInMeters": 410.0,
    "averageSpeedInMetersPerSecond": 8.37,
    "averageBikingPowerInWatts": 205,
    "averageHeartRateInBeatsPerMinute": 142,
    "maxHeartRateInBeatsPerMinute": 176,
    "activeKilocalories": 820,
    "deviceName": "Edge 840",
}


def test_normalize_maps_summary_to_columns():
    values = normalize_garmin_activity(GARMIN_RIDE)

    assert values["activity_type"] == "Ride"
    assert values["name"] == "Morning Ride"
    assert values["start_date"] == datetime(2024, 5, 1, 7, 30, tzinfo=timezone.utc)
    assert values["distance"] == 30120.5
    assert values["moving_time"] == 3600
    assert values["elapsed_time"] == 3600
    assert values["total_elevation_gain"] == 410.0
    assert values["average_watts"] == 205.0
    assert values["average_heartrate"] == 142.0
    assert values["calories"] == 820.0
    assert values["trainer"] is False
    assert "max_watts" not in values
    assert "kilojoules" not in values


def test_normalize_keeps_provided_name():
    values = normalize_garmin_activity({**GARMIN_RIDE, "activityName": "Zurich Loop"})

    assert values["name"] == "Zurich Loop"


def test_normalize_ignores_non_numeric_values():
    values = normalize_garmin_activity({**GARMIN_RIDE, "distanceInMeters": "n/a"})

    assert "distance" not in values


def test_activity_type_mapping():
    assert map_activity_type("VIRTUAL_RIDE") == "VirtualRide"
    assert map_activity_type("mountain_biking") == "MountainBikeRide"
    assert map_activity_type("Indoor Cycling") == "VirtualRide"
    assert map_activity_type("paragliding") == "Workout"
    assert map_activity_type(None) == "Workout"


def test_generated_names_follow_time_of_day():
    assert generate_activity_name("cycling", datetime(2024, 5, 1, 14, 0, tzinfo=timezone.utc)) == "Afternoon Ride"
    assert generate_activity_name("mountain_biking", datetime(2024, 5, 1, 19, 0, tzinfo=timezone.utc)) == "Evening Mountain Bike Ride"


def test_indoor_detection():
    assert is_indoor({"activityType": "INDOOR_CYCLING"})
    assert is_indoor({"activityType": "cycling", "deviceName": "Tacx Smart Trainer"})
    assert not is_indoor(GARMIN_RIDE)


def test_track_points_from_samples_keeps_power_without_position():
    samples = [
        {"startTimeInSeconds": 1714548600, "latitudeInDegree": 47.0, "longitudeInDegree": 8.0, "powerInWatts": 210, "heartRate": 140},
        {"startTimeInSeconds": 1714548601, "powerInWatts": 220},
        {"startTimeInSeconds": 1714548602, "latitudeInDegree": 47.001, "longitudeInDegree": 8.001},
        "not-a-sample",
    ]

    points, power = track_points_from_samples(samples)

    assert power == [210, 220]
    assert [point.coordinate for point in points] == [(47.0, 8.0), (47.001, 8.001)]
    assert points[0].heart_rate == 140
    assert points[0].timestamp == datetime(2024, 5, 1, 7, 30, tzinfo=timezone.utc)
