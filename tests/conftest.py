"""Root conftest for all tests.

Shared fixtures: a file-backed SQLite database patched into app.db.session,
an in-process Redis double, row factories, and a minimal FIT file builder.
"""

import struct
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from app.core.encryption import encrypt_token
from app.db.models import Activity, Base, Integration
from app.db.session import enable_sqlite_savepoints


class FakePipeline:
    def __init__(self, client: "FakeRedis") -> None:
        self._client = client
        self._ops = []

    def incr(self, key):
        self._ops.append(("incr", (key,)))
        return self

    def expire(self, key, seconds):
        self._ops.append(("expire", (key, seconds)))
        return self

    def get(self, key):
        self._ops.append(("get", (key,)))
        return self

    def execute(self):
        results = [getattr(self._client, name)(*args) for name, args in self._ops]
        self._ops = []
        return results


class FakeRedis:
    """Just enough of redis.Redis (decode_responses=True) for the rate limiter and locks."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.expiries: dict[str, int] = {}

    def pipeline(self):
        return FakePipeline(self)

    def incr(self, key):
        value = int(self.store.get(key, 0)) + 1
        self.store[key] = str(value)
        return value

    def expire(self, key, seconds):
        self.expiries[key] = seconds
        return key in self.store

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = str(value)
        if ex is not None:
            self.expiries[key] = ex
        return True

    def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture(scope="function")
def db_session(monkeypatch, tmp_path):
    """File-backed SQLite session; app.db.session hands out sessions on the same database.

    WAL mode lets the test session read while code under test writes through
    get_session(). Call db_session.rollback() before re-reading rows that code
    under test changed.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 5},
    )
    enable_sqlite_savepoints(engine)

    @event.listens_for(engine, "connect")
    def _wal_mode(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)

    import app.db.session as session_module

    monkeypatch.setattr(session_module, "_engine", engine)
    monkeypatch.setattr(session_module, "_SessionLocal", factory)

    session = factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        engine.dispose()


@pytest.fixture
def make_integration(db_session):
    def _make(
        user_id: str = "user-1",
        provider_user_id: str = "garmin-user-1",
        access_token: str | None = "access-token",
        refresh_token: str | None = "refresh-token",
        expires_in: timedelta = timedelta(days=30),
    ) -> Integration:
        integration = Integration(
            user_id=user_id,
            provider="garmin",
            provider_user_id=provider_user_id,
            access_token=encrypt_token(access_token) if access_token else None,
            refresh_token=encrypt_token(refresh_token) if refresh_token else None,
            token_expires_at=datetime.now(timezone.utc) + expires_in,
        )
        db_session.add(integration)
        db_session.commit()
        return integration

    return _make


@pytest.fixture
def make_activity(db_session):
    counter = {"n": 0}

    def _make(user_id: str = "user-1", provider: str = "garmin", **fields) -> Activity:
        counter["n"] += 1
        fields.setdefault("provider_activity_id", f"act-{counter['n']}")
        activity = Activity(user_id=user_id, provider=provider, **fields)
        db_session.add(activity)
        db_session.commit()
        return activity

    return _make


FIT_EPOCH_OFFSET = 631065600
_FIT_CRC_TABLE = (
    0x0000, 0xCC01, 0xD801, 0x1400, 0xF001, 0x3C00, 0x2800, 0xE401,
    0xA001, 0x6C00, 0x7800, 0xB401, 0x5000, 0x9C01, 0x8801, 0x4400,
)


def fit_crc(data: bytes, crc: int = 0) -> int:
    for byte in data:
        tmp = _FIT_CRC_TABLE[crc & 0xF]
        crc = (crc >> 4) & 0x0FFF
        crc = crc ^ tmp ^ _FIT_CRC_TABLE[byte & 0xF]
        tmp = _FIT_CRC_TABLE[crc & 0xF]
        crc = (crc >> 4) & 0x0FFF
        crc = crc ^ tmp ^ _FIT_CRC_TABLE[(byte >> 4) & 0xF]
    return crc


def _semicircles(degrees: float) -> int:
    return int(round(degrees * 2**31 / 180.0))


def build_fit_file(records, session: dict | None = None) -> bytes:
    """Minimal FIT activity: record messages (local type 0) and an optional session (local type 1).

    Each record is a dict with timestamp (datetime), lat, lon (degrees or None),
    power and heart_rate (or None). session may carry total_distance (m),
    total_timer_time (s), avg_power and normalized_power (W).
    """
    data = bytearray()
    # record: timestamp uint32, position_lat sint32, position_long sint32, power uint16, heart_rate uint8
    data += struct.pack("<BBBHB", 0x40, 0, 0, 20, 5)
    data += bytes([253, 4, 0x86, 0, 4, 0x85, 1, 4, 0x85, 7, 2, 0x84, 3, 1, 0x02])
    for record in records:
        timestamp = int(record["timestamp"].timestamp()) - FIT_EPOCH_OFFSET
        lat = record.get("lat")
        lon = record.get("lon")
        power = record.get("power")
        heart_rate = record.get("heart_rate")
        data += struct.pack(
            "<BIiiHB",
            0x00,
            timestamp,
            _semicircles(lat) if lat is not None else 0x7FFFFFFF,
            _semicircles(lon) if lon is not None else 0x7FFFFFFF,
            power if power is not None else 0xFFFF,
            heart_rate if heart_rate is not None else 0xFF,
        )

    if session is not None:
        # session: total_timer_time uint32 (ms), total_distance uint32 (cm), avg_power uint16, normalized_power uint16
        data += struct.pack("<BBBHB", 0x41, 0, 0, 18, 4)
        data += bytes([8, 4, 0x86, 9, 4, 0x86, 20, 2, 0x84, 34, 2, 0x84])
        data += struct.pack(
            "<BIIHH",
            0x01,
            int(round(session.get("total_timer_time", 0) * 1000)),
            int(round(session.get("total_distance", 0) * 100)),
            session.get("avg_power", 0xFFFF),
            session.get("normalized_power", 0xFFFF),
        )

    header = struct.pack("<BBHI4s", 12, 0x10, 2132, len(data), b".FIT")
    body = header + bytes(data)
    return body + struct.pack("<H", fit_crc(body))


@pytest.fixture
def fit_file_bytes():
    return build_fit_file


@pytest.fixture
def ride_records():
    """Ten minutes of 1 Hz samples heading north-east at 200 W."""

    def _make(seconds: int = 600, power: int | None = 200, with_position: bool = True, heart_rate: int | None = 140):
        start = datetime(2024, 5, 1, 7, 30, tzinfo=timezone.utc)
        return [
            {
                "timestamp": start + timedelta(seconds=i),
                "lat": 47.0 + i * 0.0001 if with_position else None,
                "lon": 8.0 + i * 0.0001 if with_position else None,
                "power": power,
                "heart_rate": heart_rate,
            }
            for i in range(seconds)
        ]

    return _make
