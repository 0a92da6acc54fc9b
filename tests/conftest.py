from datetime import datetime, timedelta, timezone

import pytest

from sessionkeeper.db.session import build_engine, build_session_factory, create_schema
from sessionkeeper.services.connections import ConnectionStore
from sessionkeeper.services.crypto import SecretCodec

TEST_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
OTHER_KEY_HEX = "ffeeddccbbaa99887766554433221100ffeeddccbbaa99887766554433221100"

T0 = datetime(2026, 10, 17, 2, 0, 10, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock; call it to read the current time."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec():
    return SecretCodec.from_key_string(TEST_KEY_HEX)


@pytest.fixture
def engine():
    eng = build_engine("sqlite://")
    create_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory, codec, clock):
    return ConnectionStore(session_factory, codec, clock=clock)


@pytest.fixture
def connect(store):
    """connect(user_id, platform="MAVELY", expires_at=..., **kw) with test defaults."""

    def _connect(user_id, platform="MAVELY", *, expires_at=None, access_token=None, **kw):
        return store.connect(
            user_id,
            platform,
            access_token=access_token or f"tok-{user_id}",
            expires_at=expires_at or T0 + timedelta(hours=1),
            **kw,
        )

    return _connect
