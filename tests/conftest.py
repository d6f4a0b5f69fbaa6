import os
import sys
from datetime import datetime, timedelta

import pytest

# Ensure the inner `src` directory is importable so that `import sigcorr` resolves
ROOT = os.path.dirname(os.path.dirname(__file__))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

# Keep the module-level engine in memory; tests build their own engines anyway
os.environ.setdefault("SIGCORR_DB_URL", "sqlite://")

from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from sigcorr.db import make_engine  # noqa: E402
from sigcorr.models.incident import Base, User, Workspace  # noqa: E402

NOW = datetime(2026, 3, 10, 12, 30, 0)


class FixedClock:
    """Callable clock the tests can move forward."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def engine():
    eng = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def workspace(db):
    ws = Workspace(id="ws-1", name="Payments")
    db.add(ws)
    db.add(User(id="user-1", workspace_id="ws-1", email="oncall@example.com"))
    db.commit()
    return ws.id


def build_alert(**overrides):
    from sigcorr.models.alert import NormalizedAlert

    fields = {
        "source": "sentry",
        "source_event_id": overrides.pop("source_event_id", None) or f"evt-{build_alert.seq}",
        "project": "checkout",
        "environment": "production",
        "fingerprint": "TypeError: cart is undefined",
        "title": "TypeError: cart is undefined",
        "message": "Unhandled exception in cart service",
        "severity": "MEDIUM",
        "occurred_at": NOW,
    }
    build_alert.seq += 1
    fields.update(overrides)
    return NormalizedAlert(**fields)


build_alert.seq = 0


@pytest.fixture
def make_alert():
    return build_alert
