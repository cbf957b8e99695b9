from __future__ import annotations

import pytest
from sqlalchemy.orm import Session

from depsera.db import create_db_engine
from depsera.models import Base, Team, User

from factories import make_team, make_user


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def team(db_session) -> Team:
    return make_team(db_session, team_id="team-1", key="payments")


@pytest.fixture
def user(db_session) -> User:
    return make_user(db_session, user_id="user-1", name="Ada Reviewer")


@pytest.fixture(autouse=True)
def public_dns(monkeypatch):
    """Hostnames resolve to a fixed public address."""
    monkeypatch.setattr(
        "depsera.manifest.endpoints.resolve_host", lambda hostname: ["93.184.215.14"]
    )
