"""
Pytest fixtures: in-memory SQLite store, user/post factories and a fake signal feed.
"""
import os

# must be set before trust_governance.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["API_KEY"] = "test-api-key"

import itertools
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from trust_governance.db.database import Base
from trust_governance.db import models
from trust_governance.errors import UpstreamUnavailable
from trust_governance.services.signal_client import DIMENSIONS

NOW = datetime(2026, 3, 1, 12, 0, 0)

_usernames = itertools.count(1)


class FakeSignalProvider:
    """In-process stand-in for the signal feeds"""

    def __init__(self, signals=None, unavailable=()):
        self.signals = {dimension: {} for dimension in DIMENSIONS}
        self.signals.update(signals or {})
        self.unavailable = set(unavailable)
        self.calls = []

    def fetch(self, dimension, content_id):
        self.calls.append((dimension, content_id))
        if dimension in self.unavailable:
            raise UpstreamUnavailable(source=dimension)
        return dict(self.signals.get(dimension, {}))


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    def factory(role=models.ROLE_MEMBER, username=None, is_active=True):
        user = models.User(
            username=username or f"user{next(_usernames)}",
            role=role,
            is_active=is_active,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return factory


@pytest.fixture
def make_post(db):
    def factory(author, approval_status=models.POST_FLAGGED, title="A post"):
        post = models.Post(author_id=author.id, title=title, approval_status=approval_status)
        db.add(post)
        db.commit()
        db.refresh(post)
        return post
    return factory


@pytest.fixture
def signal_provider():
    return FakeSignalProvider()
