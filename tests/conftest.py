"""
Pytest configuration and fixtures

Every test gets a fresh in-memory SQLite schema and an in-memory Redis
double. Nothing is shared between tests.
"""
import fnmatch
import os
import sys
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

# Must be set before core.config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.cache import CacheStore
from core.database import Base, engine, get_db
from models import Article, ArticleSeries, ArticleView, ArticleZone, Subscription, User, UserActivity


class FakeRedis:
    """
    Minimal in-memory Redis mock for unit tests.

    Expiry is driven by ``clock`` (seconds); call ``advance()`` to move
    time forward instead of sleeping.
    """

    def __init__(self):
        self._store: dict = {}
        self._expires_at: dict = {}
        self.clock = 0.0

    def advance(self, seconds: float):
        self.clock += seconds

    def _expired(self, key) -> bool:
        deadline = self._expires_at.get(key)
        if deadline is not None and deadline <= self.clock:
            self._store.pop(key, None)
            self._expires_at.pop(key, None)
            return True
        return False

    def get(self, key):
        if self._expired(key):
            return None
        return self._store.get(key)

    def set(self, key, value, ex=None):
        self._store[key] = value
        if ex:
            self._expires_at[key] = self.clock + ex
        else:
            self._expires_at.pop(key, None)
        return True

    def setex(self, key, ttl, value):
        self._store[key] = value
        self._expires_at[key] = self.clock + ttl
        return True

    def delete(self, *keys):
        deleted = 0
        for k in keys:
            if k in self._store:
                deleted += 1
            self._store.pop(k, None)
            self._expires_at.pop(k, None)
        return deleted

    def keys(self, pattern="*"):
        live = [k for k in list(self._store) if not self._expired(k)]
        return [k for k in live if fnmatch.fnmatchcase(k, pattern)]

    def incr(self, key):
        self._expired(key)
        val = int(self._store.get(key, 0)) + 1
        self._store[key] = str(val)
        return val

    def expire(self, key, ttl):
        if key not in self._store:
            return False
        self._expires_at[key] = self.clock + ttl
        return True

    def ttl(self, key):
        if self._expired(key) or key not in self._store:
            return -2
        deadline = self._expires_at.get(key)
        if deadline is None:
            return -1
        return int(deadline - self.clock)

    def ping(self):
        return True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return CacheStore(fake_redis)


@pytest.fixture
def schema():
    """Fresh schema per test; dropped afterwards."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(schema):
    """The request-scoped session from get_db(), closed without committing."""
    sessions = get_db()
    session = next(sessions)
    try:
        yield session
    finally:
        session.rollback()
        sessions.close()


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------


def utcnow():
    return datetime.now(timezone.utc)


@pytest.fixture
def make_user(db_session):
    def _make(role="FREE", created_at=None, last_login_at=None, is_active=True, name="Test User"):
        user = User(
            email=f"test_{uuid4()}@example.com",
            name=name,
            role=role,
            is_active=is_active,
            created_at=created_at or utcnow(),
            last_login_at=last_login_at,
        )
        db_session.add(user)
        db_session.commit()
        return user
    return _make


@pytest.fixture
def make_series(db_session):
    def _make(name="Pressing Basics", slug=None, category="TACTICS", status="ACTIVE", tags=None):
        series = ArticleSeries(
            name=name,
            slug=slug or f"series-{uuid4().hex[:8]}",
            category=category,
            status=status,
            tags=tags or [],
        )
        db_session.add(series)
        db_session.commit()
        return series
    return _make


@pytest.fixture
def make_article(db_session):
    def _make(
        title="Article",
        category="TACTICS",
        status="PUBLISHED",
        view_count=0,
        read_time=5,
        tags=None,
        series=None,
        series_part=None,
        zones=(),
        published_at=None,
        is_premium=False,
        created_at=None,
    ):
        article = Article(
            title=title,
            slug=f"article-{uuid4().hex[:10]}",
            category=category,
            status=status,
            view_count=view_count,
            read_time=read_time,
            tags=tags or [],
            series_id=series.id if series is not None else None,
            series_part=series_part,
            published_at=published_at or (utcnow() if status == "PUBLISHED" else None),
            is_premium=is_premium,
            created_at=created_at or utcnow(),
        )
        article.zones = [ArticleZone(zone=z) for z in zones]
        db_session.add(article)
        db_session.commit()
        return article
    return _make


@pytest.fixture
def make_view(db_session):
    def _make(article, user=None, completion_percent=0.0, view_duration=None, device_type=None, created_at=None):
        view = ArticleView(
            article_id=article.id,
            user_id=user.id if user is not None else None,
            session_id=f"s-{uuid4().hex[:8]}",
            completion_percent=completion_percent,
            view_duration=view_duration,
            device_type=device_type,
            created_at=created_at or utcnow(),
        )
        db_session.add(view)
        db_session.commit()
        return view
    return _make


@pytest.fixture
def make_activity(db_session):
    def _make(user=None, session_id="s-1", action="VIEW", resource_type="ARTICLE", resource_id=None, created_at=None):
        activity = UserActivity(
            user_id=user.id if user is not None else None,
            session_id=session_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            created_at=created_at or utcnow(),
        )
        db_session.add(activity)
        db_session.commit()
        return activity
    return _make


@pytest.fixture
def make_subscription(db_session):
    def _make(user, status="ACTIVE"):
        subscription = Subscription(user_id=user.id, status=status)
        db_session.add(subscription)
        db_session.commit()
        return subscription
    return _make


@pytest.fixture
def days_ago():
    def _ago(days, hours=0):
        return utcnow() - timedelta(days=days, hours=hours)
    return _ago
