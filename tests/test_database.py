"""
Tests for the request-scoped session generator.
"""
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from core.database import SessionLocal, get_db
from models import User


def _user_count() -> int:
    session = SessionLocal()
    try:
        return session.query(User).count()
    finally:
        session.close()


class TestGetDb:

    def test_commits_when_the_unit_of_work_succeeds(self, schema):
        sessions = get_db()
        session = next(sessions)
        session.add(User(email="coach@example.com", role="COACH"))

        with pytest.raises(StopIteration):
            next(sessions)

        assert _user_count() == 1

    def test_rolls_back_and_reraises_on_error(self, schema):
        sessions = get_db()
        session = next(sessions)
        session.add(User(email="coach@example.com", role="COACH"))
        session.flush()

        with pytest.raises(RuntimeError):
            sessions.throw(RuntimeError("handler failed"))

        assert _user_count() == 0

    def test_retries_until_the_connection_answers(self, schema):
        broken = MagicMock()
        broken.execute.side_effect = OperationalError("SELECT 1", {}, Exception("server closed the connection"))
        healthy = SessionLocal()

        with patch("core.database.SessionLocal", side_effect=[broken, healthy]), \
                patch("core.database.time.sleep") as sleep:
            sessions = get_db()
            assert next(sessions) is healthy
            sessions.close()

        broken.close.assert_called_once()
        sleep.assert_called_once()

    def test_gives_up_after_three_attempts(self, schema):
        broken = MagicMock()
        broken.execute.side_effect = OperationalError("SELECT 1", {}, Exception("refused"))

        with patch("core.database.SessionLocal", return_value=broken), \
                patch("core.database.time.sleep"):
            with pytest.raises(OperationalError):
                next(get_db())

        assert broken.close.call_count == 3
