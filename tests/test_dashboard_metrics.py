"""
Tests for dashboard metrics aggregation.

Covers:
- Cache key stability regardless of filter key order
- Cache hit performs no repository calls
- Failures are reported generically and never cached
- Top articles, category shares, user growth, heatmap, averages
- Time window resolution from filters
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from core.exceptions import ComputationError, ValidationError
from schemas import AnalyticsFilters
from services.analytics_service import (
    AnalyticsService,
    calculate_activity_score,
    percentage,
    resolve_window,
    round_half_up,
)


@pytest.fixture
def analytics(db_session, cache):
    return AnalyticsService(db_session, cache)


class TestDashboardCaching:

    def test_filter_key_order_does_not_change_cache_key(self, analytics, fake_redis):
        analytics.get_dashboard_metrics({"period": "week", "user_role": "ADMIN"})
        analytics.get_dashboard_metrics({"user_role": "ADMIN", "period": "week"})

        assert len(fake_redis.keys("analytics:dashboard:*")) == 1

    def test_cached_entry_uses_dashboard_ttl(self, analytics, fake_redis):
        analytics.get_dashboard_metrics()
        [key] = fake_redis.keys("analytics:dashboard:*")
        assert fake_redis.ttl(key) == 900

    def test_cache_hit_makes_no_repository_calls(self, analytics, cache, make_user):
        make_user()
        first = analytics.get_dashboard_metrics({"period": "month"})

        db = MagicMock()
        second = AnalyticsService(db, cache).get_dashboard_metrics({"period": "month"})

        assert second == first
        db.query.assert_not_called()
        db.get.assert_not_called()

    def test_expired_entry_is_recomputed(self, analytics, fake_redis, make_user):
        make_user()
        assert analytics.get_dashboard_metrics().total_users == 1

        make_user()
        assert analytics.get_dashboard_metrics().total_users == 1

        fake_redis.advance(901)
        assert analytics.get_dashboard_metrics().total_users == 2

    def test_repository_failure_raises_generic_error_and_caches_nothing(self, cache, fake_redis):
        db = MagicMock()
        db.query.side_effect = RuntimeError("connection reset")

        with pytest.raises(ComputationError) as exc_info:
            AnalyticsService(db, cache).get_dashboard_metrics()

        assert exc_info.value.status_code == 500
        assert "connection reset" not in exc_info.value.detail
        assert fake_redis.keys("*") == []

    def test_malformed_filters_are_rejected(self, analytics):
        with pytest.raises(ValidationError):
            analytics.get_dashboard_metrics({"period": "fortnight"})
        with pytest.raises(ValidationError):
            analytics.get_dashboard_metrics({"unknown": 1})

    def test_works_without_redis(self, db_session, make_user):
        from core.cache import CacheStore

        make_user()
        metrics = AnalyticsService(db_session, CacheStore.disabled()).get_dashboard_metrics()
        assert metrics.total_users == 1


class TestDashboardFigures:

    def test_counts(self, analytics, make_user, make_article, days_ago):
        make_user(last_login_at=days_ago(1))
        make_user(last_login_at=days_ago(60), created_at=days_ago(60))
        make_article(status="PUBLISHED", view_count=10)
        make_article(status="DRAFT", view_count=3)

        metrics = analytics.get_dashboard_metrics()

        assert metrics.total_users == 2
        assert metrics.active_users == 1
        assert metrics.new_users_today == 1
        assert metrics.total_articles == 2
        assert metrics.published_articles == 1
        assert metrics.total_views == 13

    def test_top_articles_ordered_by_views_and_published_only(self, analytics, make_article):
        low = make_article(title="Low", view_count=5)
        high = make_article(title="High", view_count=50)
        mid = make_article(title="Mid", view_count=20)
        make_article(title="Draft", status="DRAFT", view_count=500)

        top = analytics.get_top_articles(limit=10)

        assert [a.id for a in top] == [high.id, mid.id, low.id]
        assert [a.views for a in top] == [50, 20, 5]

    def test_category_distribution_percentages(self, analytics, make_article):
        make_article(category="TACTICS")
        make_article(category="TACTICS")
        make_article(category="TRAINING")
        make_article(category="TRAINING", status="DRAFT")

        shares = analytics.get_category_distribution()

        assert [(s.category, s.count, s.percentage) for s in shares] == [
            ("TACTICS", 2, 66.67),
            ("TRAINING", 1, 33.33),
        ]

    def test_category_distribution_empty(self, analytics):
        assert analytics.get_category_distribution() == []

    def test_average_read_time_rounds_half_up(self, analytics, make_article):
        make_article(read_time=4)
        make_article(read_time=7)
        make_article(read_time=100, status="DRAFT")
        assert analytics.get_dashboard_metrics().avg_read_time == 6

    def test_average_read_time_defaults_without_published_articles(self, analytics):
        assert analytics.get_dashboard_metrics().avg_read_time == 5

    def test_user_growth_is_running_total_within_window(self, analytics, make_user, days_ago):
        make_user(created_at=days_ago(40))
        make_user(created_at=days_ago(2))
        make_user(created_at=days_ago(2))
        make_user(created_at=days_ago(1))

        now = datetime.now(timezone.utc)
        growth = analytics.get_user_growth(now - timedelta(days=30), now)

        assert [p.new_users for p in growth] == [2, 1]
        assert [p.total_users for p in growth] == [2, 3]
        assert growth[0].date == days_ago(2).date().isoformat()

    def test_views_growth_counts_unique_viewers(self, analytics, make_article, make_user, make_view, days_ago):
        article = make_article()
        reader = make_user()
        make_view(article, user=reader, created_at=days_ago(1))
        make_view(article, user=reader, created_at=days_ago(1))
        make_view(article, created_at=days_ago(1))

        now = datetime.now(timezone.utc)
        [bucket] = analytics.get_views_growth(now - timedelta(days=30), now)

        assert bucket.views == 3
        assert bucket.unique_views == 1

    def test_activity_heatmap_buckets_by_hour_and_weekday(self, analytics, make_activity):
        now = datetime.now(timezone.utc)
        moment = (now - timedelta(days=2)).replace(hour=14, minute=5, second=0, microsecond=0)
        make_activity(created_at=moment)
        make_activity(created_at=moment + timedelta(minutes=10))
        make_activity(created_at=now - timedelta(days=45))

        cells = analytics.get_activity_heatmap(now=now)

        # Sunday = 0
        assert [(c.hour, c.day, c.activity) for c in cells] == [(14, (moment.weekday() + 1) % 7, 2)]


class TestHelpers:

    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(66.665, 2) == 66.67
        assert round_half_up(0.05, 1) == 0.1

    def test_percentage_of_zero_total(self):
        assert percentage(3, 0) == 0.0

    @pytest.mark.parametrize("sessions,views,read_time,expected", [
        (0, 0, 0, 0),
        (10, 10, 600, 45),
        (1000, 1000, 10 ** 6, 100),
    ])
    def test_activity_score_bounds(self, sessions, views, read_time, expected):
        assert calculate_activity_score(sessions, views, read_time) == expected

    def test_window_defaults_to_last_30_days(self):
        now = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
        start, end = resolve_window(AnalyticsFilters(), now=now)
        assert end == now
        assert start == now - timedelta(days=30)

    @pytest.mark.parametrize("period,expected_start", [
        ("day", datetime(2026, 3, 15, tzinfo=timezone.utc)),
        ("week", datetime(2026, 3, 8, 12, 0, tzinfo=timezone.utc)),
        ("month", datetime(2026, 3, 1, tzinfo=timezone.utc)),
        ("year", datetime(2026, 1, 1, tzinfo=timezone.utc)),
    ])
    def test_window_from_period(self, period, expected_start):
        now = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
        start, _ = resolve_window(AnalyticsFilters(period=period), now=now)
        assert start == expected_start

    def test_explicit_dates_win_over_period(self):
        start, end = resolve_window(AnalyticsFilters(
            start_date=datetime(2026, 1, 1),
            end_date=datetime(2026, 2, 1),
            period="day",
        ))
        assert start == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert end == datetime(2026, 2, 1, tzinfo=timezone.utc)
