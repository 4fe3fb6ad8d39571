"""
Analytics Service

Dashboard rollups, per-article analytics and per-user activity
summaries computed from the relational store, with Redis-backed
snapshots of the expensive ones.

Caching:
    analytics:dashboard:<filters json>            15 min
    analytics:article:<article id>:<filters json> 15 min
    analytics:performance                          5 min
    user activity                                  never cached

A cache outage only makes these calls slower. A database error fails
the whole call with a generic ComputationError and nothing is cached.

Usage:
    analytics = AnalyticsService(db, CacheStore.from_url())
    metrics = analytics.get_dashboard_metrics({"period": "week"})
"""
import logging
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar, Union
from uuid import UUID

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy import case, distinct, extract, func
from sqlalchemy.orm import Session

from core.cache import (
    CacheStore,
    filters_key,
    DASHBOARD_NAMESPACE,
    ARTICLE_NAMESPACE,
    PERFORMANCE_KEY,
)
from core.config import settings
from core.exceptions import APIException, ComputationError, NotFoundError, ValidationError
from core.logging import log_context
from models import Article, ArticleView, ArticleZone, User, UserActivity
from schemas import (
    AnalyticsFilters,
    ArticleAnalytics,
    ArticleDemographics,
    CategoryCount,
    CategoryShare,
    DailyActivity,
    DashboardMetrics,
    DateBucketRow,
    DeviceCount,
    EngagementBreakdown,
    HeatmapCell,
    PerformanceMetrics,
    RoleCount,
    TopArticle,
    TrackEventRequest,
    UserActivitySummary,
    UserEngagement,
    UserGrowthPoint,
    ViewsBucketRow,
    ZoneTime,
    ZoneViews,
)
from services.cache_invalidation import CacheInvalidator

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 30
HEATMAP_LOOKBACK_DAYS = 30
TOP_ARTICLES_LIMIT = 10
FAVORITE_CATEGORIES_LIMIT = 3
DEFAULT_AVG_READ_TIME = 5  # minutes, when nothing is published

COMPLETED_VIEW_PERCENT = 90
BOUNCE_DURATION_MS = 30_000
# Daily read time is estimated from article events, not measured
SECONDS_PER_ARTICLE_EVENT = 300

M = TypeVar("M", bound=BaseModel)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def round_half_up(value: Union[float, Decimal], digits: int = 0) -> float:
    """Round like a person would: 0.5 goes up, not to even."""
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def percentage(part: int, total: int, digits: int = 2) -> float:
    if total <= 0:
        return 0.0
    return round_half_up(part / total * 100, digits)


def calculate_activity_score(sessions: int, views: int, read_time_seconds: float) -> int:
    """
    Composite 0-100 engagement score.

    Return visits weigh most (50), then content volume (30), then raw
    reading time (20). Each part is capped on its own, so the sum never
    exceeds 100.
    """
    session_score = min(max(sessions, 0) * 2, 50)
    view_score = min(max(views, 0) * 1.5, 30)
    time_score = min(max(read_time_seconds, 0) / 60, 20)
    return int(round_half_up(session_score + view_score + time_score))


def coerce_filters(filters: Union[AnalyticsFilters, Dict[str, Any], None]) -> AnalyticsFilters:
    if filters is None:
        return AnalyticsFilters()
    if isinstance(filters, AnalyticsFilters):
        return filters
    try:
        return AnalyticsFilters.model_validate(filters)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Malformed analytics filters: {e.error_count()} invalid field(s)",
            field="filters",
        ) from e


def resolve_window(filters: AnalyticsFilters, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """
    Time window for window-scoped metrics.

    Explicit dates win. Otherwise ``period`` picks the window start
    (day: since midnight, week: 7 days, month: since the 1st, year:
    since Jan 1). Default is the last 30 days.
    """
    now = now or datetime.now(timezone.utc)
    end = filters.end_date or now

    if filters.start_date:
        return filters.start_date, end

    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if filters.period == "day":
        start = midnight
    elif filters.period == "week":
        start = now - timedelta(days=7)
    elif filters.period == "month":
        start = midnight.replace(day=1)
    elif filters.period == "year":
        start = midnight.replace(month=1, day=1)
    else:
        start = end - timedelta(days=DEFAULT_WINDOW_DAYS)
    return start, end


def parse_uuid(value: Union[str, UUID], resource: str) -> UUID:
    """An identifier that is not a UUID cannot exist."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise NotFoundError(resource, value)


def _canonical_id(value: Optional[str]) -> Optional[str]:
    # Cache keys embed str(UUID); match that spelling when invalidating
    if not value:
        return value
    try:
        return str(UUID(value))
    except ValueError:
        return value


def _midnight_utc(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _date_str(value: Any) -> str:
    # PostgreSQL returns date objects, SQLite returns ISO strings
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    return str(value)[:10]


@contextmanager
def computing(operation: str, **context):
    """Re-raise unexpected errors as ComputationError; domain errors pass through."""
    try:
        yield
    except APIException:
        raise
    except Exception as e:
        logger.error(
            f"Failed to compute {operation}: {e}",
            exc_info=True,
            extra=log_context(operation=operation, **context),
        )
        raise ComputationError(operation) from e


def read_cached(cache: CacheStore, key: str, model: Type[M]) -> Optional[M]:
    data = cache.get_json(key)
    if data is None:
        logger.debug(f"Cache miss: {key}")
        return None
    try:
        result = model.model_validate(data)
    except PydanticValidationError:
        logger.warning(f"Ignoring cache entry with outdated shape: {key}")
        return None
    logger.debug(f"Cache hit: {key}")
    return result


class AnalyticsService:
    """Dashboard, article and user analytics over one database session."""

    def __init__(self, db: Session, cache: CacheStore, invalidator: Optional[CacheInvalidator] = None):
        self.db = db
        self.cache = cache
        self.invalidator = invalidator or CacheInvalidator(cache)

    # -----------------------------------------------------------------------
    # Dashboard
    # -----------------------------------------------------------------------

    def get_dashboard_metrics(self, filters: Union[AnalyticsFilters, Dict[str, Any], None] = None) -> DashboardMetrics:
        filters = coerce_filters(filters)
        key = filters_key(DASHBOARD_NAMESPACE, filters)

        cached = read_cached(self.cache, key, DashboardMetrics)
        if cached is not None:
            return cached

        start, end = resolve_window(filters)
        today = _midnight_utc()

        with computing("dashboard metrics", cache_key=key):
            metrics = DashboardMetrics(
                total_users=self._count(User.id),
                active_users=self._count(User.id, User.last_login_at >= start),
                new_users_today=self._count(User.id, User.created_at >= today),
                total_articles=self._count(Article.id),
                published_articles=self._count(Article.id, Article.status == "PUBLISHED"),
                total_views=self._total_views(),
                views_today=self._count(ArticleView.id, ArticleView.created_at >= today),
                avg_read_time=self._average_read_time(),
                top_articles=self.get_top_articles(TOP_ARTICLES_LIMIT),
                user_growth=self.get_user_growth(start, end),
                views_growth=self.get_views_growth(start, end),
                category_distribution=self.get_category_distribution(),
                user_activity_heatmap=self.get_activity_heatmap(),
            )

        self.cache.set_json(key, metrics.model_dump(mode="json"), ttl=settings.CACHE_TTL_ANALYTICS)
        return metrics

    def _count(self, column, *criteria) -> int:
        return self.db.query(func.count(column)).filter(*criteria).scalar() or 0

    def _total_views(self) -> int:
        total = self.db.query(func.coalesce(func.sum(Article.view_count), 0)).scalar()
        return int(total or 0)

    def _average_read_time(self) -> int:
        avg = (
            self.db.query(func.avg(Article.read_time))
            .filter(Article.status == "PUBLISHED")
            .scalar()
        )
        if avg is None:
            return DEFAULT_AVG_READ_TIME
        return int(round_half_up(avg))

    def get_top_articles(self, limit: int = TOP_ARTICLES_LIMIT) -> List[TopArticle]:
        """Published articles by view count, ties broken by id."""
        rows = (
            self.db.query(Article.id, Article.title, Article.slug, Article.view_count, Article.category)
            .filter(Article.status == "PUBLISHED")
            .order_by(Article.view_count.desc(), Article.id.asc())
            .limit(limit)
            .all()
        )
        return [
            TopArticle(id=row.id, title=row.title, slug=row.slug, views=row.view_count, category=row.category)
            for row in rows
        ]

    def get_user_growth(self, start: datetime, end: datetime) -> List[UserGrowthPoint]:
        """New users per day in the window, with a running total from the window start."""
        day = func.date(User.created_at)
        rows = (
            self.db.query(day.label("date"), func.count(User.id).label("new_users"))
            .filter(User.created_at >= start, User.created_at <= end)
            .group_by(day)
            .order_by(day)
            .all()
        )

        points = []
        running_total = 0
        for row in rows:
            running_total += int(row.new_users)
            points.append(UserGrowthPoint(
                date=_date_str(row.date),
                new_users=int(row.new_users),
                total_users=running_total,
            ))
        return points

    def get_views_growth(self, start: datetime, end: datetime) -> List[ViewsBucketRow]:
        day = func.date(ArticleView.created_at)
        rows = (
            self.db.query(
                day.label("date"),
                func.count(ArticleView.id).label("views"),
                func.count(distinct(ArticleView.user_id)).label("unique_views"),
            )
            .filter(ArticleView.created_at >= start, ArticleView.created_at <= end)
            .group_by(day)
            .order_by(day)
            .all()
        )
        return [
            ViewsBucketRow(date=_date_str(row.date), views=int(row.views), unique_views=int(row.unique_views))
            for row in rows
        ]

    def get_category_distribution(self) -> List[CategoryShare]:
        """Share of published articles per category (percent of published, 2 dp)."""
        count = func.count(Article.id)
        rows = (
            self.db.query(Article.category, count.label("count"))
            .filter(Article.status == "PUBLISHED")
            .group_by(Article.category)
            .order_by(count.desc(), Article.category)
            .all()
        )

        total = sum(int(row.count) for row in rows)
        return [
            CategoryShare(category=row.category, count=int(row.count), percentage=percentage(int(row.count), total))
            for row in rows
        ]

    def get_activity_heatmap(self, now: Optional[datetime] = None) -> List[HeatmapCell]:
        """Event counts by (hour, weekday) over the last 30 days, whatever the filter window."""
        since = (now or datetime.now(timezone.utc)) - timedelta(days=HEATMAP_LOOKBACK_DAYS)
        hour = extract("hour", UserActivity.created_at)
        weekday = extract("dow", UserActivity.created_at)

        rows = (
            self.db.query(
                hour.label("hour"),
                weekday.label("day"),
                func.count(UserActivity.id).label("activity"),
            )
            .filter(UserActivity.created_at >= since)
            .group_by(hour, weekday)
            .order_by(weekday, hour)
            .all()
        )
        return [HeatmapCell(hour=int(row.hour), day=int(row.day), activity=int(row.activity)) for row in rows]

    # -----------------------------------------------------------------------
    # Article analytics
    # -----------------------------------------------------------------------

    def get_article_analytics(
        self,
        article_id: Union[str, UUID],
        filters: Union[AnalyticsFilters, Dict[str, Any], None] = None,
    ) -> ArticleAnalytics:
        article_uuid = parse_uuid(article_id, "Article")
        filters = coerce_filters(filters)
        key = filters_key(ARTICLE_NAMESPACE, filters, article_uuid)

        cached = read_cached(self.cache, key, ArticleAnalytics)
        if cached is not None:
            return cached

        with computing("article analytics", article_id=str(article_uuid)):
            article = self.db.get(Article, article_uuid)
            if article is None:
                raise NotFoundError("Article", article_uuid)

            total_view_rows = self._count(ArticleView.id, ArticleView.article_id == article_uuid)
            analytics = ArticleAnalytics(
                id=article.id,
                title=article.title,
                slug=article.slug,
                total_views=article.view_count,
                unique_views=self._count(distinct(ArticleView.user_id), ArticleView.article_id == article_uuid),
                avg_read_time=self._article_average_read_time(article_uuid),
                completion_rate=percentage(
                    self._count(
                        ArticleView.id,
                        ArticleView.article_id == article_uuid,
                        ArticleView.completion_percent >= COMPLETED_VIEW_PERCENT,
                    ),
                    total_view_rows,
                ),
                bounce_rate=percentage(
                    self._count(
                        ArticleView.id,
                        ArticleView.article_id == article_uuid,
                        ArticleView.view_duration < BOUNCE_DURATION_MS,
                    ),
                    total_view_rows,
                ),
                views_by_zone=self._article_views_by_zone(article_uuid, total_view_rows),
                views_over_time=self._article_views_over_time(article_uuid, filters.start_date, filters.end_date),
                user_engagement=UserEngagement(),
                demographics=self._article_demographics(article_uuid),
            )

        self.cache.set_json(key, analytics.model_dump(mode="json"), ttl=settings.CACHE_TTL_ANALYTICS)
        return analytics

    def _article_average_read_time(self, article_id: UUID) -> int:
        avg_ms = (
            self.db.query(func.avg(ArticleView.view_duration))
            .filter(ArticleView.article_id == article_id, ArticleView.view_duration.isnot(None))
            .scalar()
        )
        return int(round_half_up(float(avg_ms or 0) / 1000))

    def _article_views_by_zone(self, article_id: UUID, total_views: int) -> List[ZoneViews]:
        # Views are not tracked per zone; every zone the article is in gets the article's total.
        zones = (
            self.db.query(ArticleZone.zone)
            .filter(ArticleZone.article_id == article_id)
            .order_by(ArticleZone.zone)
            .all()
        )
        return [ZoneViews(zone=row.zone, views=total_views) for row in zones]

    def _article_views_over_time(
        self,
        article_id: UUID,
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> List[DateBucketRow]:
        day = func.date(ArticleView.created_at)
        query = (
            self.db.query(day.label("date"), func.count(ArticleView.id).label("views"))
            .filter(ArticleView.article_id == article_id)
        )
        if start is not None:
            query = query.filter(ArticleView.created_at >= start)
        if end is not None:
            query = query.filter(ArticleView.created_at <= end)

        rows = query.group_by(day).order_by(day).all()
        return [DateBucketRow(date=_date_str(row.date), count=int(row.views)) for row in rows]

    def _article_demographics(self, article_id: UUID) -> ArticleDemographics:
        role_count = func.count(ArticleView.id)
        roles = (
            self.db.query(User.role, role_count.label("count"))
            .select_from(ArticleView)
            .join(User, ArticleView.user_id == User.id)
            .filter(ArticleView.article_id == article_id)
            .group_by(User.role)
            .order_by(role_count.desc(), User.role)
            .all()
        )

        device_count = func.count(ArticleView.id)
        devices = (
            self.db.query(ArticleView.device_type, device_count.label("count"))
            .filter(ArticleView.article_id == article_id)
            .group_by(ArticleView.device_type)
            .order_by(device_count.desc())
            .all()
        )

        return ArticleDemographics(
            by_role=[RoleCount(role=row.role, count=int(row.count)) for row in roles],
            by_device=[DeviceCount(device=row.device_type or "Unknown", count=int(row.count)) for row in devices],
        )

    # -----------------------------------------------------------------------
    # User activity
    # -----------------------------------------------------------------------

    def get_user_activity(
        self,
        user_id: Union[str, UUID],
        filters: Union[AnalyticsFilters, Dict[str, Any], None] = None,
    ) -> UserActivitySummary:
        """Always recomputed; per-user activity changes too fast to cache."""
        user_uuid = parse_uuid(user_id, "User")
        filters = coerce_filters(filters)

        with computing("user activity", user_id=str(user_uuid)):
            user = self.db.get(User, user_uuid)
            if user is None:
                raise NotFoundError("User", user_uuid)

            sessions = self._user_total_sessions(user_uuid)
            read_time = self._user_total_read_time(user_uuid)
            views = self._count(ArticleView.id, ArticleView.user_id == user_uuid)
            categories = self._user_category_activity(user_uuid)

            return UserActivitySummary(
                user_id=user.id,
                user_name=user.name,
                email=user.email,
                role=user.role,
                last_active=user.last_login_at or user.updated_at,
                total_sessions=sessions,
                total_read_time=read_time,
                articles_read=views,
                favorite_categories=[c.category for c in categories[:FAVORITE_CATEGORIES_LIMIT]],
                activity_score=calculate_activity_score(sessions, views, read_time),
                engagement=EngagementBreakdown(
                    daily=self._user_daily_activity(user_uuid, filters.start_date, filters.end_date),
                    categories=categories,
                    zones=self._user_zone_activity(user_uuid),
                ),
            )

    def _user_total_sessions(self, user_id: UUID) -> int:
        return self._count(distinct(UserActivity.session_id), UserActivity.user_id == user_id)

    def _user_total_read_time(self, user_id: UUID) -> int:
        total_ms = (
            self.db.query(func.coalesce(func.sum(ArticleView.view_duration), 0))
            .filter(ArticleView.user_id == user_id, ArticleView.view_duration.isnot(None))
            .scalar()
        )
        return int(round_half_up(float(total_ms or 0) / 1000))

    def _user_category_activity(self, user_id: UUID) -> List[CategoryCount]:
        """Categories by number of views, most viewed first, ties by name."""
        count = func.count(ArticleView.id)
        rows = (
            self.db.query(Article.category, count.label("count"))
            .select_from(ArticleView)
            .join(Article, ArticleView.article_id == Article.id)
            .filter(ArticleView.user_id == user_id)
            .group_by(Article.category)
            .order_by(count.desc(), Article.category)
            .all()
        )
        return [CategoryCount(category=row.category, count=int(row.count)) for row in rows]

    def _user_daily_activity(
        self,
        user_id: UUID,
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> List[DailyActivity]:
        day = func.date(UserActivity.created_at)
        article_events = func.sum(case((UserActivity.resource_type == "ARTICLE", 1), else_=0))
        query = (
            self.db.query(
                day.label("date"),
                func.count(distinct(UserActivity.session_id)).label("sessions"),
                func.coalesce(article_events, 0).label("article_events"),
            )
            .filter(UserActivity.user_id == user_id)
        )
        if start is not None:
            query = query.filter(UserActivity.created_at >= start)
        if end is not None:
            query = query.filter(UserActivity.created_at <= end)

        rows = query.group_by(day).order_by(day).all()
        return [
            DailyActivity(
                date=_date_str(row.date),
                sessions=int(row.sessions),
                read_time=int(row.article_events) * SECONDS_PER_ARTICLE_EVENT,
            )
            for row in rows
        ]

    def _user_zone_activity(self, user_id: UUID) -> List[ZoneTime]:
        total_ms = func.sum(ArticleView.view_duration)
        rows = (
            self.db.query(ArticleZone.zone, total_ms.label("time"))
            .select_from(ArticleView)
            .join(ArticleZone, ArticleZone.article_id == ArticleView.article_id)
            .filter(ArticleView.user_id == user_id, ArticleView.view_duration.isnot(None))
            .group_by(ArticleZone.zone)
            .order_by(total_ms.desc(), ArticleZone.zone)
            .all()
        )
        return [ZoneTime(zone=row.zone, time=int(round_half_up(float(row.time) / 1000))) for row in rows]

    # -----------------------------------------------------------------------
    # Performance snapshot
    # -----------------------------------------------------------------------

    def get_performance_metrics(self) -> PerformanceMetrics:
        """
        Static snapshot, flagged ``placeholder``.

        TODO: source these numbers from the APM backend once one is chosen.
        """
        cached = read_cached(self.cache, PERFORMANCE_KEY, PerformanceMetrics)
        if cached is not None:
            return cached

        metrics = PerformanceMetrics(
            api_response_times={"avg": 250, "p50": 180, "p95": 450, "p99": 800},
            database_performance={"avg_query_time": 15, "slow_queries": 2, "connection_pool_usage": 65},
            cache_performance={"hit_rate": 85.5, "miss_rate": 14.5, "evictions": 12},
            system_resources={"cpu_usage": 45, "memory_usage": 68, "disk_usage": 23},
            error_rates={"total": 0.02, "by_endpoint": []},
        )
        self.cache.set_json(PERFORMANCE_KEY, metrics.model_dump(mode="json"), ttl=settings.CACHE_TTL_PERFORMANCE)
        return metrics

    # -----------------------------------------------------------------------
    # Event tracking
    # -----------------------------------------------------------------------

    def track_event(self, event: Union[TrackEventRequest, Dict[str, Any]]) -> UserActivity:
        """Append an activity event, then drop the cache entries it makes stale."""
        if not isinstance(event, TrackEventRequest):
            try:
                event = TrackEventRequest.model_validate(event)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid tracking event: {e.error_count()} invalid field(s)", field="event") from e

        activity = UserActivity(
            user_id=event.user_id,
            session_id=event.session_id,
            action=event.action,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            event_metadata=event.metadata,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            device_type=event.device_type,
        )

        with computing("event tracking", action=event.action, resource_id=event.resource_id):
            try:
                self.db.add(activity)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        self.invalidator.invalidate_for_event(
            resource_id=_canonical_id(event.resource_id),
            user_id=str(event.user_id) if event.user_id else None,
        )
        return activity
