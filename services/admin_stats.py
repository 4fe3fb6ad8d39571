"""
Admin statistics: user headcounts and role mix, article counts and views,
both with month-over-month growth.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.cache import CacheStore, ADMIN_ARTICLE_STATS_KEY, ADMIN_USER_STATS_KEY
from core.config import settings
from models import Article, ArticleView, Subscription, User
from schemas import ArticleStats, CategoryCount, UserStats
from services.analytics_service import computing, read_cached, round_half_up

logger = logging.getLogger(__name__)

POPULAR_CATEGORY_LIMIT = 5


def month_start(now: datetime, months_back: int = 0) -> datetime:
    year, month = now.year, now.month - months_back
    while month < 1:
        month += 12
        year -= 1
    return now.replace(year=year, month=month, day=1, hour=0, minute=0, second=0, microsecond=0)


def growth_rate(current: int, previous: int) -> float:
    """Percent change, 1 dp. Any growth from zero counts as 100%."""
    if previous > 0:
        return round_half_up((current - previous) / previous * 100, 1)
    return 100.0 if current > 0 else 0.0


class AdminStatsService:

    def __init__(self, db: Session, cache: CacheStore):
        self.db = db
        self.cache = cache

    def get_user_stats(self, now: Optional[datetime] = None) -> UserStats:
        cached = read_cached(self.cache, ADMIN_USER_STATS_KEY, UserStats)
        if cached is not None:
            return cached

        now = now or datetime.now(timezone.utc)
        current_month = month_start(now)
        previous_month = month_start(now, months_back=1)

        with computing("admin user stats"):
            new_this_month = self.db.query(func.count(User.id)).filter(User.created_at >= current_month).scalar() or 0
            new_previous_month = (
                self.db.query(func.count(User.id))
                .filter(User.created_at >= previous_month, User.created_at < current_month)
                .scalar()
            ) or 0

            stats = UserStats(
                total_users=self.db.query(func.count(User.id)).scalar() or 0,
                active_users=self.db.query(func.count(User.id)).filter(User.is_active.is_(True)).scalar() or 0,
                new_users_this_month=new_this_month,
                premium_subscribers=(
                    self.db.query(func.count(Subscription.id)).filter(Subscription.status == "ACTIVE").scalar() or 0
                ),
                role_breakdown={
                    role: int(count)
                    for role, count in self.db.query(User.role, func.count(User.id)).group_by(User.role).all()
                },
                user_growth=growth_rate(new_this_month, new_previous_month),
            )

        self.cache.set_json(ADMIN_USER_STATS_KEY, stats.model_dump(mode="json"), ttl=settings.CACHE_TTL_ADMIN_STATS)
        return stats

    def get_article_stats(self, now: Optional[datetime] = None) -> ArticleStats:
        """Article counts by status, view totals and the five biggest categories."""
        cached = read_cached(self.cache, ADMIN_ARTICLE_STATS_KEY, ArticleStats)
        if cached is not None:
            return cached

        now = now or datetime.now(timezone.utc)
        current_month = month_start(now)
        previous_month = month_start(now, months_back=1)

        with computing("admin article stats"):
            by_status = {
                status: int(count)
                for status, count in self.db.query(Article.status, func.count(Article.id)).group_by(Article.status).all()
            }
            new_this_month = (
                self.db.query(func.count(Article.id)).filter(Article.created_at >= current_month).scalar()
            ) or 0
            new_previous_month = (
                self.db.query(func.count(Article.id))
                .filter(Article.created_at >= previous_month, Article.created_at < current_month)
                .scalar()
            ) or 0

            article_count = func.count(Article.id)
            categories = (
                self.db.query(Article.category, article_count)
                .group_by(Article.category)
                .order_by(article_count.desc(), Article.category)
                .limit(POPULAR_CATEGORY_LIMIT)
                .all()
            )

            stats = ArticleStats(
                total_articles=sum(by_status.values()),
                published_articles=by_status.get("PUBLISHED", 0),
                draft_articles=by_status.get("DRAFT", 0),
                archived_articles=by_status.get("ARCHIVED", 0),
                premium_articles=(
                    self.db.query(func.count(Article.id)).filter(Article.is_premium.is_(True)).scalar() or 0
                ),
                total_views=self.db.query(func.count(ArticleView.id)).scalar() or 0,
                weekly_views=(
                    self.db.query(func.count(ArticleView.id))
                    .filter(ArticleView.created_at >= now - timedelta(days=7))
                    .scalar()
                ) or 0,
                monthly_growth=growth_rate(new_this_month, new_previous_month),
                popular_categories=[
                    CategoryCount(category=category, count=int(count)) for category, count in categories
                ],
            )

        self.cache.set_json(ADMIN_ARTICLE_STATS_KEY, stats.model_dump(mode="json"), ttl=settings.CACHE_TTL_ADMIN_STATS)
        return stats
