"""
Series Service

Article series catalogue, reader progress, content-based series
recommendations and completion/drop-off analytics.

Caching:
    series:<id or slug>:<true|false>   1 hour  (series detail)
    series:recommendations:<user id>  30 min  (full ranked list)
    progress / analytics               never cached

Every mutation (create, update, delete, add/remove/reorder articles)
clears all ``series:*`` keys through CacheInvalidator.
"""
import logging
from collections import Counter, defaultdict
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import UUID

from pydantic import TypeAdapter, ValidationError as PydanticValidationError
from sqlalchemy import Text, cast, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from core.cache import CacheStore, cache_key, SERIES_NAMESPACE, RECOMMENDATIONS_NAMESPACE
from core.config import settings
from core.exceptions import ConflictError, NotFoundError, ValidationError
from models import Article, ArticleSeries, ArticleView
from schemas import (
    ArticleOrder,
    ArticlePerformance,
    ContinueReading,
    DropoffPoint,
    Pagination,
    PopularSeries,
    SeriesAnalytics,
    SeriesArticle,
    SeriesCreate,
    SeriesDetail,
    SeriesEngagement,
    SeriesFilters,
    SeriesInfo,
    SeriesPage,
    SeriesProgress,
    SeriesProgression,
    SeriesRecommendation,
    SeriesSummary,
    SeriesUpdate,
)
from services.analytics_service import computing, parse_uuid, read_cached, round_half_up
from services.cache_invalidation import CacheInvalidator

logger = logging.getLogger(__name__)

COMPLETED_ARTICLE_PERCENT = 80
RECOMMENDATION_HISTORY_SIZE = 100

# Match score weights
CATEGORY_WEIGHT = 0.6
TAG_WEIGHT = 0.3
FULL_SERIES_BONUS = 0.10
SHORT_SERIES_BONUS = 0.05
FULL_SERIES_MIN_ARTICLES = 3

POPULAR_SERIES_MAX = 20

_recommendation_list = TypeAdapter(List[SeriesRecommendation])


def _validated(model, data, what: str):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {what}: {e.error_count()} invalid field(s)") from e


def series_completion_rate(articles: List[Article]) -> int:
    """
    Rough engagement heuristic: average views per article relative to
    the first article's views, capped at 100.
    """
    if not articles:
        return 0
    first_views = articles[0].view_count or 0
    if first_views <= 0:
        return 0
    avg_views = sum(a.view_count or 0 for a in articles) / len(articles)
    return min(int(round_half_up(avg_views / first_views * 100)), 100)


def preference_distribution(values: Iterable[str]) -> Dict[str, float]:
    """Share of each value among all occurrences."""
    counts = Counter(v for v in values if v)
    total = sum(counts.values())
    if total == 0:
        return {}
    return {value: count / total for value, count in counts.items()}


def calculate_match_score(
    article_categories: List[str],
    article_tags: List[str],
    articles_count: int,
    category_preferences: Dict[str, float],
    tag_preferences: Dict[str, float],
) -> int:
    """
    0.6 * mean category preference + 0.3 * mean tag preference
    + completeness bonus, scaled to an integer in [0, 100].
    """
    category_score = 0.0
    if article_categories:
        category_score = sum(category_preferences.get(c, 0) for c in article_categories) / len(article_categories)

    tag_score = sum(tag_preferences.get(t, 0) for t in article_tags) / max(len(article_tags), 1)

    bonus = FULL_SERIES_BONUS if articles_count >= FULL_SERIES_MIN_ARTICLES else SHORT_SERIES_BONUS
    score = int(round_half_up((category_score * CATEGORY_WEIGHT + tag_score * TAG_WEIGHT + bonus) * 100))
    return max(0, min(score, 100))


def recommendation_reason(
    series_category: str,
    article_categories: List[str],
    article_tags: List[str],
    category_preferences: Dict[str, float],
    tag_preferences: Dict[str, float],
) -> str:
    top_category = None
    if category_preferences:
        top_category = min(category_preferences.items(), key=lambda item: (-item[1], item[0]))[0]

    if top_category and top_category in article_categories:
        return f"Based on your interest in {top_category.lower()}"

    matching_tags = [t for t in article_tags if tag_preferences.get(t, 0) > 0]
    if matching_tags:
        return f"Based on your interest in {matching_tags[0]}"

    return f"Popular in {series_category.lower()}"


def _series_article(article: Article) -> SeriesArticle:
    return SeriesArticle(
        id=article.id,
        title=article.title,
        slug=article.slug,
        series_part=article.series_part,
        read_time=article.read_time,
        published_at=article.published_at,
        view_count=article.view_count,
        zones=sorted(z.zone for z in article.zones),
    )


class SeriesService:

    def __init__(self, db: Session, cache: CacheStore, invalidator: Optional[CacheInvalidator] = None):
        self.db = db
        self.cache = cache
        self.invalidator = invalidator or CacheInvalidator(cache)

    # -----------------------------------------------------------------------
    # Lookups
    # -----------------------------------------------------------------------

    def _get_series_or_404(self, series_id: Union[str, UUID]) -> ArticleSeries:
        series_uuid = parse_uuid(series_id, "Series")
        series = self.db.get(ArticleSeries, series_uuid)
        if series is None:
            raise NotFoundError("Series", series_uuid)
        return series

    def _get_article_or_404(self, article_id: Union[str, UUID]) -> Article:
        article_uuid = parse_uuid(article_id, "Article")
        article = self.db.get(Article, article_uuid)
        if article is None:
            raise NotFoundError("Article", article_uuid)
        return article

    def _published_articles(self, series_ids: List[UUID]) -> Dict[UUID, List[Article]]:
        """Published articles per series, in reading order."""
        if not series_ids:
            return {}
        rows = (
            self.db.query(Article)
            .options(selectinload(Article.zones))
            .filter(Article.series_id.in_(series_ids), Article.status == "PUBLISHED")
            .order_by(Article.series_part, Article.published_at, Article.id)
            .all()
        )
        grouped: Dict[UUID, List[Article]] = defaultdict(list)
        for article in rows:
            grouped[article.series_id].append(article)
        return grouped

    def _article_counts(self, series_ids: List[UUID]) -> Dict[UUID, int]:
        """Articles of any status per series."""
        if not series_ids:
            return {}
        rows = (
            self.db.query(Article.series_id, func.count(Article.id))
            .filter(Article.series_id.in_(series_ids))
            .group_by(Article.series_id)
            .all()
        )
        return {series_id: int(count) for series_id, count in rows}

    def _detail(
        self,
        series: ArticleSeries,
        published: List[Article],
        articles_count: int,
        include_articles: bool = True,
    ) -> SeriesDetail:
        return SeriesDetail(
            id=series.id,
            name=series.name,
            slug=series.slug,
            description=series.description,
            cover_image_url=series.cover_image_url,
            category=series.category,
            status=series.status,
            total_planned_articles=series.total_planned_articles,
            tags=list(series.tags or []),
            created_at=series.created_at,
            updated_at=series.updated_at,
            articles_count=articles_count,
            estimated_read_time=sum(a.read_time for a in published) if include_articles else 0,
            completion_rate=series_completion_rate(published) if include_articles else 0,
            articles=[_series_article(a) for a in published] if include_articles else [],
        )

    def list_series(self, filters: Union[SeriesFilters, Dict[str, Any], None] = None) -> SeriesPage:
        filters = _validated(SeriesFilters, filters or {}, "series filters")

        with computing("series listing"):
            query = self.db.query(ArticleSeries).filter(ArticleSeries.status == filters.status)
            if filters.category:
                query = query.filter(ArticleSeries.category == filters.category)
            if filters.search:
                term = f"%{filters.search}%"
                query = query.filter(or_(
                    ArticleSeries.name.ilike(term),
                    ArticleSeries.description.ilike(term),
                    cast(ArticleSeries.tags, Text).ilike(f'%"{filters.search}"%'),
                ))

            total = query.count()

            if filters.sort_by == "articles_count":
                sort_column = (
                    select(func.count(Article.id))
                    .where(Article.series_id == ArticleSeries.id)
                    .correlate(ArticleSeries)
                    .scalar_subquery()
                )
            else:
                sort_column = getattr(ArticleSeries, filters.sort_by)
            ordering = sort_column.desc() if filters.sort_order == "desc" else sort_column.asc()

            page = (
                query.order_by(ordering, ArticleSeries.id)
                .offset((filters.page - 1) * filters.limit)
                .limit(filters.limit)
                .all()
            )

            ids = [s.id for s in page]
            published = self._published_articles(ids)
            counts = self._article_counts(ids)

            return SeriesPage(
                series=[self._detail(s, published.get(s.id, []), counts.get(s.id, 0)) for s in page],
                pagination=Pagination(
                    page=filters.page,
                    limit=filters.limit,
                    total=total,
                    total_pages=-(-total // filters.limit),
                    has_next=filters.page * filters.limit < total,
                    has_previous=filters.page > 1,
                ),
            )

    def get_popular_series(self, limit: int = 10) -> List[PopularSeries]:
        """Active series ranked by article count times total read time."""
        page = self.list_series(SeriesFilters(
            page=1,
            limit=max(1, min(limit, POPULAR_SERIES_MAX)),
            status="ACTIVE",
            sort_by="articles_count",
            sort_order="desc",
        ))
        popular = [
            PopularSeries(**s.model_dump(), popularity_score=s.articles_count * s.estimated_read_time)
            for s in page.series
            if s.articles_count > 0
        ]
        popular.sort(key=lambda s: (-s.popularity_score, s.name))
        return popular

    def get_series(self, identifier: Union[str, UUID], include_articles: bool = True) -> SeriesDetail:
        """Series by id or slug."""
        key = cache_key(SERIES_NAMESPACE, identifier, include_articles)
        cached = read_cached(self.cache, key, SeriesDetail)
        if cached is not None:
            return cached

        with computing("series detail", identifier=str(identifier)):
            try:
                series = self.db.get(ArticleSeries, UUID(str(identifier)))
            except ValueError:
                series = self.db.query(ArticleSeries).filter(ArticleSeries.slug == str(identifier)).first()
            if series is None:
                raise NotFoundError("Series", identifier)

            published = self._published_articles([series.id]).get(series.id, []) if include_articles else []
            detail = self._detail(
                series,
                published,
                self._article_counts([series.id]).get(series.id, 0),
                include_articles=include_articles,
            )

        self.cache.set_json(key, detail.model_dump(mode="json"), ttl=settings.CACHE_TTL_SERIES)
        return detail

    # -----------------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------------

    def _commit(self, conflict_detail: str) -> None:
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(conflict_detail) from e
        except Exception:
            self.db.rollback()
            raise

    def _slug_taken(self, slug: str, exclude_id: Optional[UUID] = None) -> bool:
        query = self.db.query(ArticleSeries.id).filter(ArticleSeries.slug == slug)
        if exclude_id is not None:
            query = query.filter(ArticleSeries.id != exclude_id)
        return query.first() is not None

    def create_series(self, data: Union[SeriesCreate, Dict[str, Any]]) -> SeriesDetail:
        data = _validated(SeriesCreate, data, "series")

        with computing("series creation", slug=data.slug):
            if self._slug_taken(data.slug):
                raise ConflictError("Series with this slug already exists")

            series = ArticleSeries(**data.model_dump(), status="ACTIVE")
            self.db.add(series)
            self._commit("Series with this slug already exists")

        self.invalidator.invalidate_series()
        logger.info(f"Created series {series.id} ({series.slug})")
        return self._detail(series, [], 0)

    def update_series(self, series_id: Union[str, UUID], data: Union[SeriesUpdate, Dict[str, Any]]) -> SeriesDetail:
        data = _validated(SeriesUpdate, data, "series update")

        with computing("series update", series_id=str(series_id)):
            series = self._get_series_or_404(series_id)
            if data.slug and self._slug_taken(data.slug, exclude_id=series.id):
                raise ConflictError("Series with this slug already exists")

            for field, value in data.model_dump(exclude_unset=True).items():
                setattr(series, field, value)
            self._commit("Series with this slug already exists")

            published = self._published_articles([series.id]).get(series.id, [])
            detail = self._detail(series, published, self._article_counts([series.id]).get(series.id, 0))

        self.invalidator.invalidate_series([series.id])
        return detail

    def delete_series(self, series_id: Union[str, UUID]) -> Dict[str, str]:
        with computing("series deletion", series_id=str(series_id)):
            series = self._get_series_or_404(series_id)
            if self._article_counts([series.id]).get(series.id, 0) > 0:
                raise ValidationError("Cannot delete series with associated articles. Remove articles first.")

            self.db.delete(series)
            self._commit("Series is still referenced")

        self.invalidator.invalidate_series([series.id])
        logger.info(f"Deleted series {series.id}")
        return {"message": "Series deleted successfully"}

    def add_article_to_series(
        self,
        series_id: Union[str, UUID],
        article_id: Union[str, UUID],
        series_part: int,
    ) -> SeriesArticle:
        if series_part < 1:
            raise ValidationError("Series part must be 1 or greater", field="series_part")

        conflict = f"Part {series_part} is already assigned to another article"
        with computing("series article assignment", series_id=str(series_id), article_id=str(article_id)):
            series = self._get_series_or_404(series_id)
            article = self._get_article_or_404(article_id)

            taken = (
                self.db.query(Article.id)
                .filter(Article.series_id == series.id, Article.series_part == series_part, Article.id != article.id)
                .first()
            )
            if taken is not None:
                raise ConflictError(conflict)

            previous_series_id = article.series_id
            article.series_id = series.id
            article.series_part = series_part
            self._commit(conflict)

        self.invalidator.invalidate_series([series.id, previous_series_id] if previous_series_id else [series.id])
        return _series_article(article)

    def remove_article_from_series(self, article_id: Union[str, UUID]) -> SeriesArticle:
        with computing("series article removal", article_id=str(article_id)):
            article = self._get_article_or_404(article_id)
            previous_series_id = article.series_id

            article.series_id = None
            article.series_part = None
            self._commit("Article could not be detached from its series")

        if previous_series_id:
            self.invalidator.invalidate_series([previous_series_id])
        return _series_article(article)

    def reorder_series_articles(
        self,
        series_id: Union[str, UUID],
        article_orders: List[Union[ArticleOrder, Dict[str, Any]]],
    ) -> SeriesDetail:
        """Apply all (article, part) pairs in one transaction or none of them."""
        orders = [_validated(ArticleOrder, o, "article order") for o in article_orders]

        article_ids = [o.article_id for o in orders]
        if len(set(article_ids)) != len(article_ids):
            raise ValidationError("Each article may appear only once in a reorder request")
        parts = [o.series_part for o in orders]
        if len(set(parts)) != len(parts):
            raise ValidationError("Series parts in a reorder request must be unique")

        with computing("series reorder", series_id=str(series_id)):
            series = self._get_series_or_404(series_id)
            members = {
                a.id: a
                for a in self.db.query(Article).filter(Article.series_id == series.id).all()
            }
            if any(article_id not in members for article_id in article_ids):
                raise ValidationError("Some articles do not belong to this series")

            try:
                # Clear first so swapped parts never collide mid-update
                for order in orders:
                    members[order.article_id].series_part = None
                self.db.flush()
                for order in orders:
                    members[order.article_id].series_part = order.series_part
                self.db.flush()
            except IntegrityError as e:
                self.db.rollback()
                raise ConflictError("New series parts collide with articles outside this request") from e
            except Exception:
                self.db.rollback()
                raise
            self._commit("New series parts collide with articles outside this request")

        self.invalidator.invalidate_series([series.id])
        return self.get_series(series.id)

    # -----------------------------------------------------------------------
    # Reader progress
    # -----------------------------------------------------------------------

    def get_series_progress(self, series_id: Union[str, UUID], user_id: Union[str, UUID]) -> SeriesProgress:
        user_uuid = parse_uuid(user_id, "User")

        with computing("series progress", series_id=str(series_id), user_id=str(user_uuid)):
            series = self._get_series_or_404(series_id)
            articles = self._published_articles([series.id]).get(series.id, [])
            article_ids = [a.id for a in articles]

            completed_ids = set()
            last_accessed_at = None
            if article_ids:
                completed_ids = {
                    row[0]
                    for row in self.db.query(ArticleView.article_id)
                    .filter(
                        ArticleView.user_id == user_uuid,
                        ArticleView.article_id.in_(article_ids),
                        ArticleView.completion_percent >= COMPLETED_ARTICLE_PERCENT,
                    )
                    .distinct()
                    .all()
                }
                last_view = (
                    self.db.query(ArticleView.created_at)
                    .filter(ArticleView.user_id == user_uuid, ArticleView.article_id.in_(article_ids))
                    .order_by(ArticleView.created_at.desc())
                    .first()
                )
                last_accessed_at = last_view[0] if last_view else None

            total = len(articles)
            current = next((a for a in articles if a.id not in completed_ids), None)

            return SeriesProgress(
                series_id=series.id,
                user_id=user_uuid,
                articles_completed=len(completed_ids),
                total_articles=total,
                completion_percentage=int(round_half_up(len(completed_ids) / total * 100)) if total else 0,
                current_article_id=current.id if current else None,
                last_accessed_at=last_accessed_at,
            )

    def continue_series(self, series_id: Union[str, UUID], user_id: Union[str, UUID]) -> ContinueReading:
        """Progress plus the next article the user should read."""
        progress = self.get_series_progress(series_id, user_id)
        if progress.current_article_id is None:
            raise NotFoundError("Unread article in series", progress.series_id)

        series = self.get_series(progress.series_id, include_articles=True)
        current = next((a for a in series.articles if a.id == progress.current_article_id), None)
        if current is None:
            raise NotFoundError("Article", progress.current_article_id)

        return ContinueReading(
            progress=progress,
            current_article=current,
            series_info=SeriesInfo(
                id=series.id,
                name=series.name,
                slug=series.slug,
                total_articles=series.articles_count,
            ),
        )

    # -----------------------------------------------------------------------
    # Recommendations
    # -----------------------------------------------------------------------

    def get_series_recommendations(self, user_id: Union[str, UUID], limit: int = 5) -> List[SeriesRecommendation]:
        """
        Active series the user has not started, ranked by match score.

        The full ranked list is cached per user; ``limit`` only truncates.
        """
        limit = max(limit, 0)
        user_uuid = parse_uuid(user_id, "User")
        key = cache_key(RECOMMENDATIONS_NAMESPACE, user_uuid)

        cached = self.cache.get_json(key)
        if cached is not None:
            try:
                return _recommendation_list.validate_python(cached)[:limit]
            except PydanticValidationError:
                logger.warning(f"Ignoring cache entry with outdated shape: {key}")

        with computing("series recommendations", user_id=str(user_uuid)):
            recommendations = self._rank_series_for(user_uuid)

        self.cache.set_json(
            key,
            _recommendation_list.dump_python(recommendations, mode="json"),
            ttl=settings.CACHE_TTL_RECOMMENDATIONS,
        )
        return recommendations[:limit]

    def _rank_series_for(self, user_id: UUID) -> List[SeriesRecommendation]:
        history = (
            self.db.query(Article.category, Article.tags)
            .select_from(ArticleView)
            .join(Article, ArticleView.article_id == Article.id)
            .filter(ArticleView.user_id == user_id)
            .order_by(ArticleView.created_at.desc())
            .limit(RECOMMENDATION_HISTORY_SIZE)
            .all()
        )
        category_preferences = preference_distribution(row.category for row in history)
        tag_preferences = preference_distribution(tag for row in history for tag in (row.tags or []))

        engaged = [
            row[0]
            for row in self.db.query(Article.series_id)
            .join(ArticleView, ArticleView.article_id == Article.id)
            .filter(ArticleView.user_id == user_id, Article.series_id.isnot(None))
            .distinct()
            .all()
        ]

        candidates = self.db.query(ArticleSeries).filter(ArticleSeries.status == "ACTIVE")
        if engaged:
            candidates = candidates.filter(ArticleSeries.id.notin_(engaged))
        candidates = candidates.all()

        ids = [s.id for s in candidates]
        published = self._published_articles(ids)
        counts = self._article_counts(ids)

        recommendations = []
        for series in candidates:
            articles = published.get(series.id, [])
            categories = [a.category for a in articles]
            tags = [t for a in articles for t in (a.tags or [])]
            articles_count = counts.get(series.id, 0)

            recommendations.append(SeriesRecommendation(
                series_id=series.id,
                name=series.name,
                slug=series.slug,
                cover_image_url=series.cover_image_url,
                category=series.category,
                articles_count=articles_count,
                estimated_read_time=sum(a.read_time for a in articles),
                match_score=calculate_match_score(
                    categories, tags, articles_count, category_preferences, tag_preferences
                ),
                reason=recommendation_reason(
                    series.category, categories, tags, category_preferences, tag_preferences
                ),
            ))

        recommendations.sort(key=lambda r: (-r.match_score, r.name))
        return recommendations

    # -----------------------------------------------------------------------
    # Series analytics
    # -----------------------------------------------------------------------

    def get_series_analytics(self, series_id: Union[str, UUID]) -> SeriesAnalytics:
        """Admin reporting view; always computed fresh."""
        with computing("series analytics", series_id=str(series_id)):
            series = self._get_series_or_404(series_id)
            articles = self._published_articles([series.id]).get(series.id, [])
            article_ids = [a.id for a in articles]

            views_by_article: Dict[UUID, list] = defaultdict(list)
            if article_ids:
                rows = (
                    self.db.query(
                        ArticleView.article_id,
                        ArticleView.user_id,
                        ArticleView.completion_percent,
                        ArticleView.view_duration,
                    )
                    .filter(ArticleView.article_id.in_(article_ids))
                    .all()
                )
                for row in rows:
                    views_by_article[row.article_id].append(row)

            all_views = [v for a in articles for v in views_by_article[a.id]]
            viewers = [{v.user_id for v in views_by_article[a.id] if v.user_id} for a in articles]
            timed = [v.view_duration for v in all_views if v.view_duration]

            return SeriesAnalytics(
                series_info=SeriesSummary(
                    id=series.id,
                    name=series.name,
                    articles_count=len(articles),
                    status=series.status,
                ),
                engagement=SeriesEngagement(
                    total_views=len(all_views),
                    unique_users=len(set().union(*viewers)) if viewers else 0,
                    avg_completion_rate=int(round_half_up(
                        sum(v.completion_percent for v in all_views) / len(all_views)
                    )) if all_views else 0,
                    avg_read_time=int(round_half_up(sum(timed) / len(timed) / 1000)) if timed else 0,
                ),
                progression=SeriesProgression(
                    users_started=len(viewers[0]) if viewers else 0,
                    users_completed=self._users_completed(articles, views_by_article),
                    dropoff_points=dropoff_points([len(v) for v in viewers]),
                ),
                article_performance=[
                    ArticlePerformance(
                        id=a.id,
                        title=a.title,
                        series_part=a.series_part,
                        views=len(views_by_article[a.id]),
                        avg_completion=round_half_up(
                            sum(v.completion_percent for v in views_by_article[a.id]) / len(views_by_article[a.id]),
                            2,
                        ) if views_by_article[a.id] else 0.0,
                    )
                    for a in articles
                ],
            )

    @staticmethod
    def _users_completed(articles: List[Article], views_by_article: Dict[UUID, list]) -> int:
        """Users with an 80%+ view of every article in the series."""
        if not articles:
            return 0
        completed: Dict[UUID, set] = defaultdict(set)
        for article in articles:
            for view in views_by_article[article.id]:
                if view.user_id and view.completion_percent >= COMPLETED_ARTICLE_PERCENT:
                    completed[view.user_id].add(article.id)
        return sum(1 for article_set in completed.values() if len(article_set) == len(articles))


def dropoff_points(viewer_counts: List[int]) -> List[DropoffPoint]:
    """
    Share of readers lost between consecutive articles.

    A step is skipped when the earlier article has no readers.
    """
    points = []
    for index in range(len(viewer_counts) - 1):
        current, following = viewer_counts[index], viewer_counts[index + 1]
        if current > 0:
            points.append(DropoffPoint(
                article_index=index + 1,
                dropoff_rate=int(round_half_up((current - following) / current * 100)),
            ))
    return points
