from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime, timezone
from uuid import UUID
from typing import Optional, List, Dict, Any, Literal


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Filters / requests
# ---------------------------------------------------------------------------


class AnalyticsFilters(BaseModel):
    """Time window and scoping for analytics queries. Naive datetimes are UTC."""
    model_config = ConfigDict(extra="forbid")

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    user_role: Optional[str] = None
    period: Optional[Literal["day", "week", "month", "year"]] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _normalize_dates(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class TrackEventRequest(BaseModel):
    user_id: Optional[UUID] = None  # anonymous events have no user
    session_id: str = Field(min_length=1)
    action: Literal["LOGIN", "LOGOUT", "VIEW", "READ", "SEARCH", "SHARE", "DOWNLOAD"]
    resource_type: Optional[Literal["ARTICLE", "SERIES", "AUTH", "MEDIA", "USER"]] = None
    resource_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: Optional[str] = None


class SeriesFilters(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    category: Optional[str] = None
    status: str = "ACTIVE"
    search: Optional[str] = None
    sort_by: Literal["created_at", "updated_at", "name", "articles_count"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


class SeriesCreate(BaseModel):
    name: str = Field(min_length=1)
    slug: str = Field(min_length=1)
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    category: str
    total_planned_articles: Optional[int] = Field(default=None, ge=0)
    tags: List[str] = Field(default_factory=list)


class SeriesUpdate(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    category: Optional[str] = None
    status: Optional[Literal["ACTIVE", "INACTIVE", "ARCHIVED"]] = None
    total_planned_articles: Optional[int] = Field(default=None, ge=0)
    tags: Optional[List[str]] = None

    # Omit a field to leave it unchanged; these columns cannot be cleared
    @field_validator("name", "slug", "category", "status", "tags")
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


class ArticleOrder(BaseModel):
    article_id: UUID
    series_part: int = Field(ge=1)


# ---------------------------------------------------------------------------
# Typed query rows
# ---------------------------------------------------------------------------


class DateBucketRow(BaseModel):
    date: str  # YYYY-MM-DD
    count: int


class ViewsBucketRow(BaseModel):
    date: str
    views: int
    unique_views: int


class UserGrowthPoint(BaseModel):
    date: str
    new_users: int
    total_users: int  # running total within the window


class HeatmapCell(BaseModel):
    hour: int  # 0-23
    day: int  # 0-6, Sunday = 0
    activity: int


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


class TopArticle(BaseModel):
    id: UUID
    title: str
    slug: str
    views: int
    category: str


class CategoryShare(BaseModel):
    category: str
    count: int
    percentage: float


class DashboardMetrics(BaseModel):
    total_users: int
    active_users: int
    new_users_today: int
    total_articles: int
    published_articles: int
    total_views: int
    views_today: int
    avg_read_time: int
    top_articles: List[TopArticle]
    user_growth: List[UserGrowthPoint]
    views_growth: List[ViewsBucketRow]
    category_distribution: List[CategoryShare]
    user_activity_heatmap: List[HeatmapCell]


# ---------------------------------------------------------------------------
# Article / user analytics
# ---------------------------------------------------------------------------


class ZoneViews(BaseModel):
    zone: str
    views: int


class RoleCount(BaseModel):
    role: str
    count: int


class DeviceCount(BaseModel):
    device: str
    count: int


class ArticleDemographics(BaseModel):
    by_role: List[RoleCount]
    by_device: List[DeviceCount]


class UserEngagement(BaseModel):
    """Not wired to any data source yet; always zero."""
    likes: int = 0
    shares: int = 0
    comments: int = 0
    placeholder: bool = True


class ArticleAnalytics(BaseModel):
    id: UUID
    title: str
    slug: str
    total_views: int
    unique_views: int
    avg_read_time: int  # seconds
    completion_rate: float
    bounce_rate: float
    views_by_zone: List[ZoneViews]
    views_over_time: List[DateBucketRow]
    user_engagement: UserEngagement = Field(default_factory=UserEngagement)
    demographics: ArticleDemographics


class DailyActivity(BaseModel):
    date: str
    sessions: int
    read_time: int  # seconds


class CategoryCount(BaseModel):
    category: str
    count: int


class ZoneTime(BaseModel):
    zone: str
    time: int  # seconds


class EngagementBreakdown(BaseModel):
    daily: List[DailyActivity]
    categories: List[CategoryCount]
    zones: List[ZoneTime]


class UserActivitySummary(BaseModel):
    user_id: UUID
    user_name: Optional[str]
    email: str
    role: str
    last_active: Optional[datetime]
    total_sessions: int
    total_read_time: int  # seconds
    articles_read: int
    favorite_categories: List[str]
    activity_score: int
    engagement: EngagementBreakdown


class PerformanceMetrics(BaseModel):
    """Static snapshot until a monitoring backend is integrated."""
    api_response_times: Dict[str, float]
    database_performance: Dict[str, float]
    cache_performance: Dict[str, float]
    system_resources: Dict[str, float]
    error_rates: Dict[str, Any]
    placeholder: bool = True


# ---------------------------------------------------------------------------
# Series
# ---------------------------------------------------------------------------


class SeriesArticle(BaseModel):
    id: UUID
    title: str
    slug: str
    series_part: Optional[int]
    read_time: int
    published_at: Optional[datetime]
    view_count: int
    zones: List[str] = Field(default_factory=list)


class SeriesDetail(BaseModel):
    id: UUID
    name: str
    slug: str
    description: Optional[str]
    cover_image_url: Optional[str]
    category: str
    status: str
    total_planned_articles: Optional[int]
    tags: List[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    articles_count: int
    estimated_read_time: int  # minutes
    completion_rate: int
    articles: List[SeriesArticle] = Field(default_factory=list)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_previous: bool


class SeriesPage(BaseModel):
    series: List[SeriesDetail]
    pagination: Pagination


class PopularSeries(SeriesDetail):
    popularity_score: int


class SeriesProgress(BaseModel):
    series_id: UUID
    user_id: UUID
    articles_completed: int
    total_articles: int
    completion_percentage: int
    current_article_id: Optional[UUID] = None
    # None when the user has never opened an article of the series
    last_accessed_at: Optional[datetime] = None


class SeriesInfo(BaseModel):
    id: UUID
    name: str
    slug: str
    total_articles: int


class ContinueReading(BaseModel):
    progress: SeriesProgress
    current_article: SeriesArticle
    series_info: SeriesInfo


class SeriesRecommendation(BaseModel):
    series_id: UUID
    name: str
    slug: str
    cover_image_url: Optional[str]
    category: str
    articles_count: int
    estimated_read_time: int
    match_score: int
    reason: str


class DropoffPoint(BaseModel):
    article_index: int
    dropoff_rate: int


class SeriesSummary(BaseModel):
    id: UUID
    name: str
    articles_count: int
    status: str


class SeriesEngagement(BaseModel):
    total_views: int
    unique_users: int
    avg_completion_rate: int
    avg_read_time: int  # seconds


class SeriesProgression(BaseModel):
    users_started: int
    users_completed: int
    dropoff_points: List[DropoffPoint]


class ArticlePerformance(BaseModel):
    id: UUID
    title: str
    series_part: Optional[int]
    views: int
    avg_completion: float


class SeriesAnalytics(BaseModel):
    series_info: SeriesSummary
    engagement: SeriesEngagement
    progression: SeriesProgression
    article_performance: List[ArticlePerformance]


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class UserStats(BaseModel):
    total_users: int
    active_users: int
    new_users_this_month: int
    premium_subscribers: int
    role_breakdown: Dict[str, int]
    user_growth: float  # month-over-month, percent


class ArticleStats(BaseModel):
    total_articles: int
    published_articles: int
    draft_articles: int
    archived_articles: int
    premium_articles: int
    total_views: int
    weekly_views: int  # last 7 days
    monthly_growth: float  # new articles, month-over-month, percent
    popular_categories: List[CategoryCount]  # top 5 by article count
