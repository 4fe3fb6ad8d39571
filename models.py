from sqlalchemy import Column, Integer, Boolean, CheckConstraint, Float, DateTime, ForeignKey, JSON, Text, Index, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid

# JSON on SQLite, JSONB on PostgreSQL
JSONType = JSON().with_variant(JSONB, "postgresql")

USER_ROLES = ("FREE", "PLAYER", "COACH", "PARENT", "ADMIN")
ARTICLE_STATUSES = ("DRAFT", "PUBLISHED", "ARCHIVED", "REVIEW")
SERIES_STATUSES = ("ACTIVE", "INACTIVE", "ARCHIVED")
ZONES = ("READ", "COACH", "PLAYER", "PARENT")
ACTIVITY_ACTIONS = ("LOGIN", "LOGOUT", "VIEW", "READ", "SEARCH", "SHARE", "DOWNLOAD")
ACTIVITY_RESOURCES = ("ARTICLE", "SERIES", "AUTH", "MEDIA", "USER")
SUBSCRIPTION_STATUSES = ("ACTIVE", "CANCELLED", "EXPIRED")


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(Text, unique=True, nullable=False)
    name = Column(Text, nullable=True)
    role = Column(Text, default="FREE", nullable=False)  # one of USER_ROLES
    is_active = Column(Boolean, default=True, nullable=False)
    # Ban: user is locked out until this timestamp
    locked_until = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    last_login_at = Column(DateTime(timezone=True), nullable=True)

    article_views = relationship("ArticleView", back_populates="user", lazy="dynamic")
    activities = relationship("UserActivity", back_populates="user", lazy="dynamic")

    __table_args__ = (
        CheckConstraint(
            "role IN ('FREE', 'PLAYER', 'COACH', 'PARENT', 'ADMIN')",
            name="ck_users_role",
        ),
        Index("ix_users_created_at", "created_at"),
        Index("ix_users_last_login_at", "last_login_at"),
    )


class ArticleSeries(Base):
    __tablename__ = "article_series"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    slug = Column(Text, unique=True, nullable=False)
    description = Column(Text, nullable=True)
    cover_image_url = Column(Text, nullable=True)
    category = Column(Text, nullable=False)  # e.g. 'players', 'coaches', 'teams'
    status = Column(Text, default="ACTIVE", nullable=False)  # one of SERIES_STATUSES
    total_planned_articles = Column(Integer, nullable=True)
    tags = Column(JSONType, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    articles = relationship("Article", back_populates="series")


class Article(Base):
    __tablename__ = "articles"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(Text, nullable=False)
    slug = Column(Text, unique=True, nullable=False)
    category = Column(Text, nullable=False)  # 'TACTICS', 'TECHNIQUE', 'TRAINING', ...
    status = Column(Text, default="DRAFT", nullable=False)  # one of ARTICLE_STATUSES
    is_premium = Column(Boolean, default=False, nullable=False)
    view_count = Column(Integer, default=0, nullable=False)
    read_time = Column(Integer, default=5, nullable=False)  # minutes
    tags = Column(JSONType, nullable=False, default=list)
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    # --- SERIES MEMBERSHIP ---
    series_id = Column(Uuid, ForeignKey("article_series.id"), nullable=True, index=True)
    series_part = Column(Integer, nullable=True)

    series = relationship("ArticleSeries", back_populates="articles")
    zones = relationship("ArticleZone", back_populates="article", cascade="all, delete-orphan")
    views = relationship("ArticleView", back_populates="article", lazy="dynamic")

    __table_args__ = (
        UniqueConstraint("series_id", "series_part", name="uq_article_series_part"),
        Index("ix_articles_status_view_count", "status", "view_count"),
    )


class ArticleZone(Base):
    __tablename__ = "article_zones"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    article_id = Column(Uuid, ForeignKey("articles.id"), nullable=False, index=True)
    zone = Column(Text, nullable=False)  # one of ZONES
    visible = Column(Boolean, default=True, nullable=False)

    article = relationship("Article", back_populates="zones")


class ArticleView(Base):
    """One row per (user, article, session) view. Append-only."""
    __tablename__ = "article_views"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    article_id = Column(Uuid, ForeignKey("articles.id"), nullable=False)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=True)  # null for anonymous readers
    session_id = Column(Text, nullable=True)
    view_duration = Column(Integer, nullable=True)  # milliseconds
    completion_percent = Column(Float, default=0, nullable=False)  # 0-100
    device_type = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    article = relationship("Article", back_populates="views")
    user = relationship("User", back_populates="article_views")

    __table_args__ = (
        Index("ix_article_views_article_created", "article_id", "created_at"),
        Index("ix_article_views_user_created", "user_id", "created_at"),
    )


class UserActivity(Base):
    """Append-only event log. Drives heatmaps and session counts."""
    __tablename__ = "user_activities"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=True)
    session_id = Column(Text, nullable=False)
    action = Column(Text, nullable=False)  # one of ACTIVITY_ACTIONS
    resource_type = Column(Text, nullable=True)  # one of ACTIVITY_RESOURCES
    resource_id = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    ip_address = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    device_type = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="activities")

    __table_args__ = (
        Index("ix_user_activities_created_at", "created_at"),
        Index("ix_user_activities_user_created", "user_id", "created_at"),
    )


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(Text, default="ACTIVE", nullable=False)  # one of SUBSCRIPTION_STATUSES
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
