"""
Analytics export: dashboard, per-article and per-user analytics as JSON or CSV.

Article and user ids are read from the database one page at a time and each
page is computed before the next is fetched, so the full id list is never
loaded.
"""
import csv
import io
import json
import logging
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel

from core.config import settings
from core.exceptions import ValidationError
from models import Article, User
from services.analytics_service import AnalyticsService

logger = logging.getLogger(__name__)

EXPORT_TYPES = ("dashboard", "articles", "users")
EXPORT_FORMATS = ("json", "csv")


def to_csv(rows: List[Dict[str, Any]]) -> str:
    """
    Header from the first row's top-level scalar fields.

    Nested lists and objects are left out; an empty export is "".
    """
    if not rows:
        return ""

    columns = [k for k, v in rows[0].items() if not isinstance(v, (dict, list))]
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction="ignore", lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow({k: ("" if row.get(k) is None else row.get(k)) for k in columns})
    return buffer.getvalue()


class AnalyticsExporter:

    def __init__(
        self,
        analytics: AnalyticsService,
        chunk_size: Optional[int] = None,
        max_users: Optional[int] = None,
    ):
        self.analytics = analytics
        self.chunk_size = chunk_size or settings.ANALYTICS_EXPORT_CHUNK_SIZE
        self.max_users = max_users or settings.ANALYTICS_EXPORT_MAX_USERS

    def _paged_ids(self, query, cap: Optional[int] = None) -> Iterator[List[Any]]:
        """Yield ids a page at a time, stopping at ``cap`` ids when one is given."""
        offset = 0
        while cap is None or offset < cap:
            size = self.chunk_size if cap is None else min(self.chunk_size, cap - offset)
            page = [row[0] for row in query.offset(offset).limit(size).all()]
            if page:
                yield page
            if len(page) < size:
                return
            offset += size

    def _article_id_pages(self) -> Iterator[List[Any]]:
        query = (
            self.analytics.db.query(Article.id)
            .filter(Article.status == "PUBLISHED")
            .order_by(Article.published_at, Article.id)
        )
        return self._paged_ids(query)

    def _user_id_pages(self) -> Iterator[List[Any]]:
        query = self.analytics.db.query(User.id).order_by(User.created_at, User.id)
        return self._paged_ids(query, cap=self.max_users)

    def collect(self, export_type: str) -> List[BaseModel]:
        if export_type == "dashboard":
            return [self.analytics.get_dashboard_metrics()]

        results: List[BaseModel] = []
        if export_type == "articles":
            for page in self._article_id_pages():
                results.extend(self.analytics.get_article_analytics(article_id) for article_id in page)
        elif export_type == "users":
            for page in self._user_id_pages():
                results.extend(self.analytics.get_user_activity(user_id) for user_id in page)
        else:
            raise ValidationError(f"Invalid export type: {export_type}", field="type")
        return results

    def export(self, export_type: str, fmt: str = "json") -> str:
        if export_type not in EXPORT_TYPES:
            raise ValidationError(f"Invalid export type: {export_type}", field="type")
        if fmt not in EXPORT_FORMATS:
            raise ValidationError(f"Invalid export format: {fmt}", field="format")

        rows = [item.model_dump(mode="json") for item in self.collect(export_type)]
        logger.info(f"Exported {len(rows)} {export_type} record(s) as {fmt}")

        if fmt == "csv":
            return to_csv(rows)
        if export_type == "dashboard":
            return json.dumps(rows[0], indent=2)
        return json.dumps(rows, indent=2)
