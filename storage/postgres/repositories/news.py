"""
News repository for ticker news items.
"""
import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from common.models.data_models import Entity, UpsertResult

logger = logging.getLogger(__name__)


def article_id_for(symbol: str, item: Dict) -> str:
    """Deterministic per-ticker article id (upstream id, else content hash)."""
    upstream_id = item.get('id')
    if upstream_id:
        return f"{symbol}_{upstream_id}"
    source = '|'.join(str(item.get(key) or '') for key in ('article_url', 'published_utc', 'title', 'author'))
    return hashlib.md5(f"{symbol}|{source}".encode('utf-8')).hexdigest()


def parse_published(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class NewsRepository:
    """Repository for news articles keyed by article_id."""

    def __init__(self, pool):
        self.pool = pool

    def upsert_articles(self, entity: Entity, articles: List[Dict]) -> UpsertResult:
        """
        Write news articles for one ticker.

        Articles carrying neither an id nor a URL or title cannot be
        identified and are rejected.
        """
        if not articles:
            return UpsertResult()

        now = datetime.utcnow()
        rows = {}
        rejected = 0

        for article in articles:
            if not (article.get('id') or article.get('article_url') or article.get('title')):
                rejected += 1
                continue

            article_id = article_id_for(entity.symbol, article)
            publisher = article.get('publisher') or {}
            rows[article_id] = (
                article_id,
                entity.id,
                entity.symbol,
                article.get('title'),
                article.get('author'),
                publisher.get('name'),
                article.get('article_url'),
                parse_published(article.get('published_utc')),
                article.get('description'),
                json.dumps(article.get('keywords') or []),
                json.dumps(article.get('tickers') or []),
                json.dumps(article),
                now,
                now,
            )

        if not rows:
            return UpsertResult(accepted=0, rejected=rejected)

        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            self.pool.execute_batch(cur, """
                INSERT INTO ticker_news_items
                (article_id, ticker_id, ticker, title, author, publisher, article_url,
                 published_utc, description, keywords, tickers, raw, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (article_id) DO UPDATE SET
                    title = excluded.title,
                    author = excluded.author,
                    publisher = excluded.publisher,
                    article_url = excluded.article_url,
                    published_utc = excluded.published_utc,
                    description = excluded.description,
                    keywords = excluded.keywords,
                    tickers = excluded.tickers,
                    raw = excluded.raw,
                    updated_at = excluded.updated_at
            """, list(rows.values()))

        logger.debug(f"Wrote {len(rows)} news articles for {entity.symbol}")
        return UpsertResult(accepted=len(rows), rejected=rejected)
