"""
Schema management for the sync store.

Creates every table the engine writes with idempotent DDL. Column types are
picked per dialect so the same layout works on PostgreSQL and SQLite.
"""
import logging

logger = logging.getLogger(__name__)


COLUMN_TYPES = {
    'postgres': {
        'serial_pk': 'BIGSERIAL PRIMARY KEY',
        'json': 'JSONB',
        'ts': 'TIMESTAMPTZ',
        'float': 'DOUBLE PRECISION',
    },
    'sqlite': {
        'serial_pk': 'INTEGER PRIMARY KEY AUTOINCREMENT',
        'json': 'TEXT',
        'ts': 'TIMESTAMP',
        'float': 'REAL',
    },
}


class SchemaManager:
    """
    Manages table creation for tickers, series records and engine state.

    Responsibilities:
    - Ticker universe table (entity ids)
    - Record tables for price bars, fundamentals, news and overviews
    - Engine state: watermarks, batch ledger, failed work units
    - Indexes used by the planner and operational listings
    """

    def __init__(self, pool):
        """
        Initialize schema manager.

        Args:
            pool: PostgresConnectionPool or SQLiteConnectionPool instance
        """
        self.pool = pool
        self.types = COLUMN_TYPES[getattr(pool, 'dialect', 'postgres')]

    def initialize_schema(self):
        """Initialize complete database schema."""
        with self.pool.get_connection() as conn:
            cur = conn.cursor()

            self._create_tickers_table(cur)
            self._create_price_history_table(cur)
            self._create_fundamentals_tables(cur)
            self._create_news_table(cur)
            self._create_overviews_table(cur)
            self._create_watermarks_table(cur)
            self._create_batches_table(cur)
            self._create_failed_units_table(cur)

        logger.info("Database schema initialized (%s)", getattr(self.pool, 'dialect', 'postgres'))

    def _create_tickers_table(self, cur):
        t = self.types
        cur.execute(f"""
            CREATE TABLE IF NOT EXISTS tickers (
                id {t['serial_pk']},
                ticker TEXT NOT NULL UNIQUE,
                name TEXT,
                market TEXT,
                locale TEXT,
                type TEXT,
                primary_exchange TEXT,
                currency_name TEXT,
                cik TEXT,
                active BOOLEAN DEFAULT TRUE,
                created_at {t['ts']},
                updated_at {t['ts']}
            )
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS idx_tickers_active ON tickers (active, id)")
        logger.debug("Created tickers table")

    def _create_price_history_table(self, cur):
        """Bars keyed by (ticker_id, resolution, t); t is UTC."""
        t = self.types
        cur.execute(f"""
            CREATE TABLE IF NOT EXISTS ticker_price_histories (
                ticker_id BIGINT NOT NULL,
                ticker TEXT NOT NULL,
                resolution TEXT NOT NULL,
                t TIMESTAMP NOT NULL,
                year INTEGER,
                o {t['float']},
                h {t['float']},
                l {t['float']},
                c {t['float']},
                v BIGINT,
                vw {t['float']},
                raw {t['json']},
                created_at {t['ts']},
                updated_at {t['ts']},
                PRIMARY KEY (ticker_id, resolution, t)
            )
        """)
        logger.debug("Created ticker_price_histories table")

    def _create_fundamentals_tables(self, cur):
        t = self.types
        cur.execute(f"""
            CREATE TABLE IF NOT EXISTS ticker_fundamentals (
                ticker_id BIGINT NOT NULL,
                ticker TEXT NOT NULL,
                end_date DATE NOT NULL,
                fiscal_period TEXT NOT NULL,
                fiscal_year TEXT NOT NULL,
                cik TEXT,
                company_name TEXT,
                timeframe TEXT,
                status TEXT,
                start_date DATE,
                filing_date DATE,
                source_filing_url TEXT,
                total_assets {t['float']},
                total_liabilities {t['float']},
                equity {t['float']},
                net_income {t['float']},
                revenue {t['float']},
                operating_income {t['float']},
                gross_profit {t['float']},
                eps_basic {t['float']},
                eps_diluted {t['float']},
                raw {t['json']},
                fetched_at {t['ts']},
                created_at {t['ts']},
                updated_at {t['ts']},
                PRIMARY KEY (ticker_id, end_date, fiscal_period, fiscal_year)
            )
        """)
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_ticker_fundamentals_filing
            ON ticker_fundamentals (ticker_id, timeframe, filing_date)
        """)
        cur.execute(f"""
            CREATE TABLE IF NOT EXISTS ticker_fundamental_metrics (
                ticker_id BIGINT NOT NULL,
                ticker TEXT NOT NULL,
                end_date DATE NOT NULL,
                fiscal_period TEXT NOT NULL,
                fiscal_year TEXT,
                statement TEXT NOT NULL,
                line_item TEXT NOT NULL,
                label TEXT,
                unit TEXT,
                display_order INTEGER,
                value {t['float']},
                created_at {t['ts']},
                updated_at {t['ts']},
                PRIMARY KEY (ticker_id, end_date, fiscal_period, statement, line_item)
            )
        """)
        logger.debug("Created fundamentals tables")

    def _create_news_table(self, cur):
        t = self.types
        cur.execute(f"""
            CREATE TABLE IF NOT EXISTS ticker_news_items (
                article_id TEXT PRIMARY KEY,
                ticker_id BIGINT NOT NULL,
                ticker TEXT NOT NULL,
                title TEXT,
                author TEXT,
                publisher TEXT,
                article_url TEXT,
                published_utc TIMESTAMP,
                description TEXT,
                keywords TEXT,
                tickers TEXT,
                raw {t['json']},
                created_at {t['ts']},
                updated_at {t['ts']}
            )
        """)
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_ticker_news_published
            ON ticker_news_items (ticker_id, published_utc)
        """)
        logger.debug("Created ticker_news_items table")

    def _create_overviews_table(self, cur):
        t = self.types
        cur.execute(f"""
            CREATE TABLE IF NOT EXISTS ticker_overviews (
                ticker_id BIGINT NOT NULL,
                ticker TEXT NOT NULL,
                overview_date DATE NOT NULL,
                name TEXT,
                market TEXT,
                type TEXT,
                active BOOLEAN,
                primary_exchange TEXT,
                market_cap {t['float']},
                share_class_shares_outstanding {t['float']},
                total_employees INTEGER,
                list_date DATE,
                description TEXT,
                homepage_url TEXT,
                raw {t['json']},
                created_at {t['ts']},
                updated_at {t['ts']},
                PRIMARY KEY (ticker_id, overview_date)
            )
        """)
        logger.debug("Created ticker_overviews table")

    def _create_watermarks_table(self, cur):
        t = self.types
        cur.execute(f"""
            CREATE TABLE IF NOT EXISTS sync_watermarks (
                ticker_id BIGINT NOT NULL,
                series_kind TEXT NOT NULL,
                resolution TEXT NOT NULL,
                watermark DATE NOT NULL,
                created_at {t['ts']},
                updated_at {t['ts']},
                PRIMARY KEY (ticker_id, series_kind, resolution)
            )
        """)
        logger.debug("Created sync_watermarks table")

    def _create_batches_table(self, cur):
        t = self.types
        cur.execute(f"""
            CREATE TABLE IF NOT EXISTS ingest_batches (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                total INTEGER NOT NULL,
                pending INTEGER NOT NULL,
                failed INTEGER NOT NULL DEFAULT 0,
                processed INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'running',
                created_at {t['ts']},
                updated_at {t['ts']},
                finished_at {t['ts']}
            )
        """)
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_ingest_batches_status
            ON ingest_batches (status, created_at)
        """)
        logger.debug("Created ingest_batches table")

    def _create_failed_units_table(self, cur):
        t = self.types
        cur.execute(f"""
            CREATE TABLE IF NOT EXISTS failed_work_units (
                unit_key TEXT PRIMARY KEY,
                ticker_id BIGINT NOT NULL,
                ticker TEXT,
                series_kind TEXT NOT NULL,
                payload TEXT NOT NULL,
                reason TEXT,
                attempts INTEGER DEFAULT 0,
                batch_id TEXT,
                failed_at {t['ts']}
            )
        """)
        logger.debug("Created failed_work_units table")
