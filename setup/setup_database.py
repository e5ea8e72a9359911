#!/usr/bin/env python3
"""
Database setup script for the GitHub enrichment pipeline.

Creates the Supabase schema programmatically using direct PostgreSQL connection.

Usage:
    python setup/setup_database.py           # Create schema
    python setup/setup_database.py --verify  # Verify existing schema
    python setup/setup_database.py --drop    # Drop and recreate (DANGEROUS)
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import psycopg2

from utils.config_loader import load_config
from utils.logger import setup_logger

logger = setup_logger(__name__)


# SQL for creating the schema, in dependency order
CREATE_TABLES_SQL = {
    "repositories": """
CREATE TABLE IF NOT EXISTS repositories (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    github_id BIGINT UNIQUE,
    name TEXT,
    full_name TEXT NOT NULL,
    description TEXT,
    url TEXT,
    api_url TEXT,
    stars INTEGER,
    forks INTEGER,
    open_issues_count INTEGER,
    watchers_count INTEGER,
    size_kb INTEGER,
    primary_language TEXT,
    license TEXT,
    is_fork BOOLEAN,
    is_archived BOOLEAN,
    default_branch TEXT,
    last_updated TIMESTAMPTZ,

    -- Enrichment tracking
    is_enriched BOOLEAN NOT NULL DEFAULT FALSE,
    enrichment_attempts INTEGER NOT NULL DEFAULT 0
);
""",
    "contributors": """
CREATE TABLE IF NOT EXISTS contributors (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    github_id BIGINT NOT NULL UNIQUE,
    username TEXT,
    name TEXT,
    avatar TEXT,
    bio TEXT,
    company TEXT,
    blog TEXT,
    twitter_username TEXT,
    location TEXT,
    followers INTEGER,
    repositories INTEGER,
    impact_score INTEGER,
    role_classification TEXT,
    top_languages JSONB,

    -- Enrichment tracking
    is_enriched BOOLEAN NOT NULL DEFAULT FALSE,
    enrichment_attempts INTEGER NOT NULL DEFAULT 0
);
""",
    "merge_requests": """
CREATE TABLE IF NOT EXISTS merge_requests (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    github_id BIGINT UNIQUE,           -- GitHub's internal pull request id
    pr_number INTEGER,                 -- Per-repository number used in API paths
    repository_id UUID REFERENCES repositories(id) ON DELETE CASCADE,
    repository_github_id BIGINT,
    title TEXT,
    description TEXT,
    state TEXT CHECK (state IN ('open', 'closed', 'merged')),
    is_draft BOOLEAN,
    author_id UUID REFERENCES contributors(id),
    author_github_id BIGINT,
    merged_by_id UUID REFERENCES contributors(id),
    merged_by_github_id BIGINT,
    created_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ,
    closed_at TIMESTAMPTZ,
    merged_at TIMESTAMPTZ,
    source_branch TEXT,
    target_branch TEXT,
    labels JSONB,
    commits_count INTEGER,
    files_changed INTEGER,
    additions INTEGER,
    deletions INTEGER,
    comments_count INTEGER,
    review_comments INTEGER,
    reviews_count INTEGER,
    complexity_score INTEGER,
    cycle_time_hours REAL,
    review_time_hours REAL,
    url TEXT,

    -- Enrichment tracking
    is_enriched BOOLEAN NOT NULL DEFAULT FALSE,
    enrichment_attempts INTEGER NOT NULL DEFAULT 0,

    UNIQUE(repository_id, pr_number)
);
""",
    "commits": """
CREATE TABLE IF NOT EXISTS commits (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    github_id TEXT NOT NULL,           -- Commit SHA
    repository_id UUID NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
    repository_github_id BIGINT,
    filename TEXT,                     -- NULL when the commit has no file data
    contributor_id UUID REFERENCES contributors(id),
    contributor_github_id BIGINT,
    pull_request_id UUID REFERENCES merge_requests(id) ON DELETE SET NULL,
    pull_request_github_id BIGINT,
    message TEXT,
    committed_at TIMESTAMPTZ,
    parents JSONB,
    is_merge_commit BOOLEAN NOT NULL DEFAULT FALSE,
    status TEXT,
    additions INTEGER NOT NULL DEFAULT 0,
    deletions INTEGER NOT NULL DEFAULT 0,
    patch TEXT,
    is_enriched BOOLEAN NOT NULL DEFAULT TRUE,

    -- One row per file; a single NULL-filename row per commit otherwise
    CONSTRAINT commits_sha_repo_filename_key
        UNIQUE NULLS NOT DISTINCT (github_id, repository_id, filename)
);
""",
}

# Selection order for fetch_unenriched: (enrichment_attempts, github_id)
CREATE_INDEXES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_repositories_pending ON repositories(enrichment_attempts, github_id) WHERE is_enriched = FALSE;",
    "CREATE INDEX IF NOT EXISTS idx_contributors_pending ON contributors(enrichment_attempts, github_id) WHERE is_enriched = FALSE;",
    "CREATE INDEX IF NOT EXISTS idx_merge_requests_pending ON merge_requests(enrichment_attempts, github_id) WHERE is_enriched = FALSE;",
    "CREATE INDEX IF NOT EXISTS idx_merge_requests_repository ON merge_requests(repository_id);",
    "CREATE INDEX IF NOT EXISTS idx_commits_pull_request ON commits(pull_request_id);",
    "CREATE INDEX IF NOT EXISTS idx_commits_contributor ON commits(contributor_id);",
]

EXPECTED_INDEXES = {
    "repositories": ["idx_repositories_pending"],
    "contributors": ["idx_contributors_pending"],
    "merge_requests": ["idx_merge_requests_pending", "idx_merge_requests_repository"],
    "commits": ["idx_commits_pull_request", "idx_commits_contributor", "commits_sha_repo_filename_key"],
}

DROP_TABLE_SQL = (
    "DROP TABLE IF EXISTS commits CASCADE; "
    "DROP TABLE IF EXISTS merge_requests CASCADE; "
    "DROP TABLE IF EXISTS contributors CASCADE; "
    "DROP TABLE IF EXISTS repositories CASCADE;"
)


def get_database_url(config) -> str:
    """
    Get PostgreSQL database URL.

    Uses DATABASE_URL from .env; exits with instructions when it is missing.
    """
    if config.credentials.database_url:
        return config.credentials.database_url

    # If no DATABASE_URL, provide instructions
    logger.error("DATABASE_URL not found in .env file")
    logger.error("\nTo get your DATABASE_URL:")
    logger.error("1. Go to Supabase Dashboard → Project Settings → Database")
    logger.error("2. Find 'Connection string' under 'Connection pooling'")
    logger.error("3. Copy the 'URI' connection string")
    logger.error("4. Add to .env file: DATABASE_URL=postgresql://...")
    sys.exit(1)


def create_connection(database_url: str):
    """Create a PostgreSQL database connection."""
    try:
        conn = psycopg2.connect(database_url)
        logger.info("✓ Connected to PostgreSQL database")
        return conn
    except psycopg2.Error as e:
        logger.error(f"✗ Failed to connect to database: {e}")
        logger.error("\nMake sure:")
        logger.error("1. DATABASE_URL is correct in .env file")
        logger.error("2. Your IP is allowed in Supabase (Project Settings → Database → Connection pooling)")
        logger.error("3. Database password is correct")
        sys.exit(1)


def execute_sql(conn, sql_statement: str, description: str) -> bool:
    """Execute a SQL statement."""
    try:
        cursor = conn.cursor()
        cursor.execute(sql_statement)
        conn.commit()
        cursor.close()
        logger.info(f"✓ {description}")
        return True
    except psycopg2.Error as e:
        logger.error(f"✗ {description} failed: {e}")
        conn.rollback()
        return False


def verify_schema(conn) -> bool:
    """Verify that every table exists and report missing indexes."""
    try:
        cursor = conn.cursor()
        ok = True

        for table, expected_indexes in EXPECTED_INDEXES.items():
            cursor.execute(
                """
                SELECT EXISTS (
                    SELECT FROM information_schema.tables
                    WHERE table_name = %s
                );
                """,
                (table,),
            )
            if not cursor.fetchone()[0]:
                logger.error(f"✗ Table '{table}' does not exist")
                ok = False
                continue
            logger.info(f"✓ Table '{table}' exists")

            cursor.execute("SELECT indexname FROM pg_indexes WHERE tablename = %s;", (table,))
            indexes = [row[0] for row in cursor.fetchall()]
            for idx in expected_indexes:
                if idx in indexes:
                    logger.info(f"✓ Index '{idx}' exists")
                else:
                    logger.warning(f"⚠ Index '{idx}' missing")

        cursor.close()
        return ok

    except psycopg2.Error as e:
        logger.error(f"✗ Schema verification failed: {e}")
        return False


def create_schema(conn) -> bool:
    """Create the database schema."""
    logger.info("\n" + "="*80)
    logger.info("CREATING SCHEMA")
    logger.info("="*80 + "\n")

    for table, create_sql in CREATE_TABLES_SQL.items():
        if not execute_sql(conn, create_sql, f"Created table '{table}'"):
            return False

    for idx_sql in CREATE_INDEXES_SQL:
        idx_name = idx_sql.split("INDEX IF NOT EXISTS ")[1].split(" ON")[0]
        if not execute_sql(conn, idx_sql, f"Created index '{idx_name}'"):
            return False

    logger.info("\n✓ Database schema created successfully!")
    return True


def drop_schema(conn) -> bool:
    """Drop the existing schema (DANGEROUS)."""
    logger.warning("\n" + "="*80)
    logger.warning("⚠️  WARNING: DROPPING EXISTING SCHEMA")
    logger.warning("="*80)
    logger.warning("This will DELETE ALL DATA in repositories, contributors, merge_requests and commits!")

    response = input("\nType 'yes' to confirm: ")
    if response.lower() != 'yes':
        logger.info("Aborted.")
        return False

    if not execute_sql(conn, DROP_TABLE_SQL, "Dropped enrichment tables"):
        return False

    logger.info("✓ Schema dropped")
    return True


def main():
    parser = argparse.ArgumentParser(
        description="Set up database schema for the GitHub enrichment pipeline"
    )
    parser.add_argument(
        "--verify",
        action="store_true",
        help="Verify existing schema without creating"
    )
    parser.add_argument(
        "--drop",
        action="store_true",
        help="Drop and recreate tables (DANGEROUS - deletes all data)"
    )

    args = parser.parse_args()

    config = load_config()
    logger.info("✓ Configuration loaded")

    database_url = get_database_url(config)
    conn = create_connection(database_url)

    try:
        if args.verify:
            logger.info("\n" + "="*80)
            logger.info("VERIFYING SCHEMA")
            logger.info("="*80 + "\n")

            if verify_schema(conn):
                logger.info("\n✓ Schema verification successful")
                sys.exit(0)
            else:
                logger.error("\n✗ Schema verification failed")
                sys.exit(1)

        if args.drop:
            if not drop_schema(conn):
                sys.exit(1)

        if create_schema(conn):
            logger.info("\nNext steps:")
            logger.info("  1. Verify the schema: python setup/setup_database.py --verify")
            logger.info("  2. Load rows to enrich, then run: python main.py enrich all")
            sys.exit(0)
        else:
            logger.error("\n✗ Schema creation failed")
            sys.exit(1)

    finally:
        conn.close()
        logger.info("\n✓ Database connection closed")


if __name__ == "__main__":
    main()
