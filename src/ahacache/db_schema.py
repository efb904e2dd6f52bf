"""Database schema definitions for the ahacache store.

Contains the job/history/embedding/config DDL, the per-entity table DDL
generated from the entity registry, the seeded server settings, and the
current schema version constant. Every statement is additive
(``IF NOT EXISTS`` / ``INSERT OR IGNORE``) so ``initialize()`` can run
against an existing file.
"""

from __future__ import annotations

from ahacache.entities import ENTITY_KINDS, EntityKind

_JOB_COLUMNS = """\
    id                       TEXT PRIMARY KEY,
    status                   TEXT NOT NULL DEFAULT 'pending',
    entities                 TEXT NOT NULL DEFAULT '[]',
    progress                 INTEGER NOT NULL DEFAULT 0,
    total                    INTEGER NOT NULL DEFAULT 0,
    current_entity           TEXT,
    current_entity_progress  INTEGER NOT NULL DEFAULT 0,
    current_entity_total     INTEGER NOT NULL DEFAULT 0,
    processed_count          INTEGER NOT NULL DEFAULT 0,
    error_count              INTEGER NOT NULL DEFAULT 0,
    last_error               TEXT,
    created_at               TEXT NOT NULL,
    started_at               TEXT,
    updated_at               TEXT NOT NULL,
    completed_at             TEXT,
    estimated_completion     TEXT,
    configuration            TEXT DEFAULT '{}',
    CHECK (status IN ('pending', 'running', 'paused', 'completed', 'failed'))"""

_HISTORY_COLUMNS = """\
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id       TEXT NOT NULL REFERENCES {jobs}(id) ON DELETE CASCADE,
    entity_type  TEXT NOT NULL,
    entity_id    TEXT,
    action       TEXT NOT NULL,
    details      TEXT DEFAULT '{{}}',
    timestamp    TEXT NOT NULL"""

SCHEMA_SQL = f"""\
-- ---- Sync jobs -------------------------------------------------------------

CREATE TABLE IF NOT EXISTS sync_jobs (
{_JOB_COLUMNS}
);

CREATE INDEX IF NOT EXISTS idx_sync_jobs_status ON sync_jobs(status);
CREATE INDEX IF NOT EXISTS idx_sync_jobs_updated_at ON sync_jobs(updated_at);

CREATE TABLE IF NOT EXISTS sync_history (
{_HISTORY_COLUMNS.format(jobs="sync_jobs")}
);

CREATE INDEX IF NOT EXISTS idx_sync_history_job ON sync_history(job_id, id DESC);
CREATE INDEX IF NOT EXISTS idx_sync_history_timestamp ON sync_history(timestamp);

CREATE TABLE IF NOT EXISTS sync_status (
    entity_type              TEXT PRIMARY KEY,
    last_sync_at             TEXT,
    last_successful_sync_at  TEXT,
    total_records            INTEGER NOT NULL DEFAULT 0,
    failed_records           INTEGER NOT NULL DEFAULT 0,
    sync_enabled             BOOLEAN NOT NULL DEFAULT 1,
    updated_at               TEXT NOT NULL
);

-- ---- Embedding jobs --------------------------------------------------------

CREATE TABLE IF NOT EXISTS embedding_jobs (
{_JOB_COLUMNS}
);

CREATE INDEX IF NOT EXISTS idx_embedding_jobs_status ON embedding_jobs(status);
CREATE INDEX IF NOT EXISTS idx_embedding_jobs_updated_at ON embedding_jobs(updated_at);

CREATE TABLE IF NOT EXISTS embedding_history (
{_HISTORY_COLUMNS.format(jobs="embedding_jobs")}
);

CREATE INDEX IF NOT EXISTS idx_embedding_history_job ON embedding_history(job_id, id DESC);

-- ---- Embeddings ------------------------------------------------------------

CREATE TABLE IF NOT EXISTS embeddings (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type       TEXT NOT NULL,
    entity_id         TEXT NOT NULL,
    text              TEXT NOT NULL DEFAULT '',
    embedding_vector  TEXT NOT NULL,
    metadata          TEXT DEFAULT '{{}}',
    model             TEXT NOT NULL DEFAULT 'simple-hash',
    dimensions        INTEGER NOT NULL,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    UNIQUE (entity_type, entity_id)
);

CREATE INDEX IF NOT EXISTS idx_embeddings_entity_type ON embeddings(entity_type);
CREATE INDEX IF NOT EXISTS idx_embeddings_model ON embeddings(model);

-- ---- Server settings -------------------------------------------------------

CREATE TABLE IF NOT EXISTS server_config (
    key          TEXT PRIMARY KEY,
    value        TEXT NOT NULL,
    description  TEXT DEFAULT '',
    updated_at   TEXT NOT NULL
);
"""

# (key, value, description) rows seeded with INSERT OR IGNORE.
DEFAULT_SETTINGS: tuple[tuple[str, str, str], ...] = (
    ("sync_interval_minutes", "30", "Default sync interval in minutes"),
    ("max_concurrent_syncs", "3", "Maximum number of concurrently running jobs per family"),
    ("sync_batch_size", "50", "Records requested per remote page during sync"),
    ("embedding_batch_size", "50", "Entities embedded per provider call"),
    ("cache_ttl_minutes", "60", "Cache time-to-live in minutes"),
    ("enable_semantic_search", "true", "Enable vector similarity search"),
    ("embedding_model", "simple-hash", "Default embedding model identifier"),
    ("max_search_results", "100", "Maximum number of search results to return"),
    ("enable_background_sync", "true", "Enable automatic background synchronization"),
)


def entity_table_sql(kind: EntityKind) -> str:
    """DDL for one entity table: remote id, denormalized columns, raw payload."""
    columns = "".join(f"    {c.name:<24} {c.sql_type},\n" for c in kind.columns)
    ddl = (
        f"CREATE TABLE IF NOT EXISTS {kind.table} (\n"
        f"    {'id':<24} TEXT PRIMARY KEY,\n"
        f"{columns}"
        f"    {'raw_data':<24} TEXT NOT NULL DEFAULT '{{}}',\n"
        f"    {'synced_at':<24} TEXT NOT NULL\n"
        f");\n"
        f"CREATE INDEX IF NOT EXISTS idx_{kind.table}_synced_at ON {kind.table}(synced_at);\n"
    )
    for column in ("product_id", "workflow_status", "commentable_id"):
        if column in kind.column_names:
            ddl += f"CREATE INDEX IF NOT EXISTS idx_{kind.table}_{column} ON {kind.table}({column});\n"
    return ddl


ENTITY_SCHEMA_SQL = "\n".join(entity_table_sql(kind) for kind in ENTITY_KINDS.values())

CURRENT_SCHEMA_VERSION = 1
