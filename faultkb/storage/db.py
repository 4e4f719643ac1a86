"""SQLite database setup and schema management."""

from __future__ import annotations

import sqlite3
from pathlib import Path

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
    subscription_tier TEXT NOT NULL DEFAULT 'free',
    queries_remaining INTEGER NOT NULL DEFAULT 10 CHECK (queries_remaining >= 0),
    total_queries_used INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS documents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id INTEGER NOT NULL,
    file_name TEXT NOT NULL,
    document_type TEXT NOT NULL DEFAULT 'other',
    extracted_text TEXT,
    created_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS faults (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id INTEGER,
    device_type TEXT NOT NULL,
    manufacturer TEXT NOT NULL,
    device_model TEXT NOT NULL,
    fault_description TEXT NOT NULL,
    symptoms TEXT,
    error_codes TEXT,
    root_cause TEXT,
    solution TEXT,
    parts_required TEXT,
    estimated_repair_time TEXT,
    difficulty TEXT NOT NULL DEFAULT 'medium'
        CHECK (difficulty IN ('easy', 'medium', 'hard', 'expert')),
    source_document_id INTEGER,
    source_website TEXT,
    provenance TEXT NOT NULL DEFAULT 'synthesized',
    views INTEGER NOT NULL DEFAULT 0,
    helpful INTEGER NOT NULL DEFAULT 0,
    not_helpful INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP
);

-- Weak references: linked_fault_id is deliberately not a foreign key.
CREATE TABLE IF NOT EXISTS fault_links (
    fault_id INTEGER NOT NULL REFERENCES faults(id),
    linked_fault_id INTEGER NOT NULL,
    PRIMARY KEY (fault_id, linked_fault_id)
);

CREATE TABLE IF NOT EXISTS search_sources (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    url TEXT NOT NULL,
    source_type TEXT NOT NULL DEFAULT 'other',
    is_active INTEGER NOT NULL DEFAULT 1,
    added_by INTEGER,
    last_scraped TIMESTAMP,
    respects_robots_txt INTEGER NOT NULL DEFAULT 1,
    requires_auth INTEGER NOT NULL DEFAULT 0,
    credential_ref TEXT,
    created_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS query_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id INTEGER NOT NULL,
    query TEXT NOT NULL,
    device_type TEXT,
    manufacturer TEXT,
    device_model TEXT,
    related_fault_ids TEXT,
    search_performed INTEGER NOT NULL DEFAULT 0,
    sources_used TEXT,
    query_cost INTEGER NOT NULL DEFAULT 1,
    created_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_faults_device ON faults(device_type, manufacturer, device_model);
CREATE INDEX IF NOT EXISTS idx_faults_views ON faults(views);
CREATE INDEX IF NOT EXISTS idx_documents_owner ON documents(owner_id);
CREATE INDEX IF NOT EXISTS idx_history_owner ON query_history(owner_id);
CREATE INDEX IF NOT EXISTS idx_sources_active ON search_sources(is_active);
"""


def get_connection(db_path: Path, timeout: float = 10.0) -> sqlite3.Connection:
    """Create or open a SQLite database with the faultkb schema.

    The connection runs in autocommit mode; multi-statement writes go through
    Repository.transaction(), which takes the write lock up front.
    """
    conn = sqlite3.connect(str(db_path), timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")

    conn.executescript(SCHEMA_SQL)

    return conn
