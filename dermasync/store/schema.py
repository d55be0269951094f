"""
Local Store Database Schema
Documents keyed by collection, plus accounts for the local auth provider.
"""

SCHEMA = """
-- =============================================================================
-- 1. DOCUMENTS - One JSON object per document
-- =============================================================================
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    fields TEXT NOT NULL,
    PRIMARY KEY (collection, id)
);

CREATE INDEX IF NOT EXISTS idx_documents_owner
    ON documents(collection, json_extract(fields, '$.userId'));


-- =============================================================================
-- 2. USERS - Local auth provider accounts
-- =============================================================================
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    salt TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);


-- =============================================================================
-- 3. PASSWORD_RESETS - Outstanding reset requests
-- =============================================================================
CREATE TABLE IF NOT EXISTS password_resets (
    token TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    requested_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id)
);
"""
