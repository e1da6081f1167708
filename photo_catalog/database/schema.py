"""
Database schema definitions.

Schema changes are an ordered list of migrations. Each one runs exactly once,
inside its own transaction, and the applied version is recorded in
`schema_version`.
"""
import sqlite3
import logging
from typing import List, Tuple

from ..exceptions import DatabaseError

MIGRATIONS: List[Tuple[int, List[str]]] = [
    (1, [
        # Core image data. `path` is the path key (filesystem path or zip::entry).
        """
        CREATE TABLE IF NOT EXISTS images (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            path            TEXT UNIQUE NOT NULL,
            filename        TEXT NOT NULL,
            date_taken      TEXT,
            date_added      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%S', 'now')),
            file_size       INTEGER,
            width           INTEGER,
            height          INTEGER,
            thumbnail_path  TEXT,
            hash            TEXT
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS user_metadata (
            image_id        INTEGER PRIMARY KEY,
            is_favorite     INTEGER NOT NULL DEFAULT 0,
            is_nsfw         INTEGER NOT NULL DEFAULT 0,
            custom_tags     TEXT,
            rating          INTEGER CHECK (rating IS NULL OR rating BETWEEN 1 AND 5),
            notes           TEXT,
            FOREIGN KEY(image_id) REFERENCES images(id) ON DELETE CASCADE
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS ai_metadata (
            image_id        INTEGER PRIMARY KEY,
            prompt          TEXT,
            negative_prompt TEXT,
            model           TEXT,
            steps           INTEGER,
            cfg_scale       REAL,
            seed            INTEGER,
            sampler         TEXT,
            scheduler       TEXT,
            FOREIGN KEY(image_id) REFERENCES images(id) ON DELETE CASCADE
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS watch_directories (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            path            TEXT UNIQUE NOT NULL,
            recursive       INTEGER NOT NULL DEFAULT 1,
            active          INTEGER NOT NULL DEFAULT 1,
            date_added      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%S', 'now'))
        );
        """,
        "CREATE INDEX IF NOT EXISTS idx_images_date_taken ON images(date_taken DESC);",
        "CREATE INDEX IF NOT EXISTS idx_images_date_added ON images(date_added DESC);",
        "CREATE INDEX IF NOT EXISTS idx_images_filename ON images(filename);",
        "CREATE INDEX IF NOT EXISTS idx_user_metadata_favorite ON user_metadata(is_favorite);",
        "CREATE INDEX IF NOT EXISTS idx_user_metadata_nsfw ON user_metadata(is_nsfw);",
        "CREATE INDEX IF NOT EXISTS idx_ai_metadata_model ON ai_metadata(model);",
    ]),
    (2, [
        # Archive support
        "ALTER TABLE images ADD COLUMN is_archive INTEGER NOT NULL DEFAULT 0;",
        "ALTER TABLE images ADD COLUMN archive_path TEXT;",
        "CREATE INDEX IF NOT EXISTS idx_images_archive_path ON images(archive_path);",
    ]),
    (3, [
        # Filtered tag snapshot (JSON) and output size recovered from AI parameters
        "ALTER TABLE ai_metadata ADD COLUMN raw_tags TEXT;",
        "ALTER TABLE ai_metadata ADD COLUMN size TEXT;",
    ]),
]

CURRENT_SCHEMA_VERSION = MIGRATIONS[-1][0]


def get_schema_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] or 0


def init_schema(conn: sqlite3.Connection):
    """
    Brings the database up to CURRENT_SCHEMA_VERSION.
    Idempotent: safe to run on every startup.
    """
    with conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version     INTEGER PRIMARY KEY,
                applied_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%S', 'now'))
            );
        """)

    current = get_schema_version(conn)
    for version, statements in MIGRATIONS:
        if version <= current:
            continue
        logging.info(f"Applying schema migration {version}")
        try:
            with conn:
                for stmt in statements:
                    conn.execute(stmt)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
        except sqlite3.Error as e:
            raise DatabaseError(f"Schema migration {version} failed: {e}") from e

    logging.debug("Database schema initialized.")
