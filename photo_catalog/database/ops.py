import json
import sqlite3
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple

from ..exceptions import ValidationError, DatabaseError
from ..models import ImageRecord, AiMetadata, WatchedRoot

ANNOTATION_FIELDS = ('is_favorite', 'is_nsfw', 'custom_tags', 'rating', 'notes')


def _path_variants(path: str) -> List[str]:
    """The same logical path under both slash conventions."""
    variants = [path, path.replace('\\', '/'), path.replace('/', '\\')]
    return list(dict.fromkeys(variants))


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return escaped + '%'


def prefix_clause(column: str, prefix: str) -> Tuple[str, List[Any]]:
    """Case-sensitive "starts with" test; LIKE folds ASCII case."""
    return f"substr({column}, 1, ?) = ?", [len(prefix), prefix]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def validate_rating(rating: Any):
    if rating is None:
        return
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError(f"Rating must be an integer between 1 and 5, got {rating!r}")


class DBOperations:
    """
    Reads and writes for the catalog tables. Every write commits on its own;
    callers never manage transactions.
    """
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # --- Images ---

    def upsert_image(self, rec: ImageRecord) -> int:
        """
        Inserts an image or refreshes the basic fields of the existing row
        with the same path key. The id of an existing row never changes, so
        annotations and AI rows stay attached.
        """
        if not rec.path:
            raise ValidationError("Image path is required")

        with self.conn:
            self.conn.execute("""
                INSERT INTO images (path, filename, date_taken, file_size, width, height, hash, is_archive, archive_path)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    filename = excluded.filename,
                    file_size = excluded.file_size,
                    is_archive = excluded.is_archive,
                    archive_path = excluded.archive_path
            """, (
                rec.path, rec.filename, _iso(rec.captured_at), rec.file_size,
                rec.width, rec.height, rec.content_hash, int(rec.is_archive), rec.archive_path
            ))
            row = self.conn.execute("SELECT id FROM images WHERE path = ?", (rec.path,)).fetchone()

        if row is None:
            raise DatabaseError(f"Upsert of {rec.path} did not produce a row")
        return int(row[0])

    def get_image_id(self, path: str) -> Optional[int]:
        for candidate in _path_variants(path):
            row = self.conn.execute("SELECT id FROM images WHERE path = ?", (candidate,)).fetchone()
            if row:
                return int(row[0])
        return None

    def get_image(self, image_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM images WHERE id = ?", (image_id,)).fetchone()
        return dict(row) if row else None

    def fetch_known_paths(self) -> set:
        return {r[0] for r in self.conn.execute("SELECT path FROM images")}

    def fetch_unenriched(self) -> List[Tuple[int, str]]:
        """(id, path key) of images that never got a thumbnail, oldest first."""
        rows = self.conn.execute(
            "SELECT id, path FROM images WHERE thumbnail_path IS NULL ORDER BY id"
        ).fetchall()
        return [(int(r[0]), r[1]) for r in rows]

    def delete_image_by_path(self, path: str) -> int:
        """
        Deletes the image stored under `path` in either slash convention.
        Annotation and AI rows go with it (ON DELETE CASCADE).
        """
        variants = _path_variants(path)
        placeholders = ",".join("?" * len(variants))
        with self.conn:
            cur = self.conn.execute(f"DELETE FROM images WHERE path IN ({placeholders})", variants)
        return cur.rowcount

    def delete_images_under(self, folder: str) -> int:
        """Deletes every image inside `folder`, including archive entries below it."""
        removed = 0
        with self.conn:
            for variant in _path_variants(folder.rstrip('/\\')):
                for sep in ('/', '\\'):
                    clause, params = prefix_clause("path", variant + sep)
                    cur = self.conn.execute(f"DELETE FROM images WHERE {clause}", params)
                    removed += cur.rowcount
        return removed

    def delete_archive_entries(self, archive_path: str) -> int:
        variants = _path_variants(archive_path)
        placeholders = ",".join("?" * len(variants))
        with self.conn:
            cur = self.conn.execute(f"DELETE FROM images WHERE archive_path IN ({placeholders})", variants)
        return cur.rowcount

    def update_enrichment(self,
                          image_id: int,
                          captured_at: Optional[datetime] = None,
                          width: Optional[int] = None,
                          height: Optional[int] = None,
                          thumbnail_path: Optional[str] = None) -> int:
        """
        Applies derived fields. Fields passed as None are left untouched.
        Returns 0 (and writes nothing) when the row no longer exists.
        """
        updates = {
            'date_taken': _iso(captured_at),
            'width': width,
            'height': height,
            'thumbnail_path': thumbnail_path,
        }
        updates = {k: v for k, v in updates.items() if v is not None}
        if not updates:
            return 0

        assignments = ", ".join(f"{col} = ?" for col in updates)
        with self.conn:
            cur = self.conn.execute(
                f"UPDATE images SET {assignments} WHERE id = ?",
                (*updates.values(), image_id)
            )
        return cur.rowcount

    # --- Annotations ---

    def upsert_annotation(self, image_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Creates the annotation row if needed, then applies only the supplied fields.
        Validation happens before anything is written.
        """
        unknown = set(fields) - set(ANNOTATION_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown annotation fields: {', '.join(sorted(unknown))}")
        if 'rating' in fields:
            validate_rating(fields['rating'])
        if self.get_image(image_id) is None:
            raise ValidationError(f"No image with id {image_id}")

        values = dict(fields)
        for flag in ('is_favorite', 'is_nsfw'):
            if flag in values:
                values[flag] = int(bool(values[flag]))

        with self.conn:
            self.conn.execute("INSERT OR IGNORE INTO user_metadata (image_id) VALUES (?)", (image_id,))
            if values:
                assignments = ", ".join(f"{col} = ?" for col in values)
                self.conn.execute(
                    f"UPDATE user_metadata SET {assignments} WHERE image_id = ?",
                    (*values.values(), image_id)
                )
        return self.get_annotation(image_id)

    def get_annotation(self, image_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            "SELECT is_favorite, is_nsfw, custom_tags, rating, notes FROM user_metadata WHERE image_id = ?",
            (image_id,)
        ).fetchone()
        if row is None:
            return None
        data = dict(row)
        data['is_favorite'] = bool(data['is_favorite'])
        data['is_nsfw'] = bool(data['is_nsfw'])
        return data

    def clear_all_favorites(self) -> int:
        with self.conn:
            cur = self.conn.execute("UPDATE user_metadata SET is_favorite = 0 WHERE is_favorite = 1")
        logging.info(f"Cleared {cur.rowcount} favorites.")
        return cur.rowcount

    def clear_all_nsfw(self) -> int:
        with self.conn:
            cur = self.conn.execute("UPDATE user_metadata SET is_nsfw = 0 WHERE is_nsfw = 1")
        logging.info(f"Cleared {cur.rowcount} NSFW flags.")
        return cur.rowcount

    # --- AI Metadata ---

    def upsert_ai_metadata(self, image_id: int, ai: AiMetadata) -> bool:
        """
        Replaces the AI row wholesale. Conditional on the image still existing,
        so a row deleted mid-enrichment turns this into a no-op.
        """
        with self.conn:
            cur = self.conn.execute("""
                INSERT OR REPLACE INTO ai_metadata
                (image_id, prompt, negative_prompt, model, steps, cfg_scale, seed, sampler, scheduler, size, raw_tags)
                SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
                WHERE EXISTS (SELECT 1 FROM images WHERE id = ?)
            """, (
                image_id, ai.prompt, ai.negative_prompt, ai.model, ai.steps, ai.cfg_scale,
                ai.seed, ai.sampler, ai.scheduler, ai.size,
                json.dumps(ai.raw_tags, default=str) if ai.raw_tags else None,
                image_id,
            ))
        return cur.rowcount > 0

    def get_ai_metadata(self, image_id: int) -> Optional[AiMetadata]:
        row = self.conn.execute("SELECT * FROM ai_metadata WHERE image_id = ?", (image_id,)).fetchone()
        if row is None:
            return None
        data = dict(row)
        data.pop('image_id')
        raw = data.pop('raw_tags')
        return AiMetadata(**data, raw_tags=json.loads(raw) if raw else {})

    # --- Joined View ---

    def get_photo_metadata(self, image_id: int) -> Optional[Dict[str, Any]]:
        """Image, annotation and AI fields for one image, flattened."""
        image = self.get_image(image_id)
        if image is None:
            return None

        image['is_archive'] = bool(image['is_archive'])
        annotation = self.get_annotation(image_id) or {
            'is_favorite': False, 'is_nsfw': False, 'custom_tags': None, 'rating': None, 'notes': None,
        }
        image.update(annotation)

        ai = self.get_ai_metadata(image_id)
        ai_fields = vars(ai) if ai else vars(AiMetadata())
        image.update(ai_fields)
        image['has_ai_metadata'] = ai is not None
        return image

    # --- Watched Roots ---

    def add_watch_root(self, path: str, recursive: bool = True) -> WatchedRoot:
        try:
            with self.conn:
                self.conn.execute(
                    "INSERT INTO watch_directories (path, recursive) VALUES (?, ?)",
                    (path, int(recursive))
                )
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"{path} is already watched") from e
        return self.get_watch_root(path)

    def get_watch_root(self, path: str) -> Optional[WatchedRoot]:
        row = self.conn.execute(
            "SELECT path, recursive, active, date_added FROM watch_directories WHERE path = ?", (path,)
        ).fetchone()
        return self._row_to_root(row) if row else None

    def list_watch_roots(self) -> List[WatchedRoot]:
        rows = self.conn.execute(
            "SELECT path, recursive, active, date_added FROM watch_directories ORDER BY date_added, id"
        ).fetchall()
        return [self._row_to_root(r) for r in rows]

    def remove_watch_root(self, path: str) -> int:
        with self.conn:
            cur = self.conn.execute("DELETE FROM watch_directories WHERE path = ?", (path,))
        return cur.rowcount

    def _row_to_root(self, row) -> WatchedRoot:
        return WatchedRoot(
            path=row['path'],
            recursive=bool(row['recursive']),
            is_active=bool(row['active']),
            date_added=row['date_added'],
        )

    # --- Bulk ---

    def table_counts(self) -> Dict[str, int]:
        counts = {}
        for table in ('images', 'user_metadata', 'ai_metadata', 'watch_directories'):
            counts[table] = self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        return counts

    def clear_all(self, include_roots: bool = False) -> Dict[str, int]:
        """
        Removes every image (annotations and AI rows cascade).
        Watched roots are only dropped when `include_roots` is set.
        Returns the number of rows removed per table.
        """
        before = self.table_counts()
        try:
            with self.conn:
                self.conn.execute("DELETE FROM images")
                if include_roots:
                    self.conn.execute("DELETE FROM watch_directories")
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to clear catalog: {e}") from e

        after = self.table_counts()
        removed = {table: before[table] - after[table] for table in before}
        logging.info(f"Catalog cleared: {removed}")
        return removed

    def list_subfolders(self) -> List[str]:
        """Distinct folders (or archive containers) that hold indexed images."""
        folders = set()
        for row in self.conn.execute("SELECT path, is_archive, archive_path FROM images"):
            folders.add(folder_of(row['path'], row['is_archive'], row['archive_path']))
        return sorted(folders)


def folder_of(path: str, is_archive: Any, archive_path: Optional[str]) -> str:
    """The folder an image belongs to; for archive entries, the archive itself."""
    if is_archive and archive_path:
        return archive_path
    cut = max(path.rfind('/'), path.rfind('\\'))
    if cut <= 0:
        return path[:cut + 1] if cut == 0 else ''
    return path[:cut]
