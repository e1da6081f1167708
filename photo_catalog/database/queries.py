"""
Read side of the catalog: filtered/sorted/paginated listings, text search and
the per-root folder tree.
"""
import sqlite3
from collections import Counter
from datetime import date, datetime, time
from pathlib import PurePath, PurePosixPath, PureWindowsPath
from typing import List, Dict, Any, Tuple, Iterable, Optional, Union

from .. import config
from ..exceptions import ValidationError
from ..models import FilterOptions, FolderNode, WatchedRoot, DateBound
from .ops import folder_of, prefix_clause, _like_prefix

# Missing annotation rows read as favorite=False, nsfw=False
BASE_SELECT = """
    SELECT i.id, i.path, i.filename, i.date_taken, i.date_added, i.file_size,
           i.width, i.height, i.thumbnail_path, i.hash, i.is_archive, i.archive_path,
           COALESCE(u.is_favorite, 0) AS is_favorite,
           COALESCE(u.is_nsfw, 0) AS is_nsfw,
           u.custom_tags, u.rating
    FROM images i
    LEFT JOIN user_metadata u ON i.id = u.image_id
"""


def _date_bound(value: DateBound, upper: bool) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = _parse_bound(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        # A bare date covers the whole day
        return datetime.combine(value, time.max if upper else time.min).isoformat()
    raise ValidationError(f"Unsupported date bound: {value!r}")


def _parse_bound(text: str) -> Union[date, datetime]:
    """ISO date or datetime string; a date-only string stays a date."""
    text = text.strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text).replace(tzinfo=None)
    except ValueError as e:
        raise ValidationError(f"Not an ISO date or datetime: {text!r}") from e


def _is_archive_root(path: str) -> bool:
    return PurePath(path).suffix.lower() in config.ARCHIVE_EXTS


def _pure(path: str) -> PurePath:
    return PureWindowsPath(path) if '\\' in path else PurePosixPath(path)


def build_filter(opts: FilterOptions) -> Tuple[str, List[Any]]:
    """Returns a WHERE clause (always non-empty) and its parameters."""
    clauses = ["1=1"]
    params: List[Any] = []

    if opts.favorites_only:
        clauses.append("COALESCE(u.is_favorite, 0) = 1")

    # nsfw_only wins when both are requested
    if opts.nsfw_only:
        clauses.append("COALESCE(u.is_nsfw, 0) = 1")
    elif opts.exclude_nsfw:
        clauses.append("COALESCE(u.is_nsfw, 0) = 0")

    if opts.folders:
        folder_clauses = []
        for folder in opts.folders:
            if _is_archive_root(folder):
                folder_clauses.append("i.archive_path = ?")
                params.append(folder)
            else:
                sep = "\\" if "\\" in folder else "/"
                clause, clause_params = prefix_clause("i.path", folder.rstrip("/\\") + sep)
                folder_clauses.append(clause)
                params.extend(clause_params)
        clauses.append("(" + " OR ".join(folder_clauses) + ")")

    start = _date_bound(opts.start_date, upper=False)
    if start:
        clauses.append("i.date_taken >= ?")
        params.append(start)
    end = _date_bound(opts.end_date, upper=True)
    if end:
        clauses.append("i.date_taken <= ?")
        params.append(end)

    return " AND ".join(clauses), params


def build_order(sort_by: str, sort_order: str) -> str:
    """ORDER BY clause from allow-listed parts only."""
    column = config.SORT_COLUMNS.get(sort_by)
    if column is None:
        raise ValidationError(f"Cannot sort by {sort_by!r}; allowed: {', '.join(config.SORT_COLUMNS)}")
    direction = (sort_order or "").upper()
    if direction not in config.SORT_ORDERS:
        raise ValidationError(f"Sort order must be ASC or DESC, got {sort_order!r}")
    return f"ORDER BY {column} {direction}, i.id {direction}"


def _row_to_view(row: sqlite3.Row) -> Dict[str, Any]:
    view = dict(row)
    view['is_favorite'] = bool(view['is_favorite'])
    view['is_nsfw'] = bool(view['is_nsfw'])
    view['is_archive'] = bool(view['is_archive'])
    return view


class CatalogQueries:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def query_images(self, opts: Optional[FilterOptions] = None) -> List[Dict[str, Any]]:
        opts = opts or FilterOptions()
        where, params = build_filter(opts)
        order = build_order(opts.sort_by, opts.sort_order)
        if not isinstance(opts.limit, int) or not isinstance(opts.offset, int) or opts.offset < 0:
            raise ValidationError("limit and offset must be integers, offset >= 0")

        sql = f"{BASE_SELECT} WHERE {where} {order} LIMIT ? OFFSET ?"
        rows = self.conn.execute(sql, (*params, opts.limit, opts.offset)).fetchall()
        return [_row_to_view(r) for r in rows]

    def count_images(self, opts: Optional[FilterOptions] = None) -> int:
        where, params = build_filter(opts or FilterOptions())
        sql = f"SELECT COUNT(*) FROM images i LEFT JOIN user_metadata u ON i.id = u.image_id WHERE {where}"
        return self.conn.execute(sql, params).fetchone()[0]

    def search_images(self, text: str, opts: Optional[FilterOptions] = None) -> List[Dict[str, Any]]:
        """
        Substring match over filename, custom tags, AI prompt and AI model,
        combined with the listing filters. Always newest first, capped.
        """
        where, params = build_filter(opts or FilterOptions())
        text = (text or "").strip()
        if text:
            where += """ AND (
                i.filename LIKE ? ESCAPE '\\' OR
                u.custom_tags LIKE ? ESCAPE '\\' OR
                ai.prompt LIKE ? ESCAPE '\\' OR
                ai.model LIKE ? ESCAPE '\\'
            )"""
            term = '%' + _like_prefix(text)
            params.extend([term] * 4)

        sql = f"""
            {BASE_SELECT}
            LEFT JOIN ai_metadata ai ON i.id = ai.image_id
            WHERE {where}
            ORDER BY i.date_taken DESC, i.id DESC
            LIMIT ?
        """
        rows = self.conn.execute(sql, (*params, config.SEARCH_LIMIT)).fetchall()
        return [_row_to_view(r) for r in rows]

    # --- Folder Tree ---

    def folder_tree(self, roots: Iterable[Union[WatchedRoot, str]]) -> List[FolderNode]:
        """
        One tree per watched root. A node's count is its own images plus the
        counts of its children; only the root node starts expanded. ZIP roots
        are a single node, since archives have no subfolders.
        """
        folder_counts = self._folder_counts()
        trees = []
        for root in roots:
            root_path = root.path if isinstance(root, WatchedRoot) else root
            if _is_archive_root(root_path):
                node = FolderNode(
                    path=root_path,
                    name=_pure(root_path).name,
                    direct_count=folder_counts.get(root_path, 0),
                    expanded=True,
                    is_archive=True,
                )
                node.count = node.direct_count
            else:
                node = self._build_dir_tree(root_path, folder_counts)
            trees.append(node)
        return trees

    def _folder_counts(self) -> Counter:
        counts: Counter = Counter()
        for row in self.conn.execute("SELECT path, is_archive, archive_path FROM images"):
            counts[folder_of(row['path'], row['is_archive'], row['archive_path'])] += 1
        return counts

    def _build_dir_tree(self, root_path: str, folder_counts: Counter) -> FolderNode:
        root_pure = _pure(root_path)
        root = FolderNode(path=root_path, name=root_pure.name or root_path, expanded=True)
        by_path: Dict[PurePath, FolderNode] = {root_pure: root}

        for folder, count in sorted(folder_counts.items()):
            folder_pure = _pure(folder)
            if folder_pure != root_pure and root_pure not in folder_pure.parents:
                continue

            node = root
            current = root_pure
            for part in folder_pure.relative_to(root_pure).parts:
                current = current / part
                child = by_path.get(current)
                if child is None:
                    child = FolderNode(
                        path=str(current),
                        name=part,
                        is_archive=PurePath(part).suffix.lower() in config.ARCHIVE_EXTS,
                    )
                    node.children.append(child)
                    by_path[current] = child
                node = child
            node.direct_count += count

        _sum_counts(root)
        return root


def _sum_counts(node: FolderNode) -> int:
    """Bottom-up: count = own images + children's counts."""
    node.count = node.direct_count + sum(_sum_counts(child) for child in node.children)
    return node.count
