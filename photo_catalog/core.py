import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from . import config
from .database.db import DBManager
from .database.ops import DBOperations
from .database.queries import CatalogQueries
from .exceptions import PhotoCatalogError
from .metadata.extract import MetadataExtractor
from .metadata.thumbnails import ThumbnailGenerator
from .metadata.worker import ExtractionWorker
from .models import FilterOptions, FolderNode, OperationResult, parse_location
from .scanning.filesystem import DiskScanner
from .scanning.watcher import WatchCoordinator


class PhotoCatalogApp:
    """
    The command surface used by the UI layer. Owns the database connection,
    the extraction worker and the watch coordinator; all of them live on the
    event loop that calls `start()`.
    """
    def __init__(self,
                 data_dir: Path = config.DEFAULT_DATA_DIR,
                 on_change: Optional[Callable[[], None]] = None,
                 show_progress: bool = False):
        self.data_dir = Path(data_dir)
        self.db_manager = DBManager(self.data_dir / config.DB_FILENAME)
        self.show_progress = show_progress
        self._listeners: List[Callable[[], None]] = [on_change] if on_change else []

        self.db: Optional[DBOperations] = None
        self.queries: Optional[CatalogQueries] = None
        self.worker: Optional[ExtractionWorker] = None
        self.watcher: Optional[WatchCoordinator] = None

    async def start(self, restore: bool = True):
        conn = self.db_manager.connect()
        self.db = DBOperations(conn)
        self.queries = CatalogQueries(conn)

        self.extractor = MetadataExtractor()
        self.scanner = DiskScanner()
        thumbnails = ThumbnailGenerator(self.data_dir / config.THUMBNAIL_DIRNAME)
        self.worker = ExtractionWorker(self.db, thumbnails, self.extractor, self.scanner)
        self.watcher = WatchCoordinator(
            self.db, self.worker, self.scanner,
            on_change=self._broadcast,
            show_progress=self.show_progress,
        )

        if restore:
            await self.watcher.restore_roots()

    async def close(self):
        if self.watcher:
            self.watcher.close()
        if self.worker:
            self.worker.clear_queue()
            await self.worker.wait_idle()
        self.db_manager.close()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # --- Notifications ---

    def subscribe(self, callback: Callable[[], None]):
        """Registers a 'catalog changed' listener."""
        self._listeners.append(callback)

    def _broadcast(self):
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logging.exception("Catalog change listener failed")

    # --- Queries ---

    def get_photos(self, filters: Optional[FilterOptions] = None) -> List[Dict[str, Any]]:
        return self.queries.query_images(filters)

    def count_photos(self, filters: Optional[FilterOptions] = None) -> int:
        return self.queries.count_images(filters)

    def search_photos(self, text: str, filters: Optional[FilterOptions] = None) -> List[Dict[str, Any]]:
        return self.queries.search_images(text, filters)

    def get_photo_metadata(self, image_id: int) -> Optional[Dict[str, Any]]:
        return self.db.get_photo_metadata(image_id)

    def update_annotation(self, image_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        annotation = self.db.upsert_annotation(image_id, fields)
        self._broadcast()
        return annotation

    def get_folder_tree(self) -> List[FolderNode]:
        return self.queries.folder_tree(self.db.list_watch_roots())

    def list_subfolders(self) -> List[str]:
        return self.db.list_subfolders()

    def debug_summary(self) -> Dict[str, Any]:
        return {
            'tables': self.db.table_counts(),
            'roots': [r.path for r in self.db.list_watch_roots()],
            'queue': {
                'pending': self.worker.pending,
                'processed': self.worker.processed,
                'failed': self.worker.failed,
            },
            'scans': self.watcher.scan_stats.scans,
        }

    async def get_raw_tags(self, path_key: str) -> Dict[str, Any]:
        """Full tag dump for one image, read fresh from disk."""
        location = parse_location(path_key)
        data = await asyncio.to_thread(self.scanner.read_bytes, location)
        tags = await asyncio.to_thread(self.extractor.read_tags, data)
        return self.extractor.printable_tags(tags)

    # --- Watched Roots ---

    async def add_watch_root(self, path, recursive: bool = True) -> OperationResult:
        return await self.watcher.add_root(path, recursive=recursive)

    async def remove_watch_root(self, path) -> OperationResult:
        return await self.watcher.remove_root(path)

    def list_watch_roots(self) -> List[Dict[str, Any]]:
        live = set(self.watcher.registry.paths())
        return [
            {
                'path': root.path,
                'display_name': root.display_name,
                'is_active': root.is_active and root.path in live,
                'recursive': root.recursive,
                'date_added': root.date_added,
            }
            for root in self.db.list_watch_roots()
        ]

    # --- Bulk Operations ---

    async def clear_catalog(self) -> OperationResult:
        """Removes every indexed image. Watched roots stay registered."""
        self.worker.clear_queue()
        await self.worker.wait_idle()
        try:
            removed = self.db.clear_all()
        except PhotoCatalogError as e:
            return OperationResult(False, str(e))
        removed['thumbnails'] = self.worker.purge_cache()
        self._broadcast()
        return OperationResult(True, f"Cleared {removed['images']} images.", count=removed['images'], details=removed)

    def clear_favorites(self) -> OperationResult:
        count = self.db.clear_all_favorites()
        self._broadcast()
        return OperationResult(True, f"Cleared {count} favorites.", count=count)

    def clear_nsfw_flags(self) -> OperationResult:
        count = self.db.clear_all_nsfw()
        self._broadcast()
        return OperationResult(True, f"Cleared {count} NSFW flags.", count=count)

    async def rebuild_catalog(self) -> OperationResult:
        return await self.watcher.rebuild_all()

    async def rescan_for_new_files(self) -> OperationResult:
        added = await self.watcher.rescan()
        return OperationResult(True, f"Found {added} new images.", count=added)

    async def wait_for_enrichment(self):
        await self.worker.wait_idle()
