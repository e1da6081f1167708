"""
Keeps the catalog in step with the watched roots on disk.

The database is the source of truth for which roots are watched; the
registry only holds the live observer handles and can be rebuilt from the
database at any time (see `WatchCoordinator.restore_roots`).

watchdog delivers events on its own thread. They are handed to the event loop
with `run_coroutine_threadsafe`, so all catalog writes stay on the loop.
"""
import asyncio
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from tqdm import tqdm
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .. import config
from ..database.ops import DBOperations
from ..exceptions import PhotoCatalogError, WatchError
from ..metadata.worker import ExtractionWorker
from ..models import ImageRecord, OperationResult, ScanStats, WatchedRoot
from .filesystem import DiskScanner, classify


class WatchRegistry:
    """Live observer per root path. ZIP roots are registered with no observer."""

    def __init__(self):
        self._handles: Dict[str, Optional[Observer]] = {}

    def __contains__(self, path: str) -> bool:
        return path in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def paths(self) -> List[str]:
        return list(self._handles)

    def register(self, path: str, observer: Optional[Observer]):
        self._handles[path] = observer

    def unregister(self, path: str, join: bool = True) -> Optional[Observer]:
        observer = self._handles.pop(path, None)
        _stop(observer, join)
        return observer

    def close_all(self):
        for path in list(self._handles):
            self.unregister(path)


def _stop(observer: Optional[Observer], join: bool = True):
    if observer is None:
        return
    try:
        observer.stop()
        if join:
            observer.join(timeout=5)
    except RuntimeError as e:
        # join() on an observer that never started
        logging.debug(f"Observer shutdown: {e}")


class CatalogEventHandler(FileSystemEventHandler):
    """Forwards filesystem events from the observer thread to the coordinator's loop."""

    def __init__(self, coordinator: "WatchCoordinator", loop: asyncio.AbstractEventLoop):
        super().__init__()
        self.coordinator = coordinator
        self.loop = loop

    def on_created(self, event: FileSystemEvent):
        self._submit(self.coordinator.handle_created(self._path(event.src_path), event.is_directory))

    def on_deleted(self, event: FileSystemEvent):
        self._submit(self.coordinator.handle_removed(self._path(event.src_path), event.is_directory))

    def on_moved(self, event: FileSystemEvent):
        self._submit(self.coordinator.handle_moved(
            self._path(event.src_path), self._path(event.dest_path), event.is_directory
        ))

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self._submit(self.coordinator.handle_written(self._path(event.src_path)))

    def on_closed(self, event: FileSystemEvent):
        # Emitted once a writer closes the file; not every platform sends it
        if not event.is_directory:
            self._submit(self.coordinator.handle_written(self._path(event.src_path)))

    def _path(self, raw) -> str:
        return raw.decode() if isinstance(raw, bytes) else raw

    def _submit(self, coro):
        try:
            future = asyncio.run_coroutine_threadsafe(coro, self.loop)
            future.add_done_callback(_log_failure)
        except RuntimeError as e:
            # Loop already closed during shutdown
            coro.close()
            logging.debug(f"Dropped watch event: {e}")


def _log_failure(future):
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logging.error(f"Watch event handling failed: {exc!r}")


class WatchCoordinator:
    def __init__(self,
                 db_ops: DBOperations,
                 worker: ExtractionWorker,
                 scanner: Optional[DiskScanner] = None,
                 on_change: Optional[Callable[[], None]] = None,
                 observer_factory: Callable[[], Observer] = Observer,
                 show_progress: bool = False):
        self.db = db_ops
        self.worker = worker
        self.scanner = scanner or DiskScanner()
        self.on_change = on_change
        self.observer_factory = observer_factory
        self.show_progress = show_progress

        self.registry = WatchRegistry()
        self.scan_stats = ScanStats()

    # --- Roots ---

    async def add_root(self, path, recursive: bool = True) -> OperationResult:
        root = Path(path).expanduser()
        root_str = str(root.resolve()) if root.exists() else str(root)

        try:
            kind = self._check_new_root(root_str)
            found = await self._index_root(root_str, kind, recursive)
            self._install(root_str, kind, recursive)
        except WatchError as e:
            return OperationResult(False, str(e))
        except (PhotoCatalogError, OSError, sqlite3.Error) as e:
            self.registry.unregister(root_str)
            logging.error(f"Failed to add {root_str}: {e}")
            return OperationResult(False, f"Failed to add {root_str}: {e}")

        try:
            self.db.add_watch_root(root_str, recursive=recursive)
        except PhotoCatalogError as e:
            self.registry.unregister(root_str)
            return OperationResult(False, f"Failed to add {root_str}: {e}")

        label = "Archive" if kind == 'archive' else "Directory"
        return OperationResult(True, f"{label} added successfully. Found {found} images.", count=found)

    async def remove_root(self, path) -> OperationResult:
        """
        Stops watching `path`. Images already indexed from it stay in the catalog.
        """
        root_str = self._known_spelling(str(path))
        was_live = root_str in self.registry
        observer = self.registry.unregister(root_str, join=False)
        if observer is not None and observer.is_alive():
            await asyncio.to_thread(observer.join, 5)
        removed = self.db.remove_watch_root(root_str)

        if not (was_live or removed):
            return OperationResult(False, f"{path} is not being watched")
        logging.info(f"Stopped watching {root_str}")
        return OperationResult(True, "Directory removed successfully", count=removed)

    async def restore_roots(self) -> List[str]:
        """
        Re-installs watches for persisted roots. Roots that vanished from disk
        are pruned from the catalog.
        """
        restored = []
        for root in self.db.list_watch_roots():
            if not Path(root.path).exists():
                logging.warning(f"Watched root {root.path} no longer exists; removing it")
                self.db.remove_watch_root(root.path)
                continue
            if root.path in self.registry:
                continue
            try:
                self._install(root.path, 'archive' if root.is_archive else 'directory', root.recursive)
                restored.append(root.path)
            except (WatchError, OSError) as e:
                logging.error(f"Could not restore watch on {root.path}: {e}")
        logging.info(f"Restored {len(restored)} watched roots.")
        self.resume_pending()
        return restored

    async def rebuild_all(self) -> OperationResult:
        """
        Full reset: stop extraction and watches, clear the catalog, then
        re-add every root from scratch. Stops at the first failing step.
        """
        roots = self.db.list_watch_roots()
        completed: List[str] = []
        step = "clear extraction queue"
        try:
            self.worker.clear_queue()
            await self.worker.wait_idle()
            completed.append(step)

            step = "close watches"
            self.registry.close_all()
            completed.append(step)

            step = "clear catalog"
            cleared = self.db.clear_all(include_roots=True)
            self.worker.purge_cache()
            completed.append(step)
        except (PhotoCatalogError, OSError, sqlite3.Error) as e:
            logging.error(f"Rebuild failed during '{step}': {e}")
            return OperationResult(False, f"Rebuild failed during '{step}': {e}",
                                   details={'completed': completed})

        self._notify()

        results = {}
        failed = []
        total = 0
        for root in roots:
            result = await self.add_root(root.path, recursive=root.recursive)
            results[root.path] = result.message
            total += result.count
            if not result.success:
                failed.append(root.path)

        return OperationResult(
            success=not failed,
            message=f"Rebuilt catalog from {len(roots) - len(failed)} of {len(roots)} roots; {total} images found.",
            count=total,
            details={'cleared': cleared, 'roots': results, 'completed': completed},
        )

    async def rescan(self) -> int:
        """Walks every watched root again and ingests only paths not yet in the catalog."""
        known = self.db.fetch_known_paths()
        added = 0
        for root in self.db.list_watch_roots():
            root_path = Path(root.path)
            if not root_path.exists():
                logging.warning(f"Skipping missing root {root.path}")
                continue
            if root.is_archive:
                records = await asyncio.to_thread(self.scanner.records_for, root_path)
            else:
                records = await asyncio.to_thread(self.scanner.scan, root_path, root.recursive)
            fresh = [r for r in records if r.path not in known]
            added += await self._ingest_records(fresh, desc=f"Rescanning {root_path.name}")
        logging.info(f"Rescan found {added} new images.")
        return added

    def close(self):
        self.registry.close_all()

    # --- Event Handling ---

    async def ingest_file(self, path: str) -> int:
        """Single-file ingestion: an image, or every image in a ZIP."""
        records = await asyncio.to_thread(self.scanner.records_for, Path(path))
        return await self._ingest_records(records)

    async def handle_created(self, path: str, is_directory: bool = False) -> int:
        try:
            if is_directory:
                records = await asyncio.to_thread(self.scanner.scan, Path(path))
                return await self._ingest_records(records)
            if not classify(Path(path)):
                return 0
            return await self.ingest_file(path)
        except Exception:
            logging.exception(f"Error handling new file {path}")
            return 0

    async def handle_removed(self, path: str, is_directory: bool = False) -> int:
        try:
            if is_directory:
                removed = self.db.delete_images_under(path)
            elif classify(Path(path)) == 'archive':
                removed = self.db.delete_archive_entries(path)
            else:
                # Both the raw event path and its forward-slash spelling are tried
                removed = self.db.delete_image_by_path(path)
        except Exception:
            logging.exception(f"Error handling removed file {path}")
            return 0

        if removed:
            logging.debug(f"Removed {removed} images for {path}")
            self._notify()
        else:
            logging.debug(f"No catalog entry for removed path {path}")
        return removed

    async def handle_moved(self, src: str, dest: str, is_directory: bool = False) -> int:
        await self.handle_removed(src, is_directory)
        return await self.handle_created(dest, is_directory)

    async def handle_written(self, path: str) -> bool:
        """
        A file changed on disk. Unknown paths are ingested; a known image
        that never got enriched (typically because it was still being
        copied when first seen) is queued again.
        """
        try:
            kind = classify(Path(path))
            if kind == 'archive':
                return await self.handle_created(path) > 0
            if kind != 'image':
                return False
            image_id = self.db.get_image_id(path)
            if image_id is None:
                return await self.handle_created(path) > 0
            row = self.db.get_image(image_id)
            if row is None or row['thumbnail_path'] is not None:
                return False
            return self.worker.enqueue(image_id, row['path'])
        except Exception:
            logging.exception(f"Error handling modified file {path}")
            return False

    def resume_pending(self) -> int:
        """Queues every image left unenriched by an earlier run."""
        queued = sum(
            1 for image_id, path_key in self.db.fetch_unenriched()
            if self.worker.enqueue(image_id, path_key)
        )
        if queued:
            logging.info(f"Resumed enrichment for {queued} images.")
        return queued

    # --- Internal ---

    def _check_new_root(self, root_str: str) -> str:
        root = Path(root_str)
        if root_str in self.registry or self.db.get_watch_root(root_str):
            raise WatchError(f"{root_str} is already being watched")
        if not root.exists():
            raise WatchError(f"{root_str} does not exist")
        if root.is_dir():
            return 'directory'
        if root.is_file() and root.suffix.lower() in config.ARCHIVE_EXTS:
            return 'archive'
        raise WatchError(f"{root_str} is neither a directory nor a .zip archive")

    async def _index_root(self, root_str: str, kind: str, recursive: bool) -> int:
        started = datetime.now()
        logging.info(f"Scanning existing files in {root_str}...")
        root = Path(root_str)
        if kind == 'archive':
            records = await asyncio.to_thread(self.scanner.archive_records, root)
        else:
            records = await asyncio.to_thread(self.scanner.scan, root, recursive)

        await self._ingest_records(records, desc=f"Indexing {root.name}")

        finished = datetime.now()
        self.scan_stats.record(root_str, started, finished, len(records))
        logging.info(
            f"Found {len(records)} images in {root_str} "
            f"({(finished - started).total_seconds():.2f}s, "
            f"avg {self.scan_stats.average_duration:.2f}s over {self.scan_stats.scan_count} scans)"
        )
        return len(records)

    async def _ingest_records(self, records: List[ImageRecord], desc: str = "Indexing") -> int:
        """
        Upserts each record and queues it for enrichment. Records already in
        the catalog only get their basic fields refreshed.
        """
        added = 0
        for i, rec in enumerate(tqdm(records, desc=desc, unit="img", disable=not self.show_progress)):
            existing = self.db.get_image_id(rec.path)
            image_id = self.db.upsert_image(rec)
            if existing is None:
                self.worker.enqueue(image_id, rec.location)
                added += 1
            if (i + 1) % config.INGEST_YIELD_EVERY == 0:
                await asyncio.sleep(0)

        if added:
            self._notify()
        return added

    def _install(self, root_str: str, kind: str, recursive: bool):
        if kind == 'archive':
            self.registry.register(root_str, None)
            return

        observer = self.observer_factory()
        handler = CatalogEventHandler(self, asyncio.get_running_loop())
        try:
            observer.schedule(handler, root_str, recursive=recursive)
            observer.start()
        except OSError as e:
            _stop(observer)
            raise WatchError(f"Cannot watch {root_str}: {e}") from e
        self.registry.register(root_str, observer)
        logging.info(f"Watching {root_str} (recursive={recursive})")

    def _known_spelling(self, path: str) -> str:
        """Matches `path` against registered roots in either slash convention."""
        candidates = [path, path.replace('\\', '/'), str(Path(path).expanduser())]
        known = set(self.registry.paths()) | {r.path for r in self.db.list_watch_roots()}
        for candidate in candidates:
            if candidate in known:
                return candidate
        return path

    def _notify(self):
        """Fire-and-forget 'catalog changed' signal."""
        if self.on_change is None:
            return
        try:
            asyncio.get_running_loop().call_soon(self._emit)
        except RuntimeError:
            self._emit()

    def _emit(self):
        try:
            self.on_change()
        except Exception:
            logging.exception("Catalog change listener failed")
