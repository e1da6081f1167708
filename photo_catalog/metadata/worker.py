"""
Background enrichment of bare catalog records.

One job at a time, strictly in enqueue order. Decoding, thumbnailing and tag
parsing run in a worker thread so the event loop stays responsive; every
database write happens back on the loop.
"""
import io
import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, Optional, Set, Union

from PIL import Image

from ..database.ops import DBOperations
from ..models import AiMetadata, ImageLocation, parse_location
from ..scanning.filesystem import DiskScanner
from .extract import MetadataExtractor
from .thumbnails import ThumbnailGenerator


@dataclass
class Job:
    image_id: int
    location: ImageLocation


@dataclass
class Enrichment:
    captured_at: Optional[datetime]
    width: int
    height: int
    thumbnail_path: str
    ai: Optional[AiMetadata] = None


class ExtractionWorker:
    def __init__(self,
                 db_ops: DBOperations,
                 thumbnails: ThumbnailGenerator,
                 extractor: Optional[MetadataExtractor] = None,
                 scanner: Optional[DiskScanner] = None):
        self.db = db_ops
        self.thumbnails = thumbnails
        self.extractor = extractor or MetadataExtractor()
        self.scanner = scanner or DiskScanner()

        self._queue: Deque[Job] = deque()
        self._queued_ids: Set[int] = set()
        self._current: Optional[Job] = None
        self._task: Optional[asyncio.Task] = None

        self.processed = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def is_busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def enqueue(self, image_id: int, location: Union[ImageLocation, str]) -> bool:
        """
        Appends a job and starts draining if idle. Must be called from the
        event loop. Returns False if this image is already queued or in flight.
        """
        if isinstance(location, str):
            location = parse_location(location)

        if image_id in self._queued_ids or (self._current and self._current.image_id == image_id):
            logging.debug(f"Image {image_id} already queued for extraction")
            return False

        self._queue.append(Job(image_id, location))
        self._queued_ids.add(image_id)

        if not self.is_busy:
            self._task = asyncio.get_running_loop().create_task(self._drain())
        return True

    def clear_queue(self) -> int:
        """Drops jobs that have not started. The job in flight, if any, finishes."""
        dropped = len(self._queue)
        self._queue.clear()
        self._queued_ids.clear()
        if dropped:
            logging.info(f"Discarded {dropped} pending extraction jobs.")
        return dropped

    def purge_cache(self) -> int:
        return self.thumbnails.purge()

    async def wait_idle(self):
        """Returns once the queue is empty and nothing is in flight."""
        while self.is_busy:
            await asyncio.shield(self._task)

    async def _drain(self):
        while self._queue:
            job = self._queue.popleft()
            self._queued_ids.discard(job.image_id)
            self._current = job
            try:
                await self._process(job)
                self.processed += 1
            except Exception as e:
                # A failed image keeps its bare record; the queue moves on
                self.failed += 1
                logging.warning(f"Extraction failed for {job.location.to_key()}: {e}")
            finally:
                self._current = None

    async def _process(self, job: Job):
        enrichment = await asyncio.to_thread(self._extract, job)

        updated = self.db.update_enrichment(
            job.image_id,
            captured_at=enrichment.captured_at,
            width=enrichment.width,
            height=enrichment.height,
            thumbnail_path=enrichment.thumbnail_path,
        )
        if not updated:
            logging.debug(f"Image {job.image_id} was removed before enrichment finished")
            return

        if enrichment.ai:
            self.db.upsert_ai_metadata(job.image_id, enrichment.ai)
        logging.debug(f"Enriched {job.location.to_key()}")

    def _extract(self, job: Job) -> Enrichment:
        """Blocking part of a job; runs off the event loop."""
        data = self.scanner.read_bytes(job.location)

        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
            thumb_path = self.thumbnails.generate(job.image_id, img)

        try:
            tags = self.extractor.read_tags(data)
        except Exception as e:
            logging.warning(f"Tag parsing failed for {job.location.to_key()}: {e}")
            tags = {}

        captured_at = self.extractor.parse_capture_date(tags)
        if captured_at is None:
            captured_at = self.scanner.source_birth_time(job.location)

        return Enrichment(
            captured_at=captured_at,
            width=width,
            height=height,
            thumbnail_path=str(thumb_path),
            ai=self.extractor.extract_ai_metadata(tags),
        )
