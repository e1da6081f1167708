import io
import zipfile
from pathlib import Path

import pytest
from PIL import Image
from PIL.PngImagePlugin import PngInfo

from photo_catalog.database.db import DBManager
from photo_catalog.database.ops import DBOperations
from photo_catalog.database.queries import CatalogQueries
from photo_catalog.metadata.thumbnails import ThumbnailGenerator
from photo_catalog.metadata.worker import ExtractionWorker
from photo_catalog.models import ImageRecord, FilesystemImage, ArchiveImage


class FakeObserver:
    """Stands in for watchdog's Observer so tests never start OS watch threads."""
    instances = []

    def __init__(self):
        self.scheduled = []
        self.handler = None
        self.started = False
        self.stopped = False
        FakeObserver.instances.append(self)

    def schedule(self, handler, path, recursive=True):
        self.handler = handler
        self.scheduled.append((path, recursive))

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        pass

    def is_alive(self):
        return self.started and not self.stopped


@pytest.fixture
def conn():
    """Returns an in-memory SQLite connection with all migrations applied."""
    manager = DBManager(":memory:")
    c = manager.connect()
    try:
        yield c
    finally:
        manager.close()

@pytest.fixture
def db_ops(conn):
    return DBOperations(conn)

@pytest.fixture
def queries(conn):
    return CatalogQueries(conn)

@pytest.fixture
def thumbnails(tmp_path):
    return ThumbnailGenerator(tmp_path / "cache" / "thumbnails")

@pytest.fixture
def worker(db_ops, thumbnails):
    return ExtractionWorker(db_ops, thumbnails)

@pytest.fixture
def photos_dir(tmp_path):
    d = tmp_path / "photos"
    d.mkdir()
    return d

@pytest.fixture
def add_image(db_ops):
    """Inserts a bare record and returns its id."""
    def _add(path, size=100, archive_path=None):
        if archive_path:
            location = ArchiveImage(archive_path, path)
        else:
            location = FilesystemImage(path)
        return db_ops.upsert_image(ImageRecord(location, file_size=size))
    return _add

@pytest.fixture
def make_image():
    """Writes a small real image; PNG text chunks and EXIF are optional."""
    def _make(path: Path, size=(64, 48), color=(200, 30, 30), text=None, exif=None):
        path.parent.mkdir(parents=True, exist_ok=True)
        img = Image.new("RGB", size, color)
        kwargs = {}
        if text:
            info = PngInfo()
            for key, value in text.items():
                info.add_text(key, value)
            kwargs["pnginfo"] = info
        if exif:
            e = Image.Exif()
            for tag, value in exif.items():
                e[tag] = value
            kwargs["exif"] = e.tobytes()
        img.save(path, **kwargs)
        return path
    return _make

@pytest.fixture
def make_zip():
    """Builds a ZIP from {entry_name: bytes-or-None}; None means 'a real PNG'."""
    def _make(path: Path, entries: dict):
        path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(path, "w") as zf:
            for name, data in entries.items():
                if data is None:
                    buf = io.BytesIO()
                    Image.new("RGB", (40, 30), (30, 120, 200)).save(buf, "PNG")
                    data = buf.getvalue()
                zf.writestr(name, data)
        return path
    return _make
