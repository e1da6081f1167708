import os
import logging
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from .. import config
from ..exceptions import ArchiveError
from ..models import ImageRecord, FilesystemImage, ArchiveImage, ImageLocation
from .archive import ArchiveReader


def classify(path: Path) -> Optional[str]:
    """'image', 'archive' or None for anything the catalog ignores."""
    if path.name.startswith("."):
        return None
    return config.EXT_TO_TYPE.get(path.suffix.lower())


def birth_time(path: Path) -> datetime:
    """Creation time where the platform records it, modification time otherwise."""
    st = path.stat()
    ts = getattr(st, 'st_birthtime', None) or st.st_mtime
    return datetime.fromtimestamp(ts)


class DiskScanner:
    def __init__(self, archive_reader: Optional[ArchiveReader] = None):
        self.archives = archive_reader or ArchiveReader()

    def scan(self, root: Path, recursive: bool = True) -> List[ImageRecord]:
        """
        Bare records for every image under root, including entries of any
        ZIP archives found along the way. Unreadable files are logged and skipped.
        """
        records = []
        for path in self.iter_candidates(root, recursive):
            records.extend(self.records_for(path))
        return records

    def records_for(self, path: Path) -> List[ImageRecord]:
        """Records for a single discovered file (one image, or every image in a ZIP)."""
        kind = classify(path)
        try:
            if kind == 'image':
                return [ImageRecord(FilesystemImage(str(path)), file_size=path.stat().st_size)]
            if kind == 'archive':
                return self.archive_records(path)
        except (OSError, ArchiveError) as e:
            logging.error(f"Failed to scan {path}: {e}")
        return []

    def archive_records(self, zip_path: Path) -> List[ImageRecord]:
        return [
            ImageRecord(ArchiveImage(str(zip_path), info.filename), file_size=info.file_size)
            for info in self.archives.list_image_entries(zip_path)
        ]

    def read_bytes(self, location: ImageLocation) -> bytes:
        if isinstance(location, ArchiveImage):
            return self.archives.read_entry(location.archive_path, location.entry_name)
        return Path(location.path).read_bytes()

    def source_birth_time(self, location: ImageLocation) -> datetime:
        """Fallback capture date: the file's own, or its archive's for ZIP entries."""
        if isinstance(location, ArchiveImage):
            return birth_time(Path(location.archive_path))
        return birth_time(Path(location.path))

    def iter_candidates(self, root: Path, recursive: bool = True) -> Iterator[Path]:
        for path in self._iter_files(root, recursive):
            if classify(path):
                yield path

    def _iter_files(self, root: Path, recursive: bool = True) -> Iterator[Path]:
        """Depth-first walker using os.scandir for speed. Hidden entries are skipped."""
        stack = [root]
        while stack:
            current = stack.pop()

            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except (OSError, PermissionError):
                logging.warning(f"Permission denied: {current}")
                continue

            # Sort for stable traversal order
            entries.sort(key=lambda e: e.name.lower())

            dirs = []
            files = []
            for e in entries:
                if e.name.startswith("."):
                    continue
                if e.is_dir(follow_symlinks=False):
                    dirs.append(Path(e.path))
                elif e.is_file(follow_symlinks=False):
                    files.append(Path(e.path))

            if recursive:
                # Push dirs to stack (reversed so we process A before Z)
                for d in reversed(dirs):
                    stack.append(d)

            for f in files:
                yield f
