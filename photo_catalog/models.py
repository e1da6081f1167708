from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from pathlib import Path
from typing import Optional, Union, List, Dict, Any

from . import config


@dataclass(frozen=True)
class FilesystemImage:
    """An image that lives directly on disk."""
    path: str

    def to_key(self) -> str:
        return self.path

    @property
    def filename(self) -> str:
        return Path(self.path).name


@dataclass(frozen=True)
class ArchiveImage:
    """An image stored as an entry inside a ZIP container."""
    archive_path: str
    entry_name: str

    def to_key(self) -> str:
        return f"{self.archive_path}{config.ARCHIVE_SEPARATOR}{self.entry_name}"

    @property
    def filename(self) -> str:
        return self.entry_name.rsplit('/', 1)[-1]


ImageLocation = Union[FilesystemImage, ArchiveImage]


def parse_location(path_key: str) -> ImageLocation:
    """
    Turns a stored path key back into a location.
    Splits on the first separator only; entry names may contain '::'.
    """
    archive_path, sep, entry_name = path_key.partition(config.ARCHIVE_SEPARATOR)
    if sep and entry_name:
        return ArchiveImage(archive_path, entry_name)
    return FilesystemImage(path_key)


@dataclass
class ImageRecord:
    """
    A bare catalog entry, as produced by discovery.
    Enrichment fields stay None until the extraction worker fills them in.
    """
    location: ImageLocation
    file_size: Optional[int] = None
    captured_at: Optional[datetime] = None
    width: Optional[int] = None
    height: Optional[int] = None
    thumbnail_path: Optional[str] = None
    content_hash: Optional[str] = None
    id: Optional[int] = None

    @property
    def path(self) -> str:
        return self.location.to_key()

    @property
    def filename(self) -> str:
        return self.location.filename

    @property
    def is_archive(self) -> bool:
        return isinstance(self.location, ArchiveImage)

    @property
    def archive_path(self) -> Optional[str]:
        if isinstance(self.location, ArchiveImage):
            return self.location.archive_path
        return None


@dataclass
class AiMetadata:
    prompt: Optional[str] = None
    negative_prompt: Optional[str] = None
    model: Optional[str] = None
    sampler: Optional[str] = None
    scheduler: Optional[str] = None
    steps: Optional[int] = None
    cfg_scale: Optional[float] = None
    seed: Optional[int] = None
    size: Optional[str] = None
    raw_tags: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_parsed(cls, parsed: Dict[str, Any], raw_tags: Optional[Dict[str, Any]] = None) -> "AiMetadata":
        known = {k: v for k, v in parsed.items() if k in cls.__dataclass_fields__ and k != 'raw_tags'}
        return cls(**known, raw_tags=raw_tags or {})


@dataclass
class WatchedRoot:
    path: str
    recursive: bool = True
    is_active: bool = True
    date_added: Optional[str] = None

    @property
    def display_name(self) -> str:
        return Path(self.path).name or self.path

    @property
    def is_archive(self) -> bool:
        return Path(self.path).suffix.lower() in config.ARCHIVE_EXTS


DateBound = Union[date, datetime, str, None]


@dataclass
class FilterOptions:
    """
    Predicates shared by listing and search. All set predicates are ANDed;
    `folders` is an OR across its entries.
    """
    favorites_only: bool = False
    nsfw_only: bool = False
    exclude_nsfw: bool = False
    folders: List[str] = field(default_factory=list)
    start_date: DateBound = None
    end_date: DateBound = None
    sort_by: str = config.DEFAULT_SORT_BY
    sort_order: str = config.DEFAULT_SORT_ORDER
    limit: int = config.DEFAULT_PAGE_LIMIT
    offset: int = 0


@dataclass
class FolderNode:
    path: str
    name: str
    direct_count: int = 0
    count: int = 0
    expanded: bool = False
    is_archive: bool = False
    children: List["FolderNode"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ScanStats:
    """Timing of initial root scans, kept for observability."""
    scans: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    scan_count: int = 0
    total_duration: float = 0.0

    @property
    def average_duration(self) -> float:
        return self.total_duration / self.scan_count if self.scan_count else 0.0

    def record(self, root: str, started: datetime, finished: datetime, files_found: int):
        duration = (finished - started).total_seconds()
        self.scans[root] = {
            'started': started.isoformat(),
            'finished': finished.isoformat(),
            'duration_sec': duration,
            'files_found': files_found,
        }
        self.scan_count += 1
        self.total_duration += duration


@dataclass
class OperationResult:
    success: bool
    message: str
    count: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
