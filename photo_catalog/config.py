"""
Configuration constants for the photo catalog.
"""
from pathlib import Path

# --- File Type Definitions ---
IMAGE_EXTS = {'.jpg', '.jpeg', '.png', '.webp', '.tiff', '.bmp'}
ARCHIVE_EXTS = {'.zip'}

# Extension to Type Mapping
EXT_TO_TYPE = {}
for ext in IMAGE_EXTS: EXT_TO_TYPE[ext] = 'image'
for ext in ARCHIVE_EXTS: EXT_TO_TYPE[ext] = 'archive'

# Composite key for images stored inside archives: "<zip path>::<entry name>"
ARCHIVE_SEPARATOR = "::"

# Entries inside archives that are never images, whatever their extension
ARCHIVE_JUNK_PREFIXES = ('__MACOSX/',)

# --- Storage Locations ---
DEFAULT_DATA_DIR = Path.home() / ".photo_catalog"
DB_FILENAME = "photo-catalog.db"
THUMBNAIL_DIRNAME = "thumbnails"
LOG_FILENAME = "catalog.log"

# --- Metadata Parsing ---
# Tried in order; the first one that parses as a date wins.
DATE_TAGS = [
    'DateTimeOriginal',
    'CreateDate',
    'ModifyDate',
    'DateTime',
    'DateTimeDigitized',
]

# Free-text fields that may carry AI generation parameters, highest priority first.
AI_TEXT_FIELDS = [
    'parameters',
    'UserComment',
    'ImageDescription',
    'Software',
    'Artist',
    'Copyright',
    'XPComment',
    'Comment',
    'Description',
    'Dream',
]

# Stored tag snapshots drop any string longer than this
RAW_TAG_MAX_CHARS = 10 * 1024
# Tag names matching these fragments hold binary payloads
BINARY_TAG_FRAGMENTS = ('thumbnail', 'icc', 'makernote')

# --- Thumbnails ---
THUMBNAIL_SIZE = (300, 300)
THUMBNAIL_QUALITY = 80
THUMBNAIL_FORMAT = "WEBP"
THUMBNAIL_EXT = ".webp"

# --- Queries ---
DEFAULT_PAGE_LIMIT = 200
SEARCH_LIMIT = 500
# SQLite treats a negative LIMIT as "no limit"
NO_LIMIT = -1

# Public sort key -> SQL expression. Nothing outside this map reaches ORDER BY.
SORT_COLUMNS = {
    'filename': 'i.filename',
    'date_taken': 'i.date_taken',
    'date_added': 'i.date_added',
    'file_size': 'i.file_size',
    'rating': 'u.rating',
}
SORT_ORDERS = {'ASC', 'DESC'}
DEFAULT_SORT_BY = 'date_taken'
DEFAULT_SORT_ORDER = 'DESC'

# --- Scanning ---
# Yield to the event loop every N records during bulk ingestion
INGEST_YIELD_EVERY = 100
