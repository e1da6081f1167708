import io
import logging
from datetime import datetime
from typing import Optional, Dict, Any

import exifread
from PIL import Image, UnidentifiedImageError

from .. import config
from ..exceptions import MetadataExtractionError
from ..models import AiMetadata
from .ai_params import parse_candidates

# exifread prefixes every tag with its IFD; these two are dropped so that
# lookups can use plain tag names ('DateTimeOriginal', 'UserComment', ...)
_SHORT_PREFIXES = ('EXIF ', 'Image ')
_XP_TAGS = {'XPComment', 'XPTitle', 'XPKeywords', 'XPAuthor', 'XPSubject'}


class MetadataExtractor:
    """
    Reads embedded tag data from image bytes and derives catalog fields.

    Sources:
      - EXIF: 'exifread' (covers JPEG, TIFF, WebP and PNG eXIf chunks).
      - PNG text chunks and other format info: Pillow.
    """

    def read_tags(self, data: bytes) -> Dict[str, Any]:
        """
        Full tag map for one image. Values are strings except for binary
        payloads (thumbnails, ICC profiles), which are kept as bytes.
        """
        tags: Dict[str, Any] = {}

        try:
            exif = exifread.process_file(io.BytesIO(data), details=False)
        except Exception as e:
            # exifread raises a variety of errors on malformed headers
            logging.debug(f"ExifRead failed: {e}")
            exif = {}

        for name, tag in exif.items():
            short = self._short_name(name)
            tags[short] = self._tag_value(short, tag)

        try:
            with Image.open(io.BytesIO(data)) as img:
                info = dict(img.info)
                # PNG text chunks after IDAT only show up through .text
                info.update(getattr(img, 'text', None) or {})
        except (UnidentifiedImageError, OSError, ValueError) as e:
            if not tags:
                raise MetadataExtractionError(f"Unreadable image data: {e}") from e
            info = {}

        for key, value in info.items():
            if isinstance(value, (bytes, bytearray)):
                tags.setdefault(key, bytes(value))
            elif isinstance(value, str):
                tags.setdefault(key, value.replace('\x00', '').strip())
            else:
                tags.setdefault(key, str(value))

        return tags

    def parse_capture_date(self, tags: Dict[str, Any]) -> Optional[datetime]:
        """First date tag (in config.DATE_TAGS order) that parses."""
        for tag in config.DATE_TAGS:
            value = tags.get(tag)
            if isinstance(value, str):
                dt = self._parse_flexible_date(value)
                if dt:
                    return dt
        return None

    def extract_ai_metadata(self, tags: Dict[str, Any]) -> Optional[AiMetadata]:
        parsed = parse_candidates(tags)
        if not parsed:
            return None
        return AiMetadata.from_parsed(parsed, raw_tags=self.filtered_snapshot(tags))

    def filtered_snapshot(self, tags: Dict[str, Any]) -> Dict[str, str]:
        """Tag map minus binary payloads and oversized strings."""
        snapshot = {}
        for key, value in tags.items():
            lowered = key.lower()
            if any(fragment in lowered for fragment in config.BINARY_TAG_FRAGMENTS):
                continue
            if not isinstance(value, str):
                continue
            if len(value) > config.RAW_TAG_MAX_CHARS:
                continue
            snapshot[key] = value
        return snapshot

    def printable_tags(self, tags: Dict[str, Any]) -> Dict[str, str]:
        """Every tag, with binary values summarised, for on-demand display."""
        return {
            key: (f"<{len(value)} bytes>" if isinstance(value, bytes) else value)
            for key, value in sorted(tags.items())
        }

    # --- Internal Helpers ---

    def _short_name(self, name: str) -> str:
        for prefix in _SHORT_PREFIXES:
            if name.startswith(prefix):
                return name[len(prefix):]
        return name

    def _tag_value(self, name: str, tag: Any) -> Any:
        if isinstance(tag, (bytes, bytearray)):
            # JPEGThumbnail / TIFFThumbnail
            return bytes(tag)

        values = getattr(tag, 'values', None)
        if name in _XP_TAGS and isinstance(values, list):
            try:
                return bytes(values).decode('utf-16-le').rstrip('\x00').strip()
            except (ValueError, TypeError):
                pass
        if name == 'UserComment' and isinstance(values, (list, bytes)):
            try:
                return self._decode_user_comment(bytes(values))
            except (ValueError, TypeError):
                pass
        return str(tag).strip()

    def _decode_user_comment(self, raw: bytes) -> str:
        """UserComment starts with an 8-byte charset header."""
        header, body = raw[:8], raw[8:]
        if header.startswith(b'UNICODE'):
            # Generators disagree on byte order; keep whichever decoding reads as more ASCII
            candidates = [body.decode(enc, errors='replace') for enc in ('utf-16-be', 'utf-16-le')]
            text = max(candidates, key=lambda t: sum(ch.isascii() for ch in t))
            return text.replace('\x00', '').strip()
        if header.startswith(b'ASCII') or header == b'\x00' * 8:
            return body.decode('utf-8', errors='replace').replace('\x00', '').strip()
        return raw.decode('utf-8', errors='replace').replace('\x00', '').strip()

    def _parse_flexible_date(self, dt_str: str) -> Optional[datetime]:
        """
        Handles EXIF ("YYYY:MM:DD HH:MM:SS"), ISO and sub-second variants.
        Returns a naive datetime object.
        """
        if not dt_str:
            return None

        clean = dt_str.replace("UTC", "").replace('\x00', '').strip()
        if not clean:
            return None

        # 1. Try ISO format (e.g. 2020-01-01T12:00:00)
        try:
            return datetime.fromisoformat(clean).replace(tzinfo=None)
        except ValueError:
            pass

        # 2. Try Standard EXIF style "YYYY:MM:DD HH:MM:SS"
        try:
            clean_exif = clean.replace(":", "-", 2)
            # Sub-second precision and zone offsets are dropped
            clean_exif = clean_exif.split(".")[0].split("+")[0]
            return datetime.strptime(clean_exif.strip(), "%Y-%m-%d %H:%M:%S")
        except ValueError:
            pass

        return None
