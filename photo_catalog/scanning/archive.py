import zipfile
import logging
from pathlib import Path, PurePosixPath
from typing import List, Union

from .. import config
from ..exceptions import ArchiveError


class ArchiveReader:
    """
    Lists and extracts image entries from ZIP containers.
    Archives are treated as static: nothing here watches them for changes.
    """

    def is_image_entry(self, info: zipfile.ZipInfo) -> bool:
        if info.is_dir():
            return False
        name = info.filename
        if name.startswith(config.ARCHIVE_JUNK_PREFIXES):
            return False
        entry = PurePosixPath(name)
        if entry.name.startswith("._"):
            return False
        return entry.suffix.lower() in config.IMAGE_EXTS

    def list_image_entries(self, zip_path: Union[Path, str]) -> List[zipfile.ZipInfo]:
        try:
            with zipfile.ZipFile(zip_path) as zf:
                entries = [info for info in zf.infolist() if self.is_image_entry(info)]
        except (zipfile.BadZipFile, OSError) as e:
            raise ArchiveError(f"Cannot read archive {zip_path}: {e}") from e

        logging.debug(f"{zip_path}: {len(entries)} image entries")
        return entries

    def read_entry(self, zip_path: Union[Path, str], entry_name: str) -> bytes:
        """Materialises one entry in memory."""
        try:
            with zipfile.ZipFile(zip_path) as zf:
                return zf.read(entry_name)
        except KeyError as e:
            raise ArchiveError(f"{entry_name} not found in {zip_path}") from e
        except (zipfile.BadZipFile, OSError, RuntimeError) as e:
            # RuntimeError: encrypted entry without a password
            raise ArchiveError(f"Cannot extract {entry_name} from {zip_path}: {e}") from e
