import logging
from pathlib import Path
from typing import Tuple

from PIL import Image, ImageOps

from .. import config
from ..exceptions import ThumbnailError


class ThumbnailGenerator:
    """
    Square, center-cropped WebP thumbnails, one file per image id.
    The directory is a cache: deleting it only costs regeneration time.
    """
    def __init__(self,
                 thumb_dir: Path,
                 size: Tuple[int, int] = config.THUMBNAIL_SIZE,
                 quality: int = config.THUMBNAIL_QUALITY):
        self.thumb_dir = thumb_dir
        self.size = size
        self.quality = quality

    def path_for(self, image_id: int) -> Path:
        return self.thumb_dir / f"thumb_{image_id}{config.THUMBNAIL_EXT}"

    def generate(self, image_id: int, img: Image.Image) -> Path:
        """Writes the thumbnail unless one already exists for this id."""
        target = self.path_for(image_id)
        if target.exists():
            return target

        try:
            self.thumb_dir.mkdir(parents=True, exist_ok=True)
            img = ImageOps.exif_transpose(img)
            if img.mode not in ('RGB', 'RGBA'):
                img = img.convert('RGBA' if 'A' in img.getbands() else 'RGB')
            thumb = ImageOps.fit(img, self.size, method=Image.Resampling.LANCZOS, centering=(0.5, 0.5))
            thumb.save(target, config.THUMBNAIL_FORMAT, quality=self.quality)
        except (OSError, ValueError) as e:
            raise ThumbnailError(f"Thumbnail for image {image_id} failed: {e}") from e

        return target

    def purge(self) -> int:
        """Deletes every cached thumbnail. Returns the number removed."""
        if not self.thumb_dir.exists():
            return 0
        removed = 0
        for thumb in self.thumb_dir.glob(f"thumb_*{config.THUMBNAIL_EXT}"):
            try:
                thumb.unlink()
                removed += 1
            except OSError as e:
                logging.warning(f"Could not delete thumbnail {thumb}: {e}")
        logging.info(f"Purged {removed} thumbnails.")
        return removed
