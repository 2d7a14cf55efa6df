import logging
import threading
from io import BytesIO
from pathlib import Path
from typing import Tuple

import rawpy
from PIL import Image, ImageOps

from pbt.domain.protocols import ImageSource

logger = logging.getLogger(__name__)


class CodecError(Exception):
    pass


class PillowCodec:
    """Resize and RAW preview extraction backed by Pillow and rawpy."""

    def __init__(self):
        # LibRaw is not safe to drive from several threads at once
        self._raw_lock = threading.Lock()

    def _open(self, source: ImageSource) -> Image.Image:
        if isinstance(source, (bytes, bytearray)):
            return Image.open(BytesIO(source))
        return Image.open(Path(source))

    def _to_rgb(self, img: Image.Image) -> Image.Image:
        # Composite alpha onto white background if present
        if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
            alpha = img.convert("RGBA")
            bg = Image.new("RGBA", alpha.size, (255, 255, 255, 255))
            return Image.alpha_composite(bg, alpha).convert("RGB")
        return img.convert("RGB")

    def resize(self, source: ImageSource, max_dim: int, quality: int) -> bytes:
        """Fit inside max_dim x max_dim without enlarging, encode as JPEG."""
        try:
            with self._open(source) as img:
                img = ImageOps.exif_transpose(img)
                img = self._to_rgb(img)
                img.thumbnail((max_dim, max_dim), Image.Resampling.LANCZOS)
                buf = BytesIO()
                img.save(buf, format="JPEG", quality=quality)
        except (OSError, ValueError) as exc:
            raise CodecError(f"Unable to resize image: {exc}") from exc
        return buf.getvalue()

    def dimensions(self, source: ImageSource) -> Tuple[int, int]:
        try:
            with self._open(source) as img:
                return img.size
        except (OSError, ValueError) as exc:
            raise CodecError(f"Unable to read image dimensions: {exc}") from exc

    def extract_embedded_preview(self, raw_path: Path) -> bytes:
        """Return the camera's embedded JPEG, falling back to a full demosaic."""
        with self._raw_lock:
            try:
                with rawpy.imread(str(raw_path)) as raw:
                    try:
                        thumb = raw.extract_thumb()
                    except (rawpy.LibRawNoThumbnailError, rawpy.LibRawUnsupportedThumbnailError):
                        thumb = None

                    if thumb is not None and thumb.format == rawpy.ThumbFormat.JPEG:
                        return bytes(thumb.data)

                    logger.info(f"RAW_PREVIEW: no embedded JPEG in {raw_path.name}, demosaicing")
                    if thumb is not None and thumb.format == rawpy.ThumbFormat.BITMAP:
                        img = Image.fromarray(thumb.data)
                    else:
                        img = Image.fromarray(raw.postprocess())
            except rawpy.LibRawError as exc:
                raise CodecError(f"Unable to process RAW file: {exc}") from exc

        buf = BytesIO()
        img.save(buf, format="JPEG", quality=95)
        return buf.getvalue()
