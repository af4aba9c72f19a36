# portraitbook/pdfio.py
"""PDF <-> page image conversion and data-URL helpers."""
import base64
import binascii
import logging
import re
from io import BytesIO
from typing import Dict, Iterable, List, Tuple

from pdf2image import convert_from_bytes
from PIL import Image

from portraitbook.errors import ValidationError

logger = logging.getLogger(__name__)

_DATA_URL = re.compile(r"^data:([^;,]+)?(;base64)?,(.*)$", re.IGNORECASE | re.DOTALL)
_WHITESPACE = re.compile(r"\s+")

# pdf.js-style scale 2 on a 72 dpi page
RASTER_DPI = 144


def is_data_url(value: str) -> bool:
    return value.startswith("data:")


def decode_data_url(value: str) -> Tuple[str, bytes]:
    """(mime, bytes) from a data URL; a bare base64 string is read as PNG."""
    m = _DATA_URL.match(value)
    mime, payload = ("image/png", value) if m is None else ((m.group(1) or "image/png").lower(), m.group(3))
    payload = _WHITESPACE.sub("", payload)
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Image is not valid base64 data") from e
    if not data:
        raise ValidationError("Image data is empty")
    return mime, data


def encode_data_url(data: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('utf-8')}"


def image_to_png(img: Image.Image) -> bytes:
    buf = BytesIO()
    img.save(buf, "PNG")
    return buf.getvalue()


def rasterize_pdf(pdf_bytes: bytes, pages: Iterable[int], dpi: int = RASTER_DPI) -> Dict[int, bytes]:
    """PNG bytes for each requested 1-based page number that exists in the document."""
    wanted = sorted(set(pages))
    if not wanted:
        return {}
    images = convert_from_bytes(pdf_bytes, dpi=dpi, first_page=wanted[0], last_page=wanted[-1])
    rendered: Dict[int, bytes] = {}
    for offset, img in enumerate(images):
        page_number = wanted[0] + offset
        if page_number in wanted:
            rendered[page_number] = image_to_png(img)
    logger.info("Rasterized %d of %d requested pages", len(rendered), len(wanted))
    return rendered


def assemble_pdf(pages: List[bytes], resolution: float = 72.0) -> bytes:
    """One PDF page per image, page size taken from the image."""
    images = []
    for data in pages:
        img = Image.open(BytesIO(data))
        if img.mode in ("RGBA", "LA") or (img.mode == "P"):
            img = img.convert("RGB")
        images.append(img)
    if not images:
        raise ValidationError("No images to assemble")
    buf = BytesIO()
    first, rest = images[0], images[1:]
    first.save(buf, "PDF", resolution=resolution, save_all=True, append_images=rest)
    return buf.getvalue()
