from __future__ import annotations

from io import BytesIO

from pdf2image import convert_from_bytes
from PIL import Image, ImageDraw
from pypdf import PdfReader

from docpages.conversion.models import EncodingSettings
from docpages.errors import ConversionError


def count_pages(source: bytes) -> int:
    reader = PdfReader(BytesIO(source))
    return len(reader.pages)


def rasterize_page(source: bytes, page_number_1based: int, dpi: int) -> Image.Image:
    """
    Render exactly ONE PDF page (1-based index) to an image via poppler.
    """
    images = convert_from_bytes(
        source,
        dpi=dpi,
        first_page=page_number_1based,
        last_page=page_number_1based,
        fmt="png",
    )

    if not images:
        raise ConversionError(f"Renderer produced no image for page {page_number_1based}")

    return images[0]


def encode_jpeg(img: Image.Image, encoding: EncodingSettings) -> bytes:
    """
    Downscale into the bounding box (never enlarge) and compress.
    """
    img = img.convert("RGB")
    img.thumbnail((encoding.max_width, encoding.max_height))

    buf = BytesIO()
    img.save(
        buf,
        format="JPEG",
        quality=encoding.quality,
        optimize=True,
        progressive=encoding.progressive,
    )
    return buf.getvalue()


def placeholder_image(page_number: int, encoding: EncodingSettings) -> Image.Image:
    img = Image.new("RGB", (encoding.max_width // 2, encoding.max_height // 2), "white")
    draw = ImageDraw.Draw(img)
    draw.rectangle([8, 8, img.width - 8, img.height - 8], outline=(180, 180, 180), width=4)
    draw.text((40, img.height // 2 - 20), f"Page {page_number} is temporarily unavailable.", fill=(60, 60, 60))
    draw.text((40, img.height // 2 + 10), "Retry to load it again.", fill=(60, 60, 60))
    return img
