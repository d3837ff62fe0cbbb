"""Conversion of uploads Pillow cannot read natively (HEIC/HEIF) into JPEG."""
import io
import logging
from pathlib import Path
from typing import Optional

from PIL import Image

try:
    from pillow_heif import read_heif
    HEIF_SUPPORT = True
except ModuleNotFoundError:  # pragma: no cover - import guard
    read_heif = None  # type: ignore
    HEIF_SUPPORT = False


HEIC_MIME_TYPES = ("image/heic", "image/heif", "image/heic-sequence", "image/heif-sequence")
HEIC_SUFFIXES = (".heic", ".heif")
# ISO-BMFF major brands used by HEIC/HEIF files.
HEIC_BRANDS = (b"heic", b"heix", b"hevc", b"hevx", b"heim", b"heis", b"hevm", b"hevs", b"mif1", b"msf1")


def is_heic(file_bytes: bytes, mime_type: Optional[str] = None, filename: Optional[str] = None) -> bool:
    if (mime_type or "").lower() in HEIC_MIME_TYPES:
        return True
    if filename and Path(filename).suffix.lower() in HEIC_SUFFIXES:
        return True
    return len(file_bytes) >= 12 and file_bytes[4:8] == b"ftyp" and file_bytes[8:12] in HEIC_BRANDS


def _decodes_natively(file_bytes: bytes) -> bool:
    try:
        with Image.open(io.BytesIO(file_bytes)) as image:
            image.load()
        return True
    except Exception:
        return False


def convert_heic_to_jpeg(file_bytes: bytes) -> bytes:
    if not HEIF_SUPPORT or read_heif is None:
        raise RuntimeError("HEIC conversion is unavailable: install pillow-heif.")
    heif_file = read_heif(file_bytes)
    image = Image.frombytes(
        heif_file.mode, heif_file.size, heif_file.data, "raw", heif_file.mode, heif_file.stride
    )
    if image.mode != "RGB":
        image = image.convert("RGB")
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=95)
    return buffer.getvalue()


def normalize_image_bytes(
    file_bytes: bytes,
    mime_type: Optional[str] = None,
    filename: Optional[str] = None,
) -> bytes:
    """
    Return bytes the QR locator can open.

    Non-HEIC input and HEIC that Pillow already decodes are returned as is.
    Otherwise the image is converted to JPEG; when the conversion fails the
    original bytes are passed through so the decode attempt still happens.
    """
    if not is_heic(file_bytes, mime_type, filename):
        return file_bytes
    if _decodes_natively(file_bytes):
        logging.debug("HEIC image decoded natively, no conversion needed")
        return file_bytes
    try:
        converted = convert_heic_to_jpeg(file_bytes)
        logging.info(f"Converted HEIC upload to JPEG: {len(file_bytes)} -> {len(converted)} bytes")
        return converted
    except Exception as exc:
        logging.warning(f"HEIC conversion failed, decoding original bytes: {exc}")
        return file_bytes
