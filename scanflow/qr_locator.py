"""
Multi-pass QR code extraction from receipt photos.

Every rotation (0°, 90°, 180°, 270° clockwise) is tried with up to five
enhancement passes and the first successful detection wins:

1. raw rotated bitmap
2. contrast x2 + grayscale (faded print)
3. contrast x3, brightness x1.3 + grayscale (very faded print)
4. adaptive local-mean binarization (uneven light, creases, shadows)
5. simulated sharpen followed by the same binarization (blurry/damaged codes)

The order is fixed. The upright image gets the three cheap passes first,
then each other rotation gets all five, and the two binarization passes on
the upright image run last: at most 20 detector calls before giving up.
"""
import asyncio
import io
import logging
import math
from typing import Awaitable, Callable, Iterator, Optional, Tuple

import cv2
import numpy as np
from PIL import Image, ImageEnhance, ImageOps

from scanflow.errors import QrDecodeError, ScanErrorCode
from scanflow.image_normalizer import normalize_image_bytes

try:
    from pyzbar.pyzbar import ZBarSymbol, decode as pyzbar_decode
    QR_READER_AVAILABLE = True
except (ModuleNotFoundError, ImportError, OSError):  # pragma: no cover - import guard
    # ImportError/OSError when the zbar shared library is not installed
    ZBarSymbol = None  # type: ignore
    pyzbar_decode = None  # type: ignore
    QR_READER_AVAILABLE = False
    logging.warning("pyzbar unavailable (install zbar), using OpenCV QRCodeDetector")


BINARIZATION_BIAS = 10
MIN_BLOCK_SIZE = 15

Detector = Callable[[Image.Image], Awaitable[Optional[str]]]


def binarization_block_size(width: int, height: int) -> int:
    """Neighbourhood size for adaptive thresholding, always odd."""
    size = max(MIN_BLOCK_SIZE, int(math.floor(min(width, height) / 40 + 0.5)))
    if size % 2 == 0:
        size += 1
    return size


def adaptive_binarize(gray: np.ndarray, bias: int = BINARIZATION_BIAS) -> np.ndarray:
    """
    Wellner-style thresholding on a summed-area table.

    A pixel becomes black (0) when its luminance is below the mean of its
    block-sized neighbourhood minus ``bias``, white (255) otherwise. The
    neighbourhood is clipped at the image borders.
    """
    gray = np.ascontiguousarray(gray, dtype=np.uint8)
    height, width = gray.shape[:2]
    half = binarization_block_size(width, height) // 2
    integral = cv2.integral(gray, sdepth=cv2.CV_64F)

    xs = np.arange(width)
    ys = np.arange(height)
    x0 = np.clip(xs - half, 0, width - 1)
    x1 = np.clip(xs + half, 0, width - 1) + 1
    y0 = np.clip(ys - half, 0, height - 1)
    y1 = np.clip(ys + half, 0, height - 1) + 1

    sums = (
        integral[np.ix_(y1, x1)]
        - integral[np.ix_(y0, x1)]
        - integral[np.ix_(y1, x0)]
        + integral[np.ix_(y0, x0)]
    )
    means = sums / np.outer(y1 - y0, x1 - x0)
    return np.where(gray < means - bias, 0, 255).astype(np.uint8)


def _raw(image: Image.Image) -> Image.Image:
    return image


def _contrast_grayscale(image: Image.Image) -> Image.Image:
    return ImageOps.grayscale(ImageEnhance.Contrast(image).enhance(2.0))


def _strong_contrast_grayscale(image: Image.Image) -> Image.Image:
    enhanced = ImageEnhance.Contrast(image).enhance(3.0)
    enhanced = ImageEnhance.Brightness(enhanced).enhance(1.3)
    return ImageOps.grayscale(enhanced)


def _binarized(image: Image.Image) -> Image.Image:
    gray = np.array(ImageOps.grayscale(image))
    return Image.fromarray(adaptive_binarize(gray))


def _sharpened_binarized(image: Image.Image) -> Image.Image:
    sharpened = image
    for _ in range(2):
        sharpened = ImageEnhance.Contrast(sharpened).enhance(1.5)
        sharpened = ImageEnhance.Brightness(sharpened).enhance(1.1)
    return _binarized(sharpened)


DECODE_PASSES: Tuple[Tuple[str, Callable[[Image.Image], Image.Image]], ...] = (
    ("raw", _raw),
    ("contrast", _contrast_grayscale),
    ("strong_contrast", _strong_contrast_grayscale),
    ("binarized", _binarized),
    ("sharpened_binarized", _sharpened_binarized),
)


UPRIGHT_CHEAP_PASSES = 3

# (rotation, passes) stages; every rotation/pass pair appears exactly once.
DECODE_ORDER: Tuple[Tuple[int, Tuple[Tuple[str, Callable[[Image.Image], Image.Image]], ...]], ...] = (
    (0, DECODE_PASSES[:UPRIGHT_CHEAP_PASSES]),
    (90, DECODE_PASSES),
    (180, DECODE_PASSES),
    (270, DECODE_PASSES),
    (0, DECODE_PASSES[UPRIGHT_CHEAP_PASSES:]),
)


def rotate_clockwise(image: Image.Image, degrees: int) -> Image.Image:
    if degrees % 360 == 0:
        return image
    return image.rotate(-degrees, expand=True)


def iter_decode_candidates(source: Image.Image) -> Iterator[Tuple[int, str, Image.Image]]:
    """
    Yield ``(rotation, pass_name, image)`` in detection order.

    Images are built lazily and closed once the consumer moves on, so a pass
    that succeeds never pays for the ones after it.
    """
    for rotation, passes in DECODE_ORDER:
        rotated = rotate_clockwise(source, rotation)
        try:
            for pass_name, enhance in passes:
                candidate = enhance(rotated)
                try:
                    yield rotation, pass_name, candidate
                finally:
                    if candidate is not rotated:
                        candidate.close()
        finally:
            if rotated is not source:
                rotated.close()


def open_bitmap(image_bytes: bytes) -> Image.Image:
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            image.load()
            return image.convert("RGB")
    except Exception as exc:
        raise QrDecodeError(
            ScanErrorCode.INVALID_IMAGE, f"Image could not be decoded: {exc}"
        ) from exc


def _decode_payload(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def _detect_sync(image: Image.Image) -> Optional[str]:
    if QR_READER_AVAILABLE and pyzbar_decode is not None:
        for code in pyzbar_decode(image, symbols=[ZBarSymbol.QRCODE]):
            text = _decode_payload(code.data).strip()
            if text:
                return text
        return None
    gray = np.array(ImageOps.grayscale(image))
    data, _points, _straight = cv2.QRCodeDetector().detectAndDecode(gray)
    if not data:
        return None
    return data.strip() or None


async def detect_qr_code(image: Image.Image) -> Optional[str]:
    """Default detector: pyzbar (QR symbols only) in a worker thread."""
    return await asyncio.to_thread(_detect_sync, image)


class QrLocator:
    """Runs the rotation/enhancement search over one image."""

    def __init__(self, detector: Optional[Detector] = None) -> None:
        self.detector: Detector = detector or detect_qr_code

    async def decode(self, image_bytes: bytes) -> str:
        source = await asyncio.to_thread(open_bitmap, image_bytes)
        attempts = 0
        try:
            candidates = iter_decode_candidates(source)
            try:
                for rotation, pass_name, candidate in candidates:
                    attempts += 1
                    try:
                        text = await self.detector(candidate)
                    except Exception as exc:
                        logging.debug(f"Detector failed on pass {pass_name} at {rotation}°: {exc}")
                        continue
                    if text:
                        logging.info(
                            f"✅ QR code found (pass {pass_name}, rotation {rotation}°, attempt {attempts}): {text[:100]}"
                        )
                        return text
            finally:
                candidates.close()
        finally:
            source.close()
        logging.info(f"No QR code found after {attempts} detection attempts")
        raise QrDecodeError(ScanErrorCode.NO_QR_FOUND, "No QR code found in the image.")


async def decode_qr_image(
    file_bytes: bytes,
    mime_type: Optional[str] = None,
    filename: Optional[str] = None,
    locator: Optional[QrLocator] = None,
) -> str:
    """Gallery path: normalize unusual formats, then run the locator."""
    normalized = await asyncio.to_thread(normalize_image_bytes, file_bytes, mime_type, filename)
    return await (locator or QrLocator()).decode(normalized)
