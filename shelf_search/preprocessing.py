"""
Image preprocessing for embedding and ingestion.

Decodes stored image payloads, normalizes dtype and channel layout, and
measures the quality signals (size, brightness, sharpness) used to
reject photos that would produce untrustworthy embeddings.
"""

import logging
from typing import NamedTuple, Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class ImageQuality(NamedTuple):
    min_side: int
    brightness: float
    sharpness: float


def normalize_image(image_np: np.ndarray) -> np.ndarray:
    """Ensure image is uint8 RGB format."""
    if image_np.dtype != np.uint8:
        if image_np.size and image_np.max() <= 1.0:
            image_np = (image_np * 255).astype(np.uint8)
        else:
            image_np = np.clip(image_np, 0, 255).astype(np.uint8)

    if image_np.ndim == 2:
        image_np = cv2.cvtColor(image_np, cv2.COLOR_GRAY2RGB)
    elif image_np.ndim == 3 and image_np.shape[2] == 4:
        image_np = cv2.cvtColor(image_np, cv2.COLOR_RGBA2RGB)
    return image_np


def decode_image(payload: Optional[bytes]) -> Optional[np.ndarray]:
    """
    Decode an encoded image payload (JPEG, PNG, ...) to RGB uint8.

    Returns:
        The decoded image, or None if the payload is empty or not a
        readable image.
    """
    if not payload:
        return None
    buffer = np.frombuffer(payload, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None:
        logger.debug("Payload is not a decodable image")
        return None
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def encode_image(image_np: np.ndarray, extension: str = ".png") -> bytes:
    """Encode an RGB image as bytes suitable for storage as a payload."""
    image_np = normalize_image(image_np)
    ok, buffer = cv2.imencode(extension, cv2.cvtColor(image_np, cv2.COLOR_RGB2BGR))
    if not ok:
        raise ValueError(f"Could not encode image as {extension}")
    return buffer.tobytes()


def read_image_file(path: str) -> Optional[np.ndarray]:
    """Read an image file from disk as RGB uint8, or None if unreadable."""
    image = cv2.imread(path)
    if image is None:
        return None
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def resize_to_max_side(image_np: np.ndarray, max_side: int = 512) -> np.ndarray:
    """Downscale so the longest side is at most max_side. Never upscales."""
    h, w = image_np.shape[:2]
    scale = max_side / max(h, w)
    if scale >= 1.0:
        return image_np
    return cv2.resize(image_np, (max(1, int(w * scale)), max(1, int(h * scale))),
                      interpolation=cv2.INTER_AREA)


def measure_quality(image_np: np.ndarray) -> ImageQuality:
    """
    Compute the quality signals for a photo.

    Brightness is the mean of the HSV value channel (0-255). Sharpness
    is the variance of the Laplacian of the grayscale image: flat or
    heavily blurred photos score near zero.
    """
    image_np = normalize_image(image_np)
    h, w = image_np.shape[:2]
    hsv = cv2.cvtColor(image_np, cv2.COLOR_RGB2HSV)
    gray = cv2.cvtColor(image_np, cv2.COLOR_RGB2GRAY)
    brightness = float(np.mean(hsv[:, :, 2]))
    sharpness = float(cv2.Laplacian(gray, cv2.CV_64F).var())
    return ImageQuality(min_side=int(min(h, w)), brightness=brightness, sharpness=sharpness)
