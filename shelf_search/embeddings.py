"""
Embedding providers: map a photo to a fixed-length vector, or reject it.

The production embedding model is an external collaborator; anything
implementing EmbeddingProvider can be plugged into the maintainer and
the query path. A rejection (None) means the photo is too poor to embed
and is treated upstream exactly like "no match".

HistogramEmbeddingProvider is the reference implementation: an
L2-normalized Hue x Saturation histogram with CLAHE-equalized Value,
sized so that H_BINS * S_BINS equals the index dimension (32 x 64 = 2048
by default). It is deterministic, which keeps the index reproducible.
"""

import os
import logging
from abc import ABC, abstractmethod
from typing import Optional

import cv2
import numpy as np

from .models import EMBEDDING_DIM
from .preprocessing import normalize_image, resize_to_max_side, measure_quality

logger = logging.getLogger(__name__)

# Histogram bin counts. Their product is the embedding dimension.
H_BINS = int(os.environ.get("HSV_H_BINS", "32"))
S_BINS = int(os.environ.get("HSV_S_BINS", "64"))
HIST_DIM = H_BINS * S_BINS

# Quality gate. Photos failing any of these are rejected, not embedded.
MIN_IMAGE_SIDE = int(os.environ.get("MIN_IMAGE_SIDE", "32"))
MIN_BRIGHTNESS = float(os.environ.get("MIN_BRIGHTNESS", "20.0"))
MIN_SHARPNESS = float(os.environ.get("MIN_SHARPNESS", "10.0"))


class EmbeddingProvider(ABC):
    """Contract for anything that turns a photo into an embedding."""

    dim: int

    @abstractmethod
    def embed(self, image: np.ndarray) -> Optional[np.ndarray]:
        """Return a float32 vector of length dim, or None to reject the photo."""

    @staticmethod
    def _normalize(vector: np.ndarray) -> np.ndarray:
        """Normalize to unit length so inner product equals cosine similarity."""
        norm = np.linalg.norm(vector)
        if norm == 0:
            return vector.astype(np.float32)
        return (vector / norm).astype(np.float32)


class HistogramEmbeddingProvider(EmbeddingProvider):
    """Deterministic color-distribution embedding with a quality gate."""

    def __init__(self,
                 h_bins: int = H_BINS,
                 s_bins: int = S_BINS,
                 min_side: int = MIN_IMAGE_SIDE,
                 min_brightness: float = MIN_BRIGHTNESS,
                 min_sharpness: float = MIN_SHARPNESS):
        self.h_bins = h_bins
        self.s_bins = s_bins
        self.dim = h_bins * s_bins
        self.min_side = min_side
        self.min_brightness = min_brightness
        self.min_sharpness = min_sharpness
        if self.dim != EMBEDDING_DIM:
            logger.warning(
                f"Histogram embedding has {self.dim} dimensions but the "
                f"configured index dimension is {EMBEDDING_DIM}"
            )

    def rejection_reason(self, image_np: np.ndarray) -> Optional[str]:
        """Return why a photo would be rejected, or None if it is usable."""
        quality = measure_quality(image_np)
        if quality.min_side < self.min_side:
            return f"too small ({quality.min_side}px < {self.min_side}px)"
        if quality.brightness < self.min_brightness:
            return f"too dark (brightness {quality.brightness:.1f} < {self.min_brightness})"
        if quality.sharpness < self.min_sharpness:
            return f"too blurry or featureless (sharpness {quality.sharpness:.1f} < {self.min_sharpness})"
        return None

    def embed(self, image: np.ndarray) -> Optional[np.ndarray]:
        """
        Embed a photo as an L2-normalized H x S histogram.

        Process:
            1. Normalize dtype/channels and downscale to 512px max side
            2. Reject small, dark, or featureless photos
            3. Convert to HSV and apply CLAHE to the V channel
            4. Compute the H x S histogram and L2-normalize it

        Args:
            image: RGB image (uint8, or float in [0, 1]).

        Returns:
            Float32 vector with h_bins * s_bins components, or None if
            the photo was rejected or could not be processed.
        """
        try:
            image_np = normalize_image(image)
            reason = self.rejection_reason(image_np)
            if reason is not None:
                logger.info(f"Rejected photo for embedding: {reason}")
                return None

            image_np = resize_to_max_side(image_np)
            hsv = cv2.cvtColor(image_np, cv2.COLOR_RGB2HSV)

            # CLAHE equalization on V channel for lighting normalization
            h_ch, s_ch, v_ch = cv2.split(hsv)
            clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
            hsv = cv2.merge((h_ch, s_ch, clahe.apply(v_ch)))

            # Hue (0-180) x Saturation (0-256)
            hist = cv2.calcHist([hsv], [0, 1], None,
                                [self.h_bins, self.s_bins], [0, 180, 0, 256])
            return self._normalize(hist.flatten())

        except cv2.error as e:
            logger.error(f"Histogram embedding failed: {e}")
            return None
