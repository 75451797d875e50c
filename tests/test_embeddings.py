"""Tests for the HSV histogram embedding provider and its quality gate."""

import numpy as np
import cv2

from shelf_search.embeddings import HistogramEmbeddingProvider, HIST_DIM
from shelf_search.models import EMBEDDING_DIM


def _cosine(a, b):
    return float(np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b)))


class TestHistogramEmbedding:
    """Tests for embedding extraction."""

    def test_default_dimension_matches_index(self):
        assert HIST_DIM == EMBEDDING_DIM == 2048

    def test_output_shape(self, red_square_image):
        vector = HistogramEmbeddingProvider().embed(red_square_image)
        assert vector.shape == (HIST_DIM,)

    def test_output_dtype(self, red_square_image):
        vector = HistogramEmbeddingProvider().embed(red_square_image)
        assert vector.dtype == np.float32

    def test_l2_normalized(self, red_square_image):
        vector = HistogramEmbeddingProvider().embed(red_square_image)
        assert abs(np.linalg.norm(vector) - 1.0) < 1e-4

    def test_deterministic(self, textured_image):
        provider = HistogramEmbeddingProvider()
        np.testing.assert_array_equal(provider.embed(textured_image), provider.embed(textured_image))

    def test_different_packs_differ(self, red_square_image, blue_circle_image):
        provider = HistogramEmbeddingProvider()
        similarity = _cosine(provider.embed(red_square_image), provider.embed(blue_circle_image))
        assert similarity < 0.95, "Distinct colors should produce different embeddings"

    def test_rescaled_photo_stays_close(self, red_square_image):
        provider = HistogramEmbeddingProvider()
        smaller = cv2.resize(red_square_image, (150, 150), interpolation=cv2.INTER_AREA)
        similarity = _cosine(provider.embed(red_square_image), provider.embed(smaller))
        assert similarity > 0.98

    def test_no_nan_or_inf(self, noise_image):
        vector = HistogramEmbeddingProvider().embed(noise_image)
        assert not np.any(np.isnan(vector))
        assert not np.any(np.isinf(vector))

    def test_accepts_float_images(self, red_square_image):
        as_float = red_square_image.astype(np.float32) / 255.0
        vector = HistogramEmbeddingProvider().embed(as_float)
        assert vector is not None

    def test_custom_bins(self, green_rectangle_image):
        provider = HistogramEmbeddingProvider(h_bins=8, s_bins=8)
        assert provider.dim == 64
        assert provider.embed(green_rectangle_image).shape == (64,)


class TestQualityGate:
    """Low-quality photos are rejected, not embedded."""

    def test_rejects_tiny_image(self):
        tiny = np.ones((10, 10, 3), dtype=np.uint8) * 128
        provider = HistogramEmbeddingProvider()
        assert provider.embed(tiny) is None
        assert "too small" in provider.rejection_reason(tiny)

    def test_rejects_dark_image(self, textured_image):
        dark = (textured_image // 20).astype(np.uint8)
        provider = HistogramEmbeddingProvider()
        assert provider.embed(dark) is None
        assert "too dark" in provider.rejection_reason(dark)

    def test_rejects_featureless_image(self):
        flat = np.ones((200, 200, 3), dtype=np.uint8) * 128
        provider = HistogramEmbeddingProvider()
        assert provider.embed(flat) is None
        assert "blurry" in provider.rejection_reason(flat)

    def test_accepts_ordinary_photo(self, textured_image):
        assert HistogramEmbeddingProvider().rejection_reason(textured_image) is None
