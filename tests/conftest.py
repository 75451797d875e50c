"""Shared test fixtures for shelf search tests."""

import threading

import numpy as np
import cv2
import pytest

from shelf_search.catalog_store import CatalogStore
from shelf_search.embeddings import EmbeddingProvider
from shelf_search.models import CatalogItem
from shelf_search.preprocessing import encode_image
from shelf_search.vector_index import VectorIndex

TEST_DIM = 8


class FakeEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic provider keyed on the top-left pixel color.

    Each distinct color maps to its own random direction. Colors listed
    in `reject` are rejected. Counts calls so tests can assert how much
    embedding work was done.
    """

    def __init__(self, dim=TEST_DIM, reject=(), fail=()):
        self.dim = dim
        self.reject = {tuple(c) for c in reject}
        self.fail = {tuple(c) for c in fail}
        self.calls = 0
        self._lock = threading.Lock()

    def vector_for(self, color):
        r, g, b = (int(c) for c in color)
        rng = np.random.default_rng(r * 65536 + g * 256 + b)
        return rng.normal(size=self.dim).astype(np.float32)

    def embed(self, image):
        with self._lock:
            self.calls += 1
        key = tuple(int(c) for c in image[0, 0][:3])
        if key in self.fail:
            raise RuntimeError("model crashed")
        if key in self.reject:
            return None
        return self.vector_for(key)


def solid_image(color, size=64):
    img = np.zeros((size, size, 3), dtype=np.uint8)
    img[:, :] = color
    return img


def solid_payload(color):
    return encode_image(solid_image(color))


def distinct_color(i):
    return (10 + i * 20 % 240, 50 + i * 7 % 200, 200 - i * 11 % 190)


@pytest.fixture
def store():
    return CatalogStore(dim=TEST_DIM)


@pytest.fixture
def index(store):
    return VectorIndex(store, dim=TEST_DIM)


@pytest.fixture
def provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def make_item():
    """Factory for catalog items with sensible defaults."""
    def _make(name="Aether Brew 6-Pack", embedding=None, item_type="beer_photo", **kwargs):
        return CatalogItem(
            name=name,
            brand=kwargs.pop("brand", "Aether"),
            pack_size=kwargs.pop("pack_size", "6-pack"),
            item_type=item_type,
            embedding=None if embedding is None else np.asarray(embedding, dtype=np.float32),
            **kwargs,
        )
    return _make


@pytest.fixture
def red_square_image():
    """Generate a 200x200 red square on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    img[40:160, 40:160] = [200, 30, 30]  # Red square
    return img


@pytest.fixture
def blue_circle_image():
    """Generate a 200x200 blue circle on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    cv2.circle(img, (100, 100), 60, (30, 30, 200), -1)
    return img


@pytest.fixture
def green_rectangle_image():
    """Generate a 200x200 green rectangle on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    img[30:170, 60:140] = [30, 180, 30]  # Tall green rectangle
    return img


@pytest.fixture
def textured_image():
    """Generate a 200x200 checkerboard pack label."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 200
    for y in range(0, 200, 20):
        for x in range(0, 200, 20):
            if (x // 20 + y // 20) % 2 == 0:
                img[y:y+20, x:x+20] = [150, 40, 40]
    return img


@pytest.fixture
def noise_image():
    """Generate a 200x200 random noise image."""
    rng = np.random.RandomState(42)
    return rng.randint(0, 255, (200, 200, 3), dtype=np.uint8)
