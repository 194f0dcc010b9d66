"""
Small synthetic datasets for gradient checks.

∘ iris_like       –  150 × 4, three Gaussian blobs, standardized columns
∘ random_batch    –  uniform features of a given shape + one-hot labels
∘ one_hot_cycle   –  labels[i, i mod C] = 1
"""

from typing import Optional

import numpy as np

from ..core.tensor import get_default_dtype

# Per-class feature means, shaped after Fisher's iris measurements (cm).
IRIS_CLASS_MEANS = np.array(
  [
    [5.0, 3.4, 1.5, 0.2],
    [5.9, 2.8, 4.3, 1.3],
    [6.6, 3.0, 5.6, 2.0],
  ]
)
IRIS_CLASS_SPREAD = np.array([0.35, 0.35, 0.45, 0.2])


def _random_state(seed: Optional[int]):
  # module-level np.random functions draw from the global state
  return np.random.RandomState(seed) if seed is not None else np.random


def one_hot_cycle(batch_size: int, classes: int) -> np.ndarray:
  labels = np.zeros((batch_size, classes), dtype=get_default_dtype())
  labels[np.arange(batch_size), np.arange(batch_size) % classes] = 1.0
  return labels


def iris_like(num_examples: int = 150, seed: Optional[int] = None) -> tuple[np.ndarray, np.ndarray]:
  """
  Returns (features (N, 4), one-hot labels (N, 3)), classes interleaved so
  any prefix of the data covers every class. Features are standardized.
  """
  rng = _random_state(seed)
  classes = np.arange(num_examples) % len(IRIS_CLASS_MEANS)
  features = IRIS_CLASS_MEANS[classes] + rng.randn(num_examples, 4) * IRIS_CLASS_SPREAD
  features = (features - features.mean(axis=0)) / (features.std(axis=0) + 1e-12)
  labels = one_hot_cycle(num_examples, len(IRIS_CLASS_MEANS))
  return features.astype(get_default_dtype()), labels


def random_batch(
  batch_size: int,
  example_shape: tuple[int, ...],
  classes: int,
  seed: Optional[int] = None,
) -> tuple[np.ndarray, np.ndarray]:
  """Features ~ U[0, 1) with shape (batch_size, *example_shape)."""
  rng = _random_state(seed)
  features = rng.rand(batch_size, *example_shape).astype(get_default_dtype())
  return features, one_hot_cycle(batch_size, classes)
