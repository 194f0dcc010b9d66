"""
Flat, indexable view over a model's trainable scalars.

∘ segments  –  ordered (name, array) pairs; each array aliases live model state
∘ index i   –  position in the concatenation of all segments, layer order

Writes through `set_scalar` land in the model immediately, so a following
forward pass sees them. Nothing is copied except by `flatten()`.
"""

from bisect import bisect_right
from typing import Optional, Sequence

import numpy as np

from .errors import ConfigurationError, IndexOutOfRange


class ParameterAccessor:
  def __init__(self, segments: Sequence[tuple[str, np.ndarray]]):
    self._names: list[str] = []
    self._arrays: list[np.ndarray] = []
    self._offsets: list[int] = []
    offset = 0
    for name, array in segments:
      if not isinstance(array, np.ndarray):
        raise ConfigurationError(f"Segment '{name}' is not a NumPy array")
      if array.size == 0:
        continue
      # reshape(-1) of a non-contiguous array would copy and detach from the model
      flat = array.reshape(-1)
      if not np.shares_memory(flat, array):
        raise ConfigurationError(f"Segment '{name}' cannot be flattened in place")
      self._names.append(name)
      self._arrays.append(flat)
      self._offsets.append(offset)
      offset += flat.size
    self._size = offset

  @classmethod
  def for_network(cls, network, input_array: Optional[np.ndarray] = None) -> "ParameterAccessor":
    segments = list(network.named_segments())
    if input_array is not None:
      segments.append(("input", input_array))
    return cls(segments)

  @property
  def size(self) -> int:
    return self._size

  def __len__(self) -> int:
    return self._size

  @property
  def segment_names(self) -> list[str]:
    return list(self._names)

  @property
  def dtype(self) -> np.dtype:
    dtypes = {array.dtype for array in self._arrays}
    if len(dtypes) > 1:
      raise ConfigurationError(f"Segments disagree on dtype: {sorted(map(str, dtypes))}")
    return dtypes.pop() if dtypes else np.dtype(np.float64)

  def _locate(self, index: int) -> tuple[int, int]:
    if not 0 <= index < self._size:
      raise IndexOutOfRange(f"Index {index} out of range for {self._size} scalars")
    segment = bisect_right(self._offsets, index) - 1
    return segment, index - self._offsets[segment]

  def get_scalar(self, index: int) -> float:
    segment, position = self._locate(index)
    return float(self._arrays[segment][position])

  def set_scalar(self, index: int, value: float) -> None:
    segment, position = self._locate(index)
    self._arrays[segment][position] = value

  def name_of(self, index: int) -> str:
    return self._names[self._locate(index)[0]]

  def segment_bounds(self) -> list[tuple[str, int, int]]:
    return [
      (name, offset, offset + array.size)
      for name, offset, array in zip(self._names, self._offsets, self._arrays)
    ]

  def flatten(self) -> np.ndarray:
    if not self._arrays:
      return np.zeros(0)
    return np.concatenate(self._arrays)
