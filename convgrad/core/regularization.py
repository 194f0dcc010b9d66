"""
L1 / L2 weight penalties.

  penalty = l1 · ∑|W| + ½ · l2 · ∑W²  +  l1_bias · ∑|b| + ½ · l2_bias · ∑b²
  ∂penalty ⁄ ∂W = l1 · sgn(W) + l2 · W          (same for b with the bias coefficients)

Parameters whose name ends in "bias" use the bias coefficients; every other
parameter is treated as a weight. A network adds `penalty / batch_size` to its
score and `gradient / batch_size` to the backpropagated gradient.
"""

from dataclasses import dataclass
from typing import Iterable

import numpy as np

from .tensor import Tensor


@dataclass(frozen=True)
class Regularization:
  l1: float = 0.0
  l2: float = 0.0
  l1_bias: float = 0.0
  l2_bias: float = 0.0

  def __post_init__(self):
    for field_name in ("l1", "l2", "l1_bias", "l2_bias"):
      if getattr(self, field_name) < 0:
        raise ValueError(f"Regularization coefficient {field_name} must be >= 0")

  @property
  def enabled(self) -> bool:
    return any((self.l1, self.l2, self.l1_bias, self.l2_bias))

  def coefficients(self, parameter_name: str) -> tuple[float, float]:
    if parameter_name.endswith("bias"):
      return self.l1_bias, self.l2_bias
    return self.l1, self.l2

  def penalty(self, named_parameters: Iterable[tuple[str, Tensor]]) -> float:
    total = 0.0
    for name, parameter in named_parameters:
      l1, l2 = self.coefficients(name)
      if l1:
        total += l1 * np.abs(parameter.data).sum()
      if l2:
        total += 0.5 * l2 * (parameter.data**2).sum()
    return float(total)

  def gradient(self, parameter_name: str, values: np.ndarray) -> np.ndarray:
    l1, l2 = self.coefficients(parameter_name)
    return l1 * np.sign(values) + l2 * values

  @classmethod
  def from_config(cls, section: dict | None) -> "Regularization":
    section = section or {}
    return cls(
      l1=float(section.get("l1", 0.0)),
      l2=float(section.get("l2", 0.0)),
      l1_bias=float(section.get("l1_bias", 0.0)),
      l2_bias=float(section.get("l2_bias", 0.0)),
    )
