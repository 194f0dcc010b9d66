"""
Central-difference estimate of ∂L/∂θᵢ, one scalar at a time.

  ∂L/∂θᵢ ≈ (L(θ + ε·eᵢ) − L(θ − ε·eᵢ)) ⁄ 2ε

Error is O(ε²) in truncation plus O(u / ε) in rounding (u the unit roundoff),
which is why the checker insists on float64.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator

import numpy as np

from .accessor import ParameterAccessor
from .errors import EvaluationError


@dataclass(frozen=True)
class PerturbationRecord:
  index: int
  original_value: float
  loss_plus: float
  loss_minus: float
  numeric_gradient: float


class FiniteDifferenceEstimator:
  def __init__(self, accessor: ParameterAccessor, loss_fn: Callable[[], float], eps: float):
    self.accessor = accessor
    self.loss_fn = loss_fn
    self.eps = eps

  @contextmanager
  def perturbed(self, index: int, value: float) -> Iterator[float]:
    """Write `value` at `index` for the duration of the block."""
    original_value = self.accessor.get_scalar(index)
    self.accessor.set_scalar(index, value)
    try:
      yield original_value
    finally:
      self.accessor.set_scalar(index, original_value)

  def estimate(self, index: int) -> PerturbationRecord:
    original_value = self.accessor.get_scalar(index)
    with self.perturbed(index, original_value + self.eps):
      loss_plus = self.loss_fn()
    with self.perturbed(index, original_value - self.eps):
      loss_minus = self.loss_fn()

    numeric_gradient = (loss_plus - loss_minus) / (2 * self.eps)
    if not np.isfinite(numeric_gradient):
      raise EvaluationError(
        f"Numeric gradient at index {index} is not finite "
        f"(loss+ = {loss_plus}, loss- = {loss_minus})"
      )
    return PerturbationRecord(index, original_value, loss_plus, loss_minus, numeric_gradient)

  def sweep(self, indices: Iterable[int]) -> Iterator[PerturbationRecord]:
    for index in indices:
      yield self.estimate(index)
