"""
Loss and analytic gradient of a network on one fixed batch.

The evaluator owns private copies of the features and labels. In input mode
the features copy is what the network reads, so the finite-difference sweep
can perturb it without touching the caller's arrays.
"""

import numpy as np

from .errors import ConfigurationError, EvaluationError


class LossGradientEvaluator:
  def __init__(self, network, features, labels, include_input: bool = False):
    if network.is_stochastic():
      raise ConfigurationError(
        "Network contains stochastic layers (e.g. dropout) in training mode; "
        "the loss is not a deterministic function of the parameters"
      )
    self.network = network
    self.include_input = include_input
    dtype = network.arena.dtype
    self.features = np.array(features, dtype=dtype, copy=True)
    self.labels = np.array(labels, dtype=dtype, copy=True)

  @property
  def input_array(self) -> np.ndarray:
    return self.features

  def _checked(self, value: float, what: str) -> float:
    if not np.isfinite(value):
      raise EvaluationError(f"{what} is not finite ({value})")
    return float(value)

  def loss(self) -> float:
    try:
      score = self.network.score(self.features, self.labels)
    except ArithmeticError as error:
      raise EvaluationError(f"Forward pass failed: {error}") from error
    return self._checked(score, "Loss")

  def loss_and_gradient(self) -> tuple[float, np.ndarray]:
    try:
      score, gradient, input_gradient = self.network.compute_gradient_and_score(
        self.features, self.labels, input_gradient=self.include_input
      )
    except ArithmeticError as error:
      raise EvaluationError(f"Forward/backward pass failed: {error}") from error

    score = self._checked(score, "Loss")
    if self.include_input:
      gradient = np.concatenate([gradient, input_gradient.reshape(-1)])
    if not np.all(np.isfinite(gradient)):
      bad = int(np.flatnonzero(~np.isfinite(gradient))[0])
      raise EvaluationError(f"Analytic gradient is not finite at index {bad}")
    return score, gradient
