"""
Optimizers used to move a network away from its initialization before a
gradient check ("characteristic mode").

θ ←--- θ - η . ∇(ℒ)

All updates write into `parameter.data` in place, so parameters that are
views into a network's arena stay views.
"""

from typing import Iterable

import numpy as np

from .tensor import Tensor


class Optimizer:
  """
  Keeps one state dict per parameter; subclasses implement
  `update(parameter_data, gradient, state)` and mutate `parameter_data` in place.
  """

  def __init__(self, parameters: Iterable[Tensor], learning_rate: float = 0.01):
    self.parameters = [parameter for parameter in parameters if parameter.requires_grad]
    self.learning_rate = learning_rate
    self.step_count = 0
    self._state = [{} for _ in self.parameters]

  def zero_grad(self):
    for parameter in self.parameters:
      parameter.grad = None

  def step(self):
    self.step_count += 1
    for parameter, state in zip(self.parameters, self._state):
      if parameter.grad is not None:
        self.update(parameter.data, parameter.grad.data, state)

  def update(self, parameter_data: np.ndarray, gradient: np.ndarray, state: dict):
    raise NotImplementedError


class SGD(Optimizer):
  """
  Gradient descent with optional heavy-ball momentum.

  v ← μ·v + g,  θ ← θ − η·v
  """

  def __init__(
    self,
    parameters: Iterable[Tensor],
    learning_rate: float = 0.01,
    momentum: float = 0.0,
  ):
    super().__init__(parameters, learning_rate)
    self.momentum = momentum

  def update(self, parameter_data, gradient, state):
    velocity = state.setdefault("velocity", np.zeros_like(parameter_data))
    velocity *= self.momentum
    velocity += gradient
    parameter_data -= self.learning_rate * velocity


class Adam(Optimizer):
  """
  Adaptive Moment Estimation.

  m ← β₁·m + (1 − β₁)·g
  v ← β₂·v + (1 − β₂)·g²
  θ ← θ − η · m̂ ⁄ (√v̂ + ε),  m̂ = m ⁄ (1 − β₁ᵗ),  v̂ = v ⁄ (1 − β₂ᵗ)
  """

  def __init__(
    self,
    parameters: Iterable[Tensor],
    learning_rate: float = 0.01,
    β_1: float = 0.9,
    β_2: float = 0.999,
    ε: float = 1e-8,
  ):
    super().__init__(parameters, learning_rate)
    self.β_1 = β_1
    self.β_2 = β_2
    self.ε = ε

  def update(self, parameter_data, gradient, state):
    first_moment = state.setdefault("first_moment", np.zeros_like(parameter_data))
    second_moment = state.setdefault("second_moment", np.zeros_like(parameter_data))
    first_moment += (1 - self.β_1) * (gradient - first_moment)
    second_moment += (1 - self.β_2) * (gradient * gradient - second_moment)
    t = self.step_count
    step_size = self.learning_rate / (1 - self.β_1**t)
    denominator = np.sqrt(second_moment / (1 - self.β_2**t)) + self.ε
    parameter_data -= step_size * first_moment / denominator


OPTIMIZERS = {"sgd": SGD, "adam": Adam}


def get_optimizer(name: str, parameters: Iterable[Tensor], learning_rate: float) -> Optimizer:
  try:
    optimizer_class = OPTIMIZERS[name.lower()]
  except KeyError:
    raise ValueError(
      f"Unknown optimizer '{name}'. Expected one of {sorted(OPTIMIZERS)}"
    ) from None
  return optimizer_class(parameters, learning_rate=learning_rate)


__all__ = ["Optimizer", "SGD", "Adam", "get_optimizer"]
