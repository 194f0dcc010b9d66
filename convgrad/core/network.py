"""
A feed-forward network whose trainable parameters live in one flat arena.

∘ layers          –  hidden modules applied in order
∘ output          –  OutputLayer: linear map, activation, loss
∘ arena           –  1-D array; every parameter's `.data` is a reshaped view into it

Writing `network.arena[i]` changes the model in place, which is what the
gradient checker relies on. Parameters are laid out in `named_parameters()`
order, i.e. layer order, weight before bias.

Score (what the checker differentiates):
  score = 1⁄B ∑_b ℓ(x_b, y_b) + penalty ⁄ B
"""

import copy
from typing import Iterable, Optional

import numpy as np

from .losses import get_loss
from .modules import Flatten, Linear, Module
from .ops import get_activation, reshape
from .regularization import Regularization
from .tensor import Tensor, get_default_dtype


class OutputLayer(Module):
  """Dense layer followed by an activation, scored by a loss function."""

  def __init__(
    self,
    in_features: int,
    out_features: int,
    activation: str = "softmax",
    loss: str = "negative_log_likelihood",
    weight_init: str = "he",
  ):
    self.dense = Linear(in_features, out_features, weight_init=weight_init)
    self.activation = activation
    self.loss = loss
    self._activation_fn = get_activation(activation)
    self._loss_fn = get_loss(loss)

  @property
  def out_features(self) -> int:
    return self.dense.out_features

  def output_shape(self, input_shape):
    return self.dense.output_shape(input_shape)

  def compute_loss(self, activations: Tensor, labels: np.ndarray):
    return self._loss_fn(activations, labels)

  def __call__(self, x: Tensor) -> Tensor:
    return self._activation_fn(self.dense(x))


class Network(Module):
  def __init__(
    self,
    layers: Iterable[Module],
    output: OutputLayer,
    input_shape: tuple[int, ...],
    regularization: Optional[Regularization] = None,
  ):
    self.layers: list[Module] = list(layers)
    self.output = output
    self.input_shape = tuple(input_shape)
    self.regularization = regularization or Regularization()
    self._flatten = Flatten()
    self._allocate_arena()

  def _allocate_arena(self) -> None:
    named = list(self.named_parameters())
    total = int(np.sum([parameter.data.size for _, parameter in named], dtype=np.int64))
    arena = np.empty(total, dtype=get_default_dtype())
    segments = []
    offset = 0
    for name, parameter in named:
      size = parameter.data.size
      view = arena[offset : offset + size].reshape(parameter.data.shape)
      view[...] = parameter.data
      parameter.data = view
      parameter.shape = view.shape
      segments.append((name, offset, offset + size))
      offset += size
    self._arena = arena
    self._segments = segments

  @property
  def arena(self) -> np.ndarray:
    return self._arena

  @property
  def output_size(self) -> int:
    return self.output.out_features

  def named_segments(self) -> list[tuple[str, np.ndarray]]:
    """(name, flat view) pairs covering the arena in order."""
    return [(name, self._arena[start:stop]) for name, start, stop in self._segments]

  def num_params(self) -> int:
    return self._arena.size

  def layer_param_counts(self) -> list[tuple[str, int]]:
    counts = [
      (f"{index} ({type(layer).__name__})", layer.num_params())
      for index, layer in enumerate(self.layers)
    ]
    counts.append((f"{len(self.layers)} (OutputLayer)", self.output.num_params()))
    return counts

  def is_stochastic(self) -> bool:
    return any(
      module.is_stochastic() for module in self.modules() if module is not self
    )

  def clone(self) -> "Network":
    """Deep copy with its own arena; parameters no longer alias this network."""
    duplicate = copy.deepcopy(self)
    duplicate.zero_grad()
    duplicate._allocate_arena()
    return duplicate

  def check_input(self, features: np.ndarray) -> None:
    expected = self.input_shape
    example_shape = tuple(features.shape[1:])
    if example_shape != expected and example_shape != (int(np.prod(expected)),):
      raise ValueError(
        f"Network expects examples of shape {expected} (or flattened "
        f"({int(np.prod(expected))},)), got {example_shape}"
      )

  def forward(self, features, requires_grad: bool = False) -> tuple[Tensor, Tensor]:
    """Returns (input tensor, output activations)."""
    input_tensor = features if isinstance(features, Tensor) else Tensor(features, requires_grad)
    self.check_input(input_tensor.data)
    x = input_tensor
    if x.shape[1:] != self.input_shape:
      x = reshape(x, (x.shape[0],) + self.input_shape)
    for layer in self.layers:
      x = layer(x)
    return input_tensor, self.output(self._flatten(x))

  def __call__(self, features) -> Tensor:
    return self.forward(features)[1]

  def regularization_penalty(self) -> float:
    if not self.regularization.enabled:
      return 0.0
    return self.regularization.penalty(self.named_parameters())

  def regularization_gradient(self) -> np.ndarray:
    gradient = np.zeros_like(self._arena)
    if self.regularization.enabled:
      for name, start, stop in self._segments:
        gradient[start:stop] = self.regularization.gradient(
          name, self._arena[start:stop]
        )
    return gradient

  def score(self, features, labels) -> float:
    """Forward pass only."""
    _, activations = self.forward(features)
    loss_value, _ = self.output.compute_loss(activations, labels)
    batch_size = activations.shape[0]
    return loss_value + self.regularization_penalty() / batch_size

  def compute_gradient_and_score(
    self, features, labels, input_gradient: bool = False
  ) -> tuple[float, np.ndarray, Optional[np.ndarray]]:
    """
    One forward and one backward pass.

    Returns (score, flat parameter gradient in arena order, input gradient or
    None). Each parameter's `.grad` is also set, regularization included, so
    an optimizer can step on it directly.
    """
    self.zero_grad()
    input_tensor, activations = self.forward(features, requires_grad=input_gradient)
    loss_value, loss_gradient = self.output.compute_loss(activations, labels)
    activations.backward(loss_gradient)

    batch_size = activations.shape[0]
    gradient = np.zeros_like(self._arena)
    for (name, start, stop), parameter in zip(self._segments, self.parameters()):
      if parameter.grad is not None:
        gradient[start:stop] = parameter.grad.data.reshape(-1)
    gradient += self.regularization_gradient() / batch_size

    for (name, start, stop), parameter in zip(self._segments, self.parameters()):
      parameter.grad = Tensor(gradient[start:stop].reshape(parameter.shape))

    score = loss_value + self.regularization_penalty() / batch_size
    input_grad = None
    if input_gradient:
      input_grad = (
        input_tensor.grad.data.copy()
        if input_tensor.grad is not None
        else np.zeros_like(input_tensor.data)
      )
    return score, gradient, input_grad
