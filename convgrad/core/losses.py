"""
Loss functions for output layers.

Every routine takes the output layer's *activations* (already passed through
softmax / tanh / sigmoid / identity) and dense labels of the same shape, and
returns

  (scalar_loss, gradient_tensor)

where `scalar_loss` is the per-example loss averaged over the batch and
`gradient_tensor` is a detached `Tensor` holding ∂ℓ⁄∂activations. A network
feeds the gradient to `activations.backward(...)`.

Implemented losses (per example, n = number of outputs)
• negative_log_likelihood   ℓ = −∑ y log p          (multi-class cross-entropy)
• mean_squared_error        ℓ = 1⁄n ∑ (ŷ − y)²
• binary_cross_entropy      ℓ = −∑ [y log p + (1 − y) log(1 − p)]

Probabilities are clamped to [tiny, 1 − ε] inside the logarithms; the same
clamped values are used for the gradient so loss and gradient stay consistent.
"""

import numpy as np

from .tensor import Tensor


def _clamp_probabilities(probabilities: np.ndarray, upper: bool = False) -> np.ndarray:
  info = np.finfo(probabilities.dtype)
  return np.clip(probabilities, info.tiny, 1.0 - info.epsneg if upper else None)


def _check_shapes(outputs: np.ndarray, labels: np.ndarray) -> None:
  if outputs.shape != labels.shape:
    raise ValueError(
      f"Labels of shape {labels.shape} do not match outputs of shape {outputs.shape}"
    )


def negative_log_likelihood(outputs: Tensor, labels: np.ndarray) -> tuple[float, Tensor]:
  """
  ℓ(p, y) = −∑ⱼ yⱼ log pⱼ
  ∂ℓ ⁄ ∂p = −y ⁄ p ⁄ batch
  """
  probabilities = outputs.data
  labels = np.asarray(labels, dtype=probabilities.dtype)
  _check_shapes(probabilities, labels)
  batch_size = probabilities.shape[0]
  clamped = _clamp_probabilities(probabilities)
  loss_value = float(-(labels * np.log(clamped)).sum() / batch_size)
  gradient_matrix = -labels / clamped / batch_size
  return loss_value, Tensor(gradient_matrix, requires_grad=False)


def mean_squared_error(outputs: Tensor, labels: np.ndarray) -> tuple[float, Tensor]:
  """
  ℓ(ŷ, y) = 1 ⁄ n ∑ⱼ (ŷⱼ − yⱼ)²
  ∂ℓ ⁄ ∂ŷ = 2 (ŷ − y) ⁄ n ⁄ batch
  """
  predictions = outputs.data
  labels = np.asarray(labels, dtype=predictions.dtype)
  _check_shapes(predictions, labels)
  batch_size, output_size = predictions.shape[0], predictions[0].size
  difference = predictions - labels
  loss_value = float((difference**2).sum() / output_size / batch_size)
  gradient_matrix = 2.0 * difference / output_size / batch_size
  return loss_value, Tensor(gradient_matrix, requires_grad=False)


def binary_cross_entropy(outputs: Tensor, labels: np.ndarray) -> tuple[float, Tensor]:
  """
  ℓ(p, y) = −∑ⱼ [yⱼ log pⱼ + (1 − yⱼ) log(1 − pⱼ)]
  ∂ℓ ⁄ ∂p = (p − y) ⁄ (p (1 − p)) ⁄ batch
  """
  probabilities = outputs.data
  labels = np.asarray(labels, dtype=probabilities.dtype)
  _check_shapes(probabilities, labels)
  batch_size = probabilities.shape[0]
  clamped = _clamp_probabilities(probabilities, upper=True)
  loss_matrix = labels * np.log(clamped) + (1.0 - labels) * np.log1p(-clamped)
  loss_value = float(-loss_matrix.sum() / batch_size)
  gradient_matrix = (clamped - labels) / (clamped * (1.0 - clamped)) / batch_size
  return loss_value, Tensor(gradient_matrix, requires_grad=False)


LOSSES = {
  "negative_log_likelihood": negative_log_likelihood,
  "mcxent": negative_log_likelihood,
  "mean_squared_error": mean_squared_error,
  "mse": mean_squared_error,
  "binary_cross_entropy": binary_cross_entropy,
  "xent": binary_cross_entropy,
}


def get_loss(name: str):
  try:
    return LOSSES[name.lower()]
  except KeyError:
    raise ValueError(f"Unknown loss '{name}'. Expected one of {sorted(LOSSES)}") from None
