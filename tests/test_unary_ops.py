import numpy as np
import pytest
from numpy.random import randn

from convgrad.core.ops import get_activation, identity, neg, relu, sigmoid, softmax, tanh
from convgrad.core.tensor import Tensor
from tests.utils import assertion, finite_difference_gradients


@pytest.mark.parametrize("shape", [(5, 5), (7, 3)])
def test_neg_grad(shape):
  a = Tensor(randn(*shape), True)
  neg(a).mean().backward()
  (numdx,) = finite_difference_gradients(lambda x: (-x).mean(), [a.data.copy()])
  assertion(a.grad.data, numdx)


@pytest.mark.parametrize("shape", [(5, 5), (7, 3)])
def test_relu_grad(shape):
  a = Tensor(randn(*shape), True)
  relu(a).mean().backward()
  (numdx,) = finite_difference_gradients(
    lambda x: np.maximum(x, 0).mean(), [a.data.copy()]
  )
  assertion(a.grad.data, numdx)


@pytest.mark.parametrize("shape", [(5, 5), (7, 3)])
def test_identity_grad(shape):
  input_tensor = Tensor(randn(*shape), True)
  (identity(input_tensor) * input_tensor).mean().backward()
  (numerical_gradient,) = finite_difference_gradients(
    lambda x: (x * x).mean(), [input_tensor.data.copy()]
  )
  assertion(input_tensor.grad.data, numerical_gradient)


@pytest.mark.parametrize("shape", [(5, 5), (7, 3)])
def test_sigmoid_grad(shape):
  input_tensor = Tensor(randn(*shape), True)
  sigmoid(input_tensor).mean().backward()
  (numerical_gradient,) = finite_difference_gradients(
    lambda x: (1.0 / (1.0 + np.exp(-x))).mean(),
    [input_tensor.data.copy()],
  )
  assertion(input_tensor.grad.data, numerical_gradient)


def test_sigmoid_saturates_without_overflow():
  output = sigmoid(Tensor(np.array([-1000.0, 0.0, 1000.0])))
  assert np.allclose(output.data, [0.0, 0.5, 1.0])
  assert np.all(np.isfinite(output.data))


@pytest.mark.parametrize("shape", [(5, 5), (7, 3)])
def test_tanh_grad(shape):
  input_tensor = Tensor(randn(*shape), True)
  tanh(input_tensor).mean().backward()
  (numerical_gradient,) = finite_difference_gradients(
    lambda x: np.tanh(x).mean(),
    [input_tensor.data.copy()],
  )
  assertion(input_tensor.grad.data, numerical_gradient)


def _softmax(x):
  shifted = np.exp(x - x.max(axis=1, keepdims=True))
  return shifted / shifted.sum(axis=1, keepdims=True)


@pytest.mark.parametrize("shape", [(4, 3), (2, 6)])
def test_softmax_grad(shape):
  input_tensor = Tensor(randn(*shape), True)
  weights = randn(*shape)
  (softmax(input_tensor) * Tensor(weights)).sum().backward()
  (numerical_gradient,) = finite_difference_gradients(
    lambda x: (_softmax(x) * weights).sum(), [input_tensor.data.copy()]
  )
  assertion(input_tensor.grad.data, numerical_gradient)


def test_softmax_rows_sum_to_one():
  output = softmax(Tensor(randn(5, 4) * 50))
  assert np.allclose(output.data.sum(axis=1), 1.0)


def test_unknown_activation():
  with pytest.raises(ValueError, match="Unknown activation"):
    get_activation("swishy")
