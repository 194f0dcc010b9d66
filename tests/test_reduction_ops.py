import numpy as np
import pytest
from numpy.random import randn

from convgrad.core.ops import mean as _mean
from convgrad.core.ops import sum as _sum
from convgrad.core.tensor import Tensor
from tests.utils import assertion, finite_difference_gradients

REDUCTIONS = [(_sum, np.sum), (_mean, np.mean)]


@pytest.mark.parametrize("reduction,reference", REDUCTIONS)
@pytest.mark.parametrize(
  "shape,axis,keepdims",
  [
    ((3, 4, 5), 1, False),
    ((2, 3, 6), 2, True),
    ((3, 4, 5), (0, 2), False),
    ((2, 3, 4, 4), (2, 3), True),
    ((2, 3, 6), -1, False),
    ((4, 3), None, False),
  ],
)
def test_reduction_grad(reduction, reference, shape, axis, keepdims):
  a = Tensor(randn(*shape), True)
  weights = randn(*reference(a.data, axis=axis, keepdims=keepdims).shape)
  output = reduction(a, axis=axis, keepdims=keepdims)
  assert np.allclose(output.data, reference(a.data, axis=axis, keepdims=keepdims))
  (output * Tensor(weights)).sum().backward()
  (numdx,) = finite_difference_gradients(
    lambda x: (reference(x, axis=axis, keepdims=keepdims) * weights).sum(), [a.data.copy()]
  )
  assertion(a.grad.data, numdx)


def test_tensor_methods():
  a = Tensor(np.arange(6.0).reshape(2, 3), True)
  assert float(a.sum()) == 15.0
  assert np.allclose(a.mean(axis=0).data, [1.5, 2.5, 3.5])
  a.mean().backward()
  assert np.allclose(a.grad.data, 1.0 / 6.0)
  with pytest.raises(TypeError):
    float(a)
