import numpy as np
import pytest
from numpy.random import randn

from convgrad.core.ops import conv2d, matmul, output_length, upsample2d, zero_pad2d
from convgrad.core.tensor import Tensor
from tests.utils import assertion, finite_difference_gradients


@pytest.mark.parametrize("n,m,k", [(4, 5, 6), (3, 7, 2)])
def test_matmul_grad(n, m, k):
  a = Tensor(randn(n, m), True)
  b = Tensor(randn(m, k), True)
  matmul(a, b).mean().backward()
  numdx, numdy = finite_difference_gradients(
    lambda x, y: (x @ y).mean(), [a.data.copy(), b.data.copy()]
  )
  assertion(a.grad.data, numdx)
  assertion(b.grad.data, numdy)


def _reference_conv2d(inp, ker, bias, stride, padding, dilation):
  """Direct loop cross-correlation; padding is (top, bottom, left, right)."""
  top, bottom, left, right = padding
  padded = np.pad(inp, ((0, 0), (0, 0), (top, bottom), (left, right)))
  batch_size, _, height, width = padded.shape
  out_ch, _, kh, kw = ker.shape
  oh = (height - (dilation * (kh - 1) + 1)) // stride + 1
  ow = (width - (dilation * (kw - 1) + 1)) // stride + 1
  out = np.zeros((batch_size, out_ch, oh, ow))
  for i in range(oh):
    for j in range(ow):
      rows = i * stride + dilation * np.arange(kh)
      cols = j * stride + dilation * np.arange(kw)
      patch = padded[:, :, rows][:, :, :, cols]
      out[:, :, i, j] = np.einsum("bchw,ochw->bo", patch, ker)
  if bias is not None:
    out += bias.reshape(1, -1, 1, 1)
  return out


def _conv_2d_forward(inp, ker, bias, stride, padding, dilation=1):
  return conv2d(
    Tensor(inp),
    Tensor(ker),
    Tensor(bias) if bias is not None else None,
    stride,
    padding,
    dilation,
  ).data.mean()


# (kernel, stride, padding, dilation)
CONV_CASES = [
  (3, 1, (1, 1, 1, 1), 1),
  (2, 2, (0, 0, 0, 0), 1),
  (2, 1, (0, 1, 0, 1), 2),
  (3, 2, (1, 0, 2, 0), 2),
]


@pytest.mark.parametrize("kernel,stride,padding,dilation", CONV_CASES)
def test_conv2d_matches_reference(kernel, stride, padding, dilation):
  inp, ker, bias = randn(2, 3, 7, 6), randn(4, 3, kernel, kernel), randn(4)
  out = conv2d(Tensor(inp), Tensor(ker), Tensor(bias), stride, padding, dilation)
  expected = _reference_conv2d(inp, ker, bias, stride, padding, dilation)
  assert out.shape == expected.shape
  assert np.allclose(out.data, expected)


@pytest.mark.parametrize("bias_flag", [True, False])
@pytest.mark.parametrize("kernel,stride,padding,dilation", CONV_CASES)
def test_conv2d_grad(bias_flag, kernel, stride, padding, dilation):
  batch_size, in_ch, out_ch, h, w = 2, 2, 3, 6, 5
  inp = Tensor(randn(batch_size, in_ch, h, w), True)
  ker = Tensor(randn(out_ch, in_ch, kernel, kernel), True)
  bias = Tensor(randn(out_ch), True) if bias_flag else None
  conv2d(inp, ker, bias, stride, padding, dilation).mean().backward()
  if bias_flag:
    tensors = [inp.data.copy(), ker.data.copy(), bias.data.copy()]
    fd_fn = lambda i, k, b: _conv_2d_forward(i, k, b, stride, padding, dilation)
  else:
    tensors = [inp.data.copy(), ker.data.copy()]
    fd_fn = lambda i, k: _conv_2d_forward(i, k, None, stride, padding, dilation)
  grads = finite_difference_gradients(fd_fn, tensors)
  assertion(inp.grad.data, grads[0])
  assertion(ker.grad.data, grads[1])
  if bias_flag:
    assertion(bias.grad.data, grads[2])


def test_conv2d_channel_mismatch():
  with pytest.raises(ValueError, match="input channels"):
    conv2d(Tensor(randn(1, 2, 4, 4)), Tensor(randn(3, 1, 2, 2)))


def test_conv2d_kernel_larger_than_input():
  with pytest.raises(ValueError, match="too small"):
    conv2d(Tensor(randn(1, 1, 2, 2)), Tensor(randn(1, 1, 2, 2)), dilation=2)


@pytest.mark.parametrize(
  "size,kernel,stride,low,high,dilation,expected",
  [(5, 2, 1, 0, 0, 1, 4), (5, 3, 2, 1, 1, 1, 3), (8, 3, 1, 0, 0, 3, 2), (6, 2, 2, 0, 1, 2, 3)],
)
def test_output_length(size, kernel, stride, low, high, dilation, expected):
  assert output_length(size, kernel, stride, low, high, dilation) == expected


@pytest.mark.parametrize("padding", [(0, 0, 0, 0), (1, 1, 0, 0), (2, 2, 2, 2), (0, 1, 2, 3)])
def test_zero_pad2d(padding):
  x = Tensor(randn(2, 3, 4, 5), True)
  out = zero_pad2d(x, padding)
  top, bottom, left, right = padding
  assert out.shape == (2, 3, 4 + top + bottom, 5 + left + right)
  assert np.array_equal(out.data[:, :, top : top + 4, left : left + 5], x.data)
  weights = randn(*out.shape)
  (out * Tensor(weights)).sum().backward()
  assert np.allclose(x.grad.data, weights[:, :, top : top + 4, left : left + 5])


@pytest.mark.parametrize("size", [2, (1, 3)])
def test_upsample2d_grad(size):
  x = Tensor(randn(2, 2, 3, 2), True)
  weights = None

  def forward(data):
    return (upsample2d(Tensor(data), size).data * weights).sum()

  out = upsample2d(x, size)
  sh, sw = (size, size) if isinstance(size, int) else size
  assert out.shape == (2, 2, 3 * sh, 2 * sw)
  assert np.array_equal(out.data[:, :, ::sh, ::sw], x.data)
  weights = randn(*out.shape)
  (out * Tensor(weights)).sum().backward()
  (numerical_gradient,) = finite_difference_gradients(forward, [x.data.copy()])
  assertion(x.grad.data, numerical_gradient)
