"""
Primitives that power the autodiff engine.

Design
∘ Function.apply builds the forward result and links the output to its parents.
∘ Broadcasting-aware gradients via `_unbroadcast`.
∘ Coverage: element-wise {add, sub, mul, div, neg}, matmul, reshape,
  activations {identity, relu, sigmoid, tanh, softmax}, reductions (sum, mean),
  and NCHW image ops {conv2d, zero_pad2d, upsample2d}.

Spatial geometry
∘ kernel, stride, dilation: int or (h, w)
∘ padding: int, (h, w) or (top, bottom, left, right)
Output size along one axis: ⌊(n + p_lo + p_hi − (d·(k−1)+1)) / s⌋ + 1

Each op stores only what is indispensable for its gradient.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Sequence

import numpy as np
from numpy.lib.stride_tricks import as_strided

from .tensor import Tensor


def _unbroadcast(
  gradient_array: np.ndarray, target_shape: tuple[int, ...]
) -> np.ndarray:
  while gradient_array.ndim > len(target_shape):
    gradient_array = gradient_array.sum(axis=0)
  for axis_index, size in enumerate(target_shape):
    if size == 1 and gradient_array.shape[axis_index] != 1:
      gradient_array = gradient_array.sum(axis=axis_index, keepdims=True)
  return gradient_array


def _pair(value) -> tuple[int, int]:
  if isinstance(value, Sequence):
    if len(value) != 2:
      raise ValueError(f"Expected 2 values, got {len(value)}.")
    return int(value[0]), int(value[1])
  return int(value), int(value)


def _padding4(value) -> tuple[int, int, int, int]:
  """(top, bottom, left, right) from an int, an (h, w) pair or a 4-tuple."""
  if isinstance(value, Sequence):
    if len(value) == 4:
      return tuple(int(v) for v in value)
    padding_height, padding_width = _pair(value)
    return padding_height, padding_height, padding_width, padding_width
  return (int(value),) * 4


def output_length(size, kernel, stride, padding_low, padding_high, dilation) -> int:
  effective_kernel = dilation * (kernel - 1) + 1
  return (size + padding_low + padding_high - effective_kernel) // stride + 1


def _extract_windows(
  input_image: np.ndarray,
  kernel_size,
  stride=1,
  padding=0,
  dilation=1,
  pad_value: float = 0.0,
):
  """
  Strided view of every receptive field.

  input_image shape: (B, C, H, W)
  Returns
      windows  –  (B, C, kh, kw, Hₒ, Wₒ) view over the padded input
      Hₒ, Wₒ
  """
  batch_size, channels, height, width = input_image.shape
  kernel_height, kernel_width = _pair(kernel_size)
  stride_height, stride_width = _pair(stride)
  dilation_height, dilation_width = _pair(dilation)
  top, bottom, left, right = _padding4(padding)

  output_height = output_length(
    height, kernel_height, stride_height, top, bottom, dilation_height
  )
  output_width = output_length(
    width, kernel_width, stride_width, left, right, dilation_width
  )
  if output_height <= 0 or output_width <= 0:
    raise ValueError(
      f"Input of spatial size {(height, width)} is too small for kernel "
      f"{(kernel_height, kernel_width)}, dilation {(dilation_height, dilation_width)} "
      f"and padding {(top, bottom, left, right)}"
    )

  padded_input = np.pad(
    input_image,
    ((0, 0), (0, 0), (top, bottom), (left, right)),
    mode="constant",
    constant_values=pad_value,
  )
  shape = (
    batch_size,
    channels,
    kernel_height,
    kernel_width,
    output_height,
    output_width,
  )
  strides = (
    padded_input.strides[0],
    padded_input.strides[1],
    padded_input.strides[2] * dilation_height,
    padded_input.strides[3] * dilation_width,
    padded_input.strides[2] * stride_height,
    padded_input.strides[3] * stride_width,
  )
  windows = as_strided(padded_input, shape=shape, strides=strides, writeable=False)
  return windows, output_height, output_width


def _scatter_windows(
  window_gradients: np.ndarray,
  input_shape: tuple[int, ...],
  stride=1,
  padding=0,
  dilation=1,
) -> np.ndarray:
  """
  Adjoint of `_extract_windows`.
  window_gradients shape: (B, C, kh, kw, Hₒ, Wₒ)
  Returns the (un-padded) input gradient.
  """
  batch_size, channels, height, width = input_shape
  _, _, kernel_height, kernel_width, output_height, output_width = (
    window_gradients.shape
  )
  stride_height, stride_width = _pair(stride)
  dilation_height, dilation_width = _pair(dilation)
  top, bottom, left, right = _padding4(padding)

  padded_gradient = np.zeros(
    (batch_size, channels, height + top + bottom, width + left + right),
    dtype=window_gradients.dtype,
  )
  for row_index in range(kernel_height):
    row_start = row_index * dilation_height
    row_stop = row_start + stride_height * (output_height - 1) + 1
    for column_index in range(kernel_width):
      column_start = column_index * dilation_width
      column_stop = column_start + stride_width * (output_width - 1) + 1
      padded_gradient[
        :, :, row_start:row_stop:stride_height, column_start:column_stop:stride_width
      ] += window_gradients[:, :, row_index, column_index]
  return padded_gradient[:, :, top : top + height, left : left + width]


class Function(ABC):
  def __init__(self) -> None:
    self.parents: list[Tensor] = []
    self.saved_tensors: tuple[np.ndarray, ...] = ()

  def save_for_backward(self, *tensors) -> None:
    self.saved_tensors = tuple(tensors)

  @classmethod
  def apply(cls, *args, **kwargs) -> Tensor:
    context = cls()
    context.parents = [argument for argument in args if isinstance(argument, Tensor)]
    raw_arguments = [
      argument.data if isinstance(argument, Tensor) else argument for argument in args
    ]
    output_data = cls.forward(context, *raw_arguments, **kwargs)
    requires_grad_flag = any(parent.requires_grad for parent in context.parents)
    output_tensor = Tensor(output_data, requires_grad_flag)
    output_tensor._ctx = context
    return output_tensor

  @staticmethod
  @abstractmethod
  def forward(ctx, *args, **kwargs):
    raise NotImplementedError

  @abstractmethod
  def backward(self, gradient_output) -> np.ndarray | tuple[np.ndarray, ...]:
    raise NotImplementedError


def _as_tensor(value) -> Tensor:
  return value if isinstance(value, Tensor) else Tensor(value)


class _Elementwise(Function):
  """
  Broadcasting binary op z = f(x, y).
  Subclasses give `partials(x, y, ∂ℒ/∂z) -> (∂ℒ/∂z · ∂z/∂x, ∂ℒ/∂z · ∂z/∂y)`;
  each is summed back to its operand's shape.
  """

  @staticmethod
  @abstractmethod
  def compute(left, right): ...

  @staticmethod
  @abstractmethod
  def partials(left, right, gradient_output): ...

  @classmethod
  def forward(cls, ctx, left, right):
    ctx.save_for_backward(np.asarray(left), np.asarray(right))
    return cls.compute(left, right)

  def backward(self, gradient_output):
    left, right = self.saved_tensors
    gradient_left, gradient_right = self.partials(left, right, gradient_output)
    return (
      _unbroadcast(np.asarray(gradient_left), left.shape),
      _unbroadcast(np.asarray(gradient_right), right.shape).copy(),
    )


class Add(_Elementwise):
  compute = staticmethod(np.add)

  @staticmethod
  def partials(left, right, gradient_output):
    return gradient_output, gradient_output


class Mul(_Elementwise):
  compute = staticmethod(np.multiply)

  @staticmethod
  def partials(left, right, gradient_output):
    return gradient_output * right, gradient_output * left


class Div(_Elementwise):
  compute = staticmethod(np.divide)

  @staticmethod
  def partials(left, right, gradient_output):
    return gradient_output / right, -gradient_output * left / (right * right)


def add(a, b):
  return Add.apply(_as_tensor(a), _as_tensor(b))


def mul(a, b):
  return Mul.apply(_as_tensor(a), _as_tensor(b))


def div(a, b):
  return Div.apply(_as_tensor(a), _as_tensor(b))


class Neg(Function):
  @staticmethod
  def forward(ctx, input_tensor):
    return -input_tensor

  def backward(self, gradient_output):
    return -gradient_output


def neg(x: Tensor):
  return Neg.apply(x)


def sub(a, b):
  return add(a, neg(_as_tensor(b)))


class Reshape(Function):
  @staticmethod
  def forward(ctx, input_tensor, shape):
    ctx.input_shape = input_tensor.shape
    return input_tensor.reshape(shape)

  def backward(self, gradient_output):
    return gradient_output.reshape(self.input_shape)


def reshape(x: Tensor, shape: tuple[int, ...]):
  return Reshape.apply(x, tuple(shape))


class _Pointwise(Function):
  """
  y = f(x) applied element-wise, with f′ expressed through the output y
  so only y is kept for the backward pass.
  """

  @staticmethod
  @abstractmethod
  def compute(input_tensor): ...

  @staticmethod
  @abstractmethod
  def derivative(output_tensor): ...

  @classmethod
  def forward(cls, ctx, input_tensor):
    output_tensor = cls.compute(input_tensor)
    ctx.save_for_backward(output_tensor)
    return output_tensor

  def backward(self, gradient_output):
    (output_tensor,) = self.saved_tensors
    return gradient_output * self.derivative(output_tensor)


class Identity(_Pointwise):
  compute = staticmethod(np.copy)

  @staticmethod
  def derivative(output_tensor):
    return 1.0


class ReLU(_Pointwise):
  @staticmethod
  def compute(input_tensor):
    return np.maximum(input_tensor, 0.0).astype(input_tensor.dtype)

  @staticmethod
  def derivative(output_tensor):
    return (output_tensor > 0).astype(output_tensor.dtype)


class Sigmoid(_Pointwise):
  """σ(x) = 1 ÷ (1 + e^(−x)),  σ′ = σ · (1 − σ)"""

  @staticmethod
  def compute(input_tensor):
    # tanh form never overflows
    return 0.5 * (1.0 + np.tanh(0.5 * input_tensor))

  @staticmethod
  def derivative(output_tensor):
    return output_tensor * (1.0 - output_tensor)


class Tanh(_Pointwise):
  """tanh′ = 1 − tanh²"""

  compute = staticmethod(np.tanh)

  @staticmethod
  def derivative(output_tensor):
    return 1.0 - output_tensor * output_tensor


def identity(x: Tensor):
  return Identity.apply(x)


def relu(x: Tensor):
  return ReLU.apply(x)


def sigmoid(x: Tensor):
  return Sigmoid.apply(x)


def tanh(x: Tensor):
  return Tanh.apply(x)


class Softmax(Function):
  """
  Softmax over the class axis (axis 1).
  Forward pⱼ = exp(zⱼ − max(z)) ⁄ ∑ₖ exp(zₖ − max(z))
  Backward ∂ℒ/∂zⱼ = pⱼ · (∂ℒ/∂pⱼ − ∑ₖ ∂ℒ/∂pₖ · pₖ)
  """

  @staticmethod
  def forward(ctx, logits):
    exponentials = np.exp(logits - logits.max(axis=1, keepdims=True))
    probabilities = exponentials / exponentials.sum(axis=1, keepdims=True)
    ctx.save_for_backward(probabilities)
    return probabilities

  def backward(self, gradient_output):
    (probabilities,) = self.saved_tensors
    projection = (gradient_output * probabilities).sum(axis=1, keepdims=True)
    return probabilities * (gradient_output - projection)


def softmax(x: Tensor):
  return Softmax.apply(x)


ACTIVATIONS = {
  "identity": identity,
  "relu": relu,
  "sigmoid": sigmoid,
  "tanh": tanh,
  "softmax": softmax,
}


def get_activation(name: str):
  try:
    return ACTIVATIONS[name.lower()]
  except KeyError:
    raise ValueError(
      f"Unknown activation '{name}'. Expected one of {sorted(ACTIVATIONS)}"
    ) from None


class MatMul(Function):
  """
  Y = A @ B
  ∂L/∂A = ∂L/∂Y @ Bᵀ,  ∂L/∂B = Aᵀ @ ∂L/∂Y
  """

  @staticmethod
  def forward(ctx, matrix_a, matrix_b):
    ctx.save_for_backward(matrix_a, matrix_b)
    return matrix_a @ matrix_b

  def backward(self, gradient_output):
    matrix_a, matrix_b = self.saved_tensors
    return (
      _unbroadcast(gradient_output @ np.swapaxes(matrix_b, -1, -2), matrix_a.shape),
      _unbroadcast(np.swapaxes(matrix_a, -1, -2) @ gradient_output, matrix_b.shape),
    )


def matmul(a: Tensor, b: Tensor):
  return MatMul.apply(a, b)


def _reduced_axes(ndim: int, axis) -> tuple[int, ...]:
  if axis is None:
    return tuple(range(ndim))
  axes = (axis,) if isinstance(axis, int) else tuple(axis)
  return tuple(a % ndim for a in axes)


class Sum(Function):
  """Reduction over `axis`; the gradient is ∂ℒ/∂y broadcast back over the reduced axes."""

  scale_by_count = False

  @classmethod
  def forward(cls, ctx, input_tensor, axis=None, keepdims: bool = False):
    ctx.input_shape = input_tensor.shape
    ctx.axes = _reduced_axes(input_tensor.ndim, axis)
    ctx.keepdims = keepdims
    total = input_tensor.sum(axis=ctx.axes, keepdims=keepdims)
    if cls.scale_by_count:
      total = total / ctx.count
    return total

  @property
  def count(self) -> int:
    return int(np.prod([self.input_shape[a] for a in self.axes]))

  def backward(self, gradient_output):
    if not self.keepdims:
      gradient_output = np.expand_dims(gradient_output, self.axes)
    gradient_input = np.broadcast_to(gradient_output, self.input_shape)
    return gradient_input / self.count if self.scale_by_count else gradient_input


class Mean(Sum):
  scale_by_count = True


def sum(x: Tensor, axis=None, keepdims: bool = False):
  return Sum.apply(x, axis, keepdims)


def mean(x: Tensor, axis=None, keepdims: bool = False):
  return Mean.apply(x, axis, keepdims)


class Conv2d(Function):
  """
  Performs a 2D convolution (cross-correlation) with stride, per-side padding
  and dilation.

  Y = W @ X_col + b

  ∂L/∂W = ∂L/∂Y @ X_col.T
  ∂L/∂b = sum(∂L/∂Y)
  ∂L/∂X_col = W.T @ ∂L/∂Y
  ∂L/∂X = scatter(∂L/∂X_col)
  """

  @staticmethod
  def forward(
    ctx,
    input_tensor,
    kernel_tensor,
    bias_tensor=None,
    stride=1,
    padding=0,
    dilation=1,
  ):
    batch_size, input_channels = input_tensor.shape[:2]
    output_channels, kernel_channels, kernel_height, kernel_width = kernel_tensor.shape
    if kernel_channels != input_channels:
      raise ValueError(
        f"Kernel expects {kernel_channels} input channels, got {input_channels}"
      )

    windows, output_height, output_width = _extract_windows(
      input_tensor, (kernel_height, kernel_width), stride, padding, dilation
    )
    patch_columns = windows.reshape(
      batch_size, input_channels * kernel_height * kernel_width, -1
    )
    output_matrix = np.matmul(kernel_tensor.reshape(output_channels, -1), patch_columns)
    if bias_tensor is not None:
      output_matrix += bias_tensor.reshape(1, -1, 1)

    ctx.stride, ctx.padding, ctx.dilation = stride, padding, dilation
    ctx.has_bias = bias_tensor is not None
    ctx.save_for_backward(
      patch_columns, kernel_tensor, input_tensor.shape, output_height, output_width
    )
    return output_matrix.reshape(
      batch_size, output_channels, output_height, output_width
    )

  def backward(self, gradient_output):
    patch_columns, kernel_tensor, input_shape, output_height, output_width = (
      self.saved_tensors
    )
    batch_size, input_channels = input_shape[:2]
    output_channels, _, kernel_height, kernel_width = kernel_tensor.shape
    gradient_output_reshaped = gradient_output.reshape(batch_size, output_channels, -1)

    gradient_kernel = np.einsum(
      "bop,bkp->ok", gradient_output_reshaped, patch_columns
    ).reshape(kernel_tensor.shape)
    gradient_columns = np.einsum(
      "ok,bop->bkp",
      kernel_tensor.reshape(output_channels, -1),
      gradient_output_reshaped,
    ).reshape(
      batch_size,
      input_channels,
      kernel_height,
      kernel_width,
      output_height,
      output_width,
    )
    gradient_input = _scatter_windows(
      gradient_columns, input_shape, self.stride, self.padding, self.dilation
    )
    if self.has_bias:
      return gradient_input, gradient_kernel, gradient_output_reshaped.sum(axis=(0, 2))
    return gradient_input, gradient_kernel


def conv2d(
  input_tensor: Tensor,
  kernel_tensor: Tensor,
  bias_tensor: Optional[Tensor] = None,
  stride=1,
  padding=0,
  dilation=1,
):
  return Conv2d.apply(
    input_tensor, kernel_tensor, bias_tensor, stride, padding, dilation
  )


class ZeroPad2d(Function):
  """
  Pads H and W with zeros: (top, bottom, left, right).
  Backward crops the incoming gradient back to the input window.
  """

  @staticmethod
  def forward(ctx, input_tensor, padding):
    top, bottom, left, right = _padding4(padding)
    ctx.window = (top, top + input_tensor.shape[2], left, left + input_tensor.shape[3])
    return np.pad(input_tensor, ((0, 0), (0, 0), (top, bottom), (left, right)))

  def backward(self, gradient_output):
    row_start, row_stop, column_start, column_stop = self.window
    return gradient_output[:, :, row_start:row_stop, column_start:column_stop]


def zero_pad2d(x: Tensor, padding):
  return ZeroPad2d.apply(x, padding)


class Upsample2d(Function):
  """
  Nearest-neighbour upsampling: every pixel becomes an s_h × s_w block.
  Backward sums each block.
  """

  @staticmethod
  def forward(ctx, input_tensor, size):
    scale_height, scale_width = _pair(size)
    ctx.scale = (scale_height, scale_width)
    return np.repeat(np.repeat(input_tensor, scale_height, axis=2), scale_width, axis=3)

  def backward(self, gradient_output):
    scale_height, scale_width = self.scale
    batch_size, channels, height, width = gradient_output.shape
    return gradient_output.reshape(
      batch_size,
      channels,
      height // scale_height,
      scale_height,
      width // scale_width,
      scale_width,
    ).sum(axis=(3, 5))


def upsample2d(x: Tensor, size=2):
  return Upsample2d.apply(x, size)
