"""
Pooling (subsampling) implemented via numpy's stride-tricks.

∘ max    –  yᵢ = max over the window
∘ avg    –  yᵢ = 1⁄(kh·kw) ∑ window   (padding counts as zeros)
∘ pnorm  –  yᵢ = (∑ |x|ᵖ)^(1⁄p)

Kernel, stride, per-side padding and dilation share the geometry of `ops.conv2d`:
Hₒ = ⌊(H + p_top + p_bottom − (d·(k−1)+1)) / s⌋ + 1 (same for W).

Backward builds a gradient for every window element and scatters it back
with the same adjoint conv2d uses, so all three pooling types share one path.
"""

import numpy as np

from .modules import Module, resolve_padding, windowed_output_shape
from .ops import Function, _extract_windows, _pair, _scatter_windows

POOLING_TYPES = ("max", "avg", "pnorm")


class Pool2dOp(Function):
  @staticmethod
  def forward(ctx, *args, **kwargs):
    input_tensor, pooling_type, kernel_size, stride, padding, dilation, p = args
    if not np.issubdtype(input_tensor.dtype, np.floating):
      input_tensor = input_tensor.astype(np.float64)

    kernel_height, kernel_width = _pair(kernel_size)
    pad_value = np.finfo(input_tensor.dtype).min if pooling_type == "max" else 0.0
    windows, output_height, output_width = _extract_windows(
      input_tensor, (kernel_height, kernel_width), stride, padding, dilation, pad_value
    )
    batch_size, channels = input_tensor.shape[:2]

    ctx.geometry = (stride, padding, dilation)
    ctx.pooling_type = pooling_type
    ctx.input_shape = input_tensor.shape

    if pooling_type == "max":
      flat_windows = windows.reshape(
        batch_size, channels, kernel_height * kernel_width, output_height, output_width
      )
      max_indices = flat_windows.argmax(axis=2)
      ctx.save_for_backward(max_indices, kernel_height, kernel_width)
      return np.take_along_axis(flat_windows, max_indices[:, :, None], axis=2)[:, :, 0]

    if pooling_type == "avg":
      ctx.save_for_backward(kernel_height, kernel_width)
      return windows.mean(axis=(2, 3))

    if pooling_type == "pnorm":
      absolute_powers = np.abs(windows) ** p
      norm = absolute_powers.sum(axis=(2, 3)) ** (1.0 / p)
      ctx.save_for_backward(np.ascontiguousarray(windows), norm, p)
      return norm

    raise ValueError(
      f"Unknown pooling type '{pooling_type}'. Expected one of {POOLING_TYPES}"
    )

  def backward(self, gradient_output):
    stride, padding, dilation = self.geometry
    batch_size, channels, output_height, output_width = gradient_output.shape

    if self.pooling_type == "max":
      max_indices, kernel_height, kernel_width = self.saved_tensors
      window_gradients = np.zeros(
        (batch_size, channels, kernel_height * kernel_width, output_height, output_width),
        dtype=gradient_output.dtype,
      )
      np.put_along_axis(
        window_gradients, max_indices[:, :, None], gradient_output[:, :, None], axis=2
      )
      window_gradients = window_gradients.reshape(
        batch_size, channels, kernel_height, kernel_width, output_height, output_width
      )
    elif self.pooling_type == "avg":
      kernel_height, kernel_width = self.saved_tensors
      window_gradients = np.broadcast_to(
        gradient_output[:, :, None, None] / (kernel_height * kernel_width),
        (batch_size, channels, kernel_height, kernel_width, output_height, output_width),
      )
    else:
      # ∂y/∂x = sgn(x)·|x|^(p−1) · y^(1−p)
      windows, norm, p = self.saved_tensors
      safe_norm = np.where(norm > 0, norm, 1.0)
      scale = np.where(norm > 0, gradient_output * safe_norm ** (1.0 - p), 0.0)
      window_gradients = (
        np.sign(windows) * np.abs(windows) ** (p - 1) * scale[:, :, None, None]
      )

    return _scatter_windows(
      window_gradients, self.input_shape, stride, padding, dilation
    )


def pool2d(
  input_tensor,
  pooling_type="max",
  kernel_size=2,
  stride=2,
  padding=0,
  dilation=1,
  p=2,
):
  return Pool2dOp.apply(
    input_tensor, pooling_type, kernel_size, stride, padding, dilation, p
  )


def max_pool2d(input_tensor, kernel_size=2, stride=2, padding=0, dilation=1):
  return pool2d(input_tensor, "max", kernel_size, stride, padding, dilation)


def avg_pool2d(input_tensor, kernel_size=2, stride=2, padding=0, dilation=1):
  return pool2d(input_tensor, "avg", kernel_size, stride, padding, dilation)


def pnorm_pool2d(input_tensor, p=2, kernel_size=2, stride=2, padding=0, dilation=1):
  return pool2d(input_tensor, "pnorm", kernel_size, stride, padding, dilation, p)


class Subsampling2D(Module):
  """
  Pooling layer. With `convolution_mode="same"` the padding is derived from
  the input size exactly as `Conv2D` does; max pooling pads with the dtype's
  most negative value so padding never wins a window.
  """

  def __init__(
    self,
    pooling_type: str = "max",
    kernel_size=2,
    stride=2,
    padding=0,
    dilation=1,
    pnorm: int = 2,
    convolution_mode: str = "truncate",
  ):
    if pooling_type not in POOLING_TYPES:
      raise ValueError(
        f"Unknown pooling type '{pooling_type}'. Expected one of {POOLING_TYPES}"
      )
    if pooling_type == "pnorm" and pnorm < 1:
      raise ValueError(f"p-norm pooling needs p >= 1, got {pnorm}")
    self.pooling_type = pooling_type
    self.kernel_size = _pair(kernel_size)
    self.stride = _pair(stride)
    self.padding = padding
    self.dilation = _pair(dilation)
    self.pnorm = pnorm
    self.convolution_mode = convolution_mode

  def _padding_for(self, spatial_shape):
    return resolve_padding(
      self.convolution_mode,
      spatial_shape,
      self.kernel_size,
      self.stride,
      self.dilation,
      self.padding,
    )

  def output_shape(self, input_shape):
    channels, *spatial_shape = input_shape
    padding = self._padding_for(spatial_shape)
    return (channels,) + windowed_output_shape(
      spatial_shape, self.kernel_size, self.stride, padding, self.dilation
    )

  def __call__(self, input_tensor):
    return pool2d(
      input_tensor,
      self.pooling_type,
      self.kernel_size,
      self.stride,
      self._padding_for(input_tensor.shape[2:]),
      self.dilation,
      self.pnorm,
    )
