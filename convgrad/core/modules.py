"""
NN layer functionalities.

∘ Module          –  PyTorch-style base: tracks sub-modules, parameters, toggles train/eval, supports state-dict I/O.
∘ Linear          –  y = x W + b.
∘ Conv2D          –  NCHW convolution wrapped around `ops.conv2d`, `truncate` or `same` mode.
∘ ZeroPadding2D   –  fixed zero border.
∘ Upsampling2D    –  nearest-neighbour repeat.
∘ Activation      –  thin wrapper over the element-wise ops.
∘ Dropout         –  inverted dropout; stochastic only while training.
∘ Sequential      –  for-loop composition.

Every layer also answers `output_shape(input_shape)` for a single example
(no batch axis) so networks can be assembled without a dry run.
"""
from typing import Iterable

import numpy as np

from ..utils.common import log_message
from .ops import (
  _pair,
  _padding4,
  add,
  conv2d,
  get_activation,
  matmul,
  mul,
  output_length,
  reshape,
  upsample2d,
  zero_pad2d,
)
from .tensor import Tensor, get_default_dtype

CONVOLUTION_MODES = ("truncate", "same")
WEIGHT_INITS = ("he", "xavier", "normal")


def initialize_weights(shape, fan_in: int, fan_out: int, scheme: str = "he"):
  """
  Draw a weight array from the global NumPy RNG.

  ∘ he      W ~ N(0, √(2 / fan_in))
  ∘ xavier  W ~ N(0, √(2 / (fan_in + fan_out)))
  ∘ normal  W ~ N(0, 1)
  """
  if scheme == "he":
    scale = np.sqrt(2.0 / fan_in)
  elif scheme == "xavier":
    scale = np.sqrt(2.0 / (fan_in + fan_out))
  elif scheme == "normal":
    scale = 1.0
  else:
    raise ValueError(f"Unknown weight init '{scheme}'. Expected one of {WEIGHT_INITS}")
  return (np.random.randn(*shape) * scale).astype(get_default_dtype())


def same_padding(size: int, kernel: int, stride: int, dilation: int) -> tuple[int, int]:
  """
  Padding that makes the output ⌈size / stride⌉ long.
  Any odd remainder goes to the bottom/right side.
  """
  output_size = -(-size // stride)
  effective_kernel = dilation * (kernel - 1) + 1
  total = max((output_size - 1) * stride + effective_kernel - size, 0)
  return total // 2, total - total // 2


def resolve_padding(mode, spatial_shape, kernel_size, stride, dilation, padding):
  if mode == "truncate":
    return _padding4(padding)
  if mode == "same":
    kernel_height, kernel_width = _pair(kernel_size)
    stride_height, stride_width = _pair(stride)
    dilation_height, dilation_width = _pair(dilation)
    top, bottom = same_padding(
      spatial_shape[0], kernel_height, stride_height, dilation_height
    )
    left, right = same_padding(
      spatial_shape[1], kernel_width, stride_width, dilation_width
    )
    return top, bottom, left, right
  raise ValueError(
    f"Unknown convolution mode '{mode}'. Expected one of {CONVOLUTION_MODES}"
  )


def windowed_output_shape(spatial_shape, kernel_size, stride, padding, dilation):
  kernel_height, kernel_width = _pair(kernel_size)
  stride_height, stride_width = _pair(stride)
  dilation_height, dilation_width = _pair(dilation)
  top, bottom, left, right = padding
  return (
    output_length(spatial_shape[0], kernel_height, stride_height, top, bottom, dilation_height),
    output_length(spatial_shape[1], kernel_width, stride_width, left, right, dilation_width),
  )


class Module:
  training: bool = True

  def named_parameters(self, prefix: str = "") -> Iterable[tuple[str, Tensor]]:
    for name, attr in self.__dict__.items():
      if name.startswith("_"):
        continue

      full_name = f"{prefix}.{name}" if prefix else name
      if isinstance(attr, Tensor):
        yield full_name, attr
      elif isinstance(attr, Module):
        yield from attr.named_parameters(full_name)
      elif isinstance(attr, (list, tuple)):
        for i, elem in enumerate(attr):
          if isinstance(elem, Module):
            yield from elem.named_parameters(f"{full_name}.{i}")

  def parameters(self) -> Iterable[Tensor]:
    for _, param in self.named_parameters():
      yield param

  def modules(self) -> Iterable["Module"]:
    yield self
    for attr in self.__dict__.values():
      if isinstance(attr, Module):
        yield from attr.modules()
      elif isinstance(attr, (list, tuple)):
        for elem in attr:
          if isinstance(elem, Module):
            yield from elem.modules()

  def num_params(self) -> int:
    return int(np.sum([param.data.size for param in self.parameters()], dtype=np.int64))

  def load_state_dict(self, state_dict: dict[str, np.ndarray]):
    # In-place copy keeps parameters that alias a shared buffer intact.
    for name, param in self.named_parameters():
      if name in state_dict:
        param.data[...] = state_dict[name]
      else:
        log_message(f"Missing key in state_dict: {name}", "WARN", indent=1)

  def state_dict(self) -> dict[str, np.ndarray]:
    return {name: param.data.copy() for name, param in self.named_parameters()}

  def set_to_training(self, mode: bool = True):
    for module in self.modules():
      module.training = mode
    return self

  def set_to_evaluation(self):
    return self.set_to_training(False)

  def is_stochastic(self) -> bool:
    return False

  def zero_grad(self):
    for p in self.parameters():
      p.grad = None

  def output_shape(self, input_shape: tuple[int, ...]) -> tuple[int, ...]:
    return input_shape

  def __call__(self, *args, **kwargs):
    raise NotImplementedError


class Linear(Module):
  """
  Applies a linear transformation to the incoming data: y = x W + b
  """

  def __init__(
    self,
    in_features: int,
    out_features: int,
    bias: bool = True,
    weight_init: str = "he",
  ):
    self.in_features = in_features
    self.out_features = out_features
    self.weight = Tensor(
      initialize_weights((in_features, out_features), in_features, out_features, weight_init),
      True,
    )
    self.bias = (
      Tensor(np.zeros(out_features, dtype=get_default_dtype()), True) if bias else None
    )

  def output_shape(self, input_shape):
    if input_shape != (self.in_features,):
      raise ValueError(f"Linear expects ({self.in_features},), got {input_shape}")
    return (self.out_features,)

  def __call__(self, x: Tensor) -> Tensor:
    out = matmul(x, self.weight)
    if self.bias is not None:
      out = add(out, self.bias)
    return out


class Conv2D(Module):
  """
  Applies a 2D convolution over an input signal composed of several input
  planes.

  `convolution_mode="same"` ignores `padding` and pads so that the output is
  ⌈H / stride⌉ × ⌈W / stride⌉; `"truncate"` uses `padding` as given and drops
  whatever does not fit a whole window.
  """

  def __init__(
    self,
    in_channels: int,
    out_channels: int,
    kernel_size,
    stride=1,
    padding=0,
    dilation=1,
    bias: bool = True,
    convolution_mode: str = "truncate",
    weight_init: str = "he",
  ):
    if convolution_mode not in CONVOLUTION_MODES:
      raise ValueError(
        f"Unknown convolution mode '{convolution_mode}'. Expected one of {CONVOLUTION_MODES}"
      )
    kernel_height, kernel_width = _pair(kernel_size)
    fan_in = in_channels * kernel_height * kernel_width
    fan_out = out_channels * kernel_height * kernel_width
    self.weight = Tensor(
      initialize_weights(
        (out_channels, in_channels, kernel_height, kernel_width),
        fan_in,
        fan_out,
        weight_init,
      ),
      True,
    )
    self.bias = (
      Tensor(np.zeros(out_channels, dtype=get_default_dtype()), True) if bias else None
    )
    self.in_channels = in_channels
    self.out_channels = out_channels
    self.kernel_size = (kernel_height, kernel_width)
    self.stride = _pair(stride)
    self.padding = padding
    self.dilation = _pair(dilation)
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
    if channels != self.in_channels:
      raise ValueError(f"Conv2D expects {self.in_channels} channels, got {channels}")
    padding = self._padding_for(spatial_shape)
    return (self.out_channels,) + windowed_output_shape(
      spatial_shape, self.kernel_size, self.stride, padding, self.dilation
    )

  def __call__(self, input: Tensor):
    padding = self._padding_for(input.shape[2:])
    return conv2d(
      input, self.weight, self.bias, self.stride, padding, self.dilation
    )


class ZeroPadding2D(Module):
  def __init__(self, padding):
    self.padding = _padding4(padding)

  def output_shape(self, input_shape):
    channels, height, width = input_shape
    top, bottom, left, right = self.padding
    return channels, height + top + bottom, width + left + right

  def __call__(self, x: Tensor) -> Tensor:
    return zero_pad2d(x, self.padding)


class Upsampling2D(Module):
  def __init__(self, size=2):
    self.size = _pair(size)

  def output_shape(self, input_shape):
    channels, height, width = input_shape
    return channels, height * self.size[0], width * self.size[1]

  def __call__(self, x: Tensor) -> Tensor:
    return upsample2d(x, self.size)


class Activation(Module):
  def __init__(self, name: str = "relu"):
    self.name = name
    self._function = get_activation(name)

  def __call__(self, x: Tensor) -> Tensor:
    return self._function(x)


class Flatten(Module):
  """(N, C, H, W) → (N, C·H·W); rank-2 inputs pass through."""

  def output_shape(self, input_shape):
    return (int(np.prod(input_shape)),)

  def __call__(self, x: Tensor) -> Tensor:
    if len(x.shape) == 2:
      return x
    return reshape(x, (x.shape[0], -1))


class Dropout(Module):
  """
  Inverted dropout: while training, zero each activation with probability
  `rate` and scale the survivors by 1 ⁄ (1 − rate).
  """

  def __init__(self, rate: float = 0.5):
    if not 0.0 <= rate < 1.0:
      raise ValueError(f"Dropout rate must be in [0, 1), got {rate}")
    self.rate = rate

  def is_stochastic(self) -> bool:
    return self.training and self.rate > 0.0

  def __call__(self, x: Tensor) -> Tensor:
    if not self.is_stochastic():
      return x
    keep = (np.random.rand(*x.shape) >= self.rate) / (1.0 - self.rate)
    return mul(x, Tensor(keep))


class Sequential(Module):
  def __init__(self, *modules: Module | Iterable[Module]):
    flat: list[Module] = []
    for m in modules:
      if isinstance(m, (list, tuple)):
        flat.extend(m)
      else:
        flat.append(m)
    self.layers: list[Module] = flat

  def output_shape(self, input_shape):
    for layer in self.layers:
      input_shape = layer.output_shape(input_shape)
    return input_shape

  def __call__(self, x: Tensor) -> Tensor:
    for layer in self.layers:
      x = layer(x)
    return x
