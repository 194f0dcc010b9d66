"""
Network configurations as data.

A `NetworkSpec` is an input shape, a tuple of layer specs and an output spec.
Each layer spec is a small frozen dataclass (a tagged variant); `build_network`
walks them, tracks the activation shape and instantiates the modules, so a
test matrix can enumerate configurations instead of writing builder code.

    spec = NetworkSpec(
      input_shape=(1, 5, 5),
      layers=(ConvolutionSpec(3, kernel_size=2, stride=1), SubsamplingSpec("avg", 2, 1)),
      output=OutputSpec(4),
      activation="tanh",
    )
    network = build_network(spec)
"""

from dataclasses import dataclass, field
from typing import Optional, Union

import numpy as np

from .modules import Activation, Conv2D, Dropout, Module, Upsampling2D, ZeroPadding2D
from .network import Network, OutputLayer
from .pool import Subsampling2D
from .regularization import Regularization


@dataclass(frozen=True)
class ConvolutionSpec:
  out_channels: int
  kernel_size: Union[int, tuple[int, int]] = 1
  stride: Union[int, tuple[int, int]] = 1
  padding: Union[int, tuple[int, ...]] = 0
  dilation: Union[int, tuple[int, int]] = 1
  activation: Optional[str] = None
  convolution_mode: Optional[str] = None
  bias: bool = True


@dataclass(frozen=True)
class SubsamplingSpec:
  pooling_type: str = "max"
  kernel_size: Union[int, tuple[int, int]] = 2
  stride: Union[int, tuple[int, int]] = 2
  padding: Union[int, tuple[int, ...]] = 0
  dilation: Union[int, tuple[int, int]] = 1
  pnorm: int = 2
  convolution_mode: Optional[str] = None


@dataclass(frozen=True)
class UpsamplingSpec:
  size: Union[int, tuple[int, int]] = 2


@dataclass(frozen=True)
class ZeroPaddingSpec:
  padding: tuple[int, int, int, int] = (0, 0, 0, 0)


@dataclass(frozen=True)
class DropoutSpec:
  rate: float = 0.5


@dataclass(frozen=True)
class OutputSpec:
  out_features: int
  activation: str = "softmax"
  loss: str = "negative_log_likelihood"


LayerSpec = Union[ConvolutionSpec, SubsamplingSpec, UpsamplingSpec, ZeroPaddingSpec, DropoutSpec]


@dataclass(frozen=True)
class NetworkSpec:
  input_shape: tuple[int, int, int]
  layers: tuple[LayerSpec, ...]
  output: OutputSpec
  activation: str = "sigmoid"
  convolution_mode: str = "truncate"
  weight_init: str = "xavier"
  regularization: Regularization = field(default_factory=Regularization)
  seed: Optional[int] = None

  def describe(self) -> str:
    layer_names = " → ".join(type(layer).__name__.replace("Spec", "") for layer in self.layers)
    return (
      f"input={self.input_shape}, layers=[{layer_names} → Output({self.output.out_features})], "
      f"activation={self.activation}, output={self.output.activation}/{self.output.loss}, "
      f"mode={self.convolution_mode}"
    )


def _build_layer(layer_spec: LayerSpec, shape, spec: NetworkSpec) -> list[Module]:
  if isinstance(layer_spec, ConvolutionSpec):
    convolution = Conv2D(
      shape[0],
      layer_spec.out_channels,
      layer_spec.kernel_size,
      stride=layer_spec.stride,
      padding=layer_spec.padding,
      dilation=layer_spec.dilation,
      bias=layer_spec.bias,
      convolution_mode=layer_spec.convolution_mode or spec.convolution_mode,
      weight_init=spec.weight_init,
    )
    return [convolution, Activation(layer_spec.activation or spec.activation)]
  if isinstance(layer_spec, SubsamplingSpec):
    return [
      Subsampling2D(
        layer_spec.pooling_type,
        layer_spec.kernel_size,
        layer_spec.stride,
        layer_spec.padding,
        layer_spec.dilation,
        layer_spec.pnorm,
        layer_spec.convolution_mode or spec.convolution_mode,
      )
    ]
  if isinstance(layer_spec, UpsamplingSpec):
    return [Upsampling2D(layer_spec.size)]
  if isinstance(layer_spec, ZeroPaddingSpec):
    return [ZeroPadding2D(layer_spec.padding)]
  if isinstance(layer_spec, DropoutSpec):
    return [Dropout(layer_spec.rate)]
  raise TypeError(f"Unsupported layer spec: {layer_spec!r}")


def build_network(spec: NetworkSpec) -> Network:
  """
  Instantiate `spec`. Parameters are drawn from the global NumPy RNG, which is
  reseeded first when `spec.seed` is set; their dtype is the current default.
  """
  if spec.seed is not None:
    np.random.seed(spec.seed)

  shape = tuple(spec.input_shape)
  modules: list[Module] = []
  for layer_spec in spec.layers:
    for module in _build_layer(layer_spec, shape, spec):
      shape = module.output_shape(shape)
      if min(shape) <= 0:
        raise ValueError(
          f"{type(layer_spec).__name__} produces an empty activation {shape}"
        )
      modules.append(module)

  output = OutputLayer(
    int(np.prod(shape)),
    spec.output.out_features,
    activation=spec.output.activation,
    loss=spec.output.loss,
    weight_init=spec.weight_init,
  )
  return Network(modules, output, spec.input_shape, spec.regularization)


def activation_shapes(spec: NetworkSpec) -> list[tuple[int, ...]]:
  """Per-example activation shape after every layer spec, input first."""
  network = build_network(spec)
  shapes = [tuple(spec.input_shape)]
  shape = shapes[0]
  for module in network.layers:
    shape = module.output_shape(shape)
    if not isinstance(module, Activation):
      shapes.append(shape)
  return shapes


LAYER_SPEC_TYPES = {
  "convolution": ConvolutionSpec,
  "subsampling": SubsamplingSpec,
  "upsampling": UpsamplingSpec,
  "zero_padding": ZeroPaddingSpec,
  "dropout": DropoutSpec,
}


def _tupled(values: dict) -> dict:
  return {key: tuple(value) if isinstance(value, list) else value for key, value in values.items()}


def spec_from_config(section: dict) -> NetworkSpec:
  """
  NetworkSpec from a JSON scenario, e.g.

    {"input_shape": [1, 5, 5],
     "layers": [{"type": "convolution", "out_channels": 3, "kernel_size": 2}],
     "output": {"out_features": 4}}
  """
  layers = []
  for layer in section["layers"]:
    options = dict(layer)
    layer_type = options.pop("type")
    if layer_type not in LAYER_SPEC_TYPES:
      raise ValueError(
        f"Unknown layer type '{layer_type}'. Expected one of {sorted(LAYER_SPEC_TYPES)}"
      )
    layers.append(LAYER_SPEC_TYPES[layer_type](**_tupled(options)))

  options = {
    key: section[key]
    for key in ("activation", "convolution_mode", "weight_init", "seed")
    if key in section
  }
  return NetworkSpec(
    input_shape=tuple(section["input_shape"]),
    layers=tuple(layers),
    output=OutputSpec(**section["output"]),
    regularization=Regularization.from_config(section.get("regularization")),
    **options,
  )
