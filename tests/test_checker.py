"""
Tests for:
∘ `check_gradients` – Verdicts, Fail-Fast vs Collect-All, Restoration
∘ `CheckConfiguration` – Range Validation, Config File Section
∘ Input Validation – Precision, Shapes, Stochastic Layers
∘ Parallel Sweep – Identical to Sequential
"""

import numpy as np
import pytest

from convgrad.core.builder import (
  ConvolutionSpec,
  DropoutSpec,
  NetworkSpec,
  OutputSpec,
  ZeroPaddingSpec,
  build_network,
)
from convgrad.core.regularization import Regularization
from convgrad.core.tensor import default_dtype
from convgrad.data.synthetic import iris_like, random_batch
from convgrad.gradcheck import (
  CheckConfiguration,
  ConfigurationError,
  EvaluationError,
  GradientCheckError,
  check_gradients,
)
from tests.utils import linear_identity_network

IRIS_CNN = NetworkSpec(
  input_shape=(1, 4, 1),
  layers=(ConvolutionSpec(6, kernel_size=1),),
  output=OutputSpec(3),
  activation="tanh",
)


def iris_batch(batch_size=150):
  features, labels = iris_like()
  return features[:batch_size].reshape(batch_size, 1, 4, 1), labels[:batch_size]


def l2_network(batch_size=5):
  spec = NetworkSpec(
    IRIS_CNN.input_shape,
    IRIS_CNN.layers,
    IRIS_CNN.output,
    activation="sigmoid",
    regularization=Regularization(l2=0.4),
  )
  return (build_network(spec),) + iris_batch(batch_size)


def omit_regularization_gradient(monkeypatch, network):
  monkeypatch.setattr(
    network, "regularization_gradient", lambda: np.zeros_like(network.arena)
  )


@pytest.mark.parametrize("eps", [1e-4, 1e-6, 1e-8])
def test_linear_identity_model_passes(eps):
  network, features, labels = linear_identity_network()
  result = check_gradients(network, features, labels, eps=eps)
  assert result.passed, result.report()
  assert result.checked == result.total == network.num_params()
  assert result.first_failure is None


def test_iris_cnn_passes():
  network = build_network(IRIS_CNN)
  features, labels = iris_batch()
  result = check_gradients(network, features, labels)
  assert result.passed, result.report()
  # conv 6 + 6, dense 24 · 3 + 3
  assert result.total == 87


def test_check_is_idempotent_and_restores_parameters():
  network = build_network(IRIS_CNN)
  features, labels = iris_batch(10)
  arena_before = network.arena.copy()
  features_before = features.copy()
  first = check_gradients(network, features, labels, check_input_gradients=True)
  second = check_gradients(network, features, labels, check_input_gradients=True)
  assert np.array_equal(network.arena, arena_before)
  assert np.array_equal(features, features_before)
  assert first.comparisons == second.comparisons


def test_parameters_restored_when_evaluation_fails(monkeypatch):
  network = build_network(IRIS_CNN)
  features, labels = iris_batch(10)
  arena_before = network.arena.copy()
  original_score = network.score
  calls = []

  def failing_score(*args):
    calls.append(1)
    if len(calls) == 7:
      raise FloatingPointError("overflow")
    return original_score(*args)

  monkeypatch.setattr(network, "score", failing_score)
  with pytest.raises(EvaluationError, match="overflow"):
    check_gradients(network, features, labels)
  assert np.array_equal(network.arena, arena_before)


def test_l2_regularization_passes():
  network, features, labels = l2_network()
  result = check_gradients(network, features, labels)
  assert result.passed, result.report()


def test_gradient_without_regularization_fails(monkeypatch):
  network, features, labels = l2_network()
  omit_regularization_gradient(monkeypatch, network)
  result = check_gradients(network, features, labels)
  assert not result.passed
  assert result.checked == result.total
  assert all(failure.name.endswith("weight") for failure in result.failures)
  assert "FAILED" in result.report()


def test_fail_fast_stops_at_first_failure(monkeypatch):
  network, features, labels = l2_network()
  omit_regularization_gradient(monkeypatch, network)
  collected = check_gradients(network, features, labels)
  fast = check_gradients(network, features, labels, exit_on_first_failure=True)
  assert len(collected.failures) > 1
  assert len(fast.failures) == 1
  assert fast.first_failure == collected.first_failure
  assert fast.checked == fast.first_failure + 1 < fast.total
  assert fast.comparisons == collected.comparisons[: fast.checked]


def test_zero_gradients_pass():
  # weights reading the zero border get exactly zero from both sides
  spec = NetworkSpec(
    input_shape=(1, 2, 2),
    layers=(ZeroPaddingSpec((1, 1, 1, 1)),),
    output=OutputSpec(3),
  )
  network = build_network(spec)
  features, labels = random_batch(4, (1, 2, 2), 3)
  result = check_gradients(network, features, labels, max_relative_error=1e-9)
  zero = [c for c in result.comparisons if c.analytic == 0.0 and c.numeric == 0.0]
  assert len(zero) == 12 * 3
  assert all(c.passed and c.relative_error == 0.0 for c in zero)


def test_input_gradients_are_checked():
  network = build_network(IRIS_CNN)
  features, labels = iris_batch(6)
  result = check_gradients(network, features, labels, check_input_gradients=True)
  assert result.passed, result.report()
  assert result.total == network.num_params() + features.size
  assert result.comparisons[-1].name == "input"


@pytest.mark.parametrize(
  "overrides",
  [
    {"eps": 0.0},
    {"eps": 0.2},
    {"max_relative_error": 0.0},
    {"max_relative_error": 0.3},
    {"min_absolute_error": -1e-9},
    {"relative_error_floor": 0.0},
    {"workers": 0},
    {"workers": 1.5},
    {"workers": None},
    {"eps": None},
    {"eps": "small"},
    {"eps": float("nan")},
    {"max_relative_error": float("inf")},
    {"min_absolute_error": float("nan")},
    {"relative_error_floor": float("nan")},
    {"print_results": True, "min_absolute_error": True},
    {"tolerance": 1e-3},
  ],
)
def test_invalid_configuration(monkeypatch, overrides):
  network, features, labels = linear_identity_network()

  def unexpected(*args, **kwargs):
    raise AssertionError("network evaluated before configuration was validated")

  monkeypatch.setattr(network, "score", unexpected)
  monkeypatch.setattr(network, "compute_gradient_and_score", unexpected)
  with pytest.raises(ConfigurationError):
    check_gradients(network, features, labels, **overrides)


def test_configuration_error_is_a_value_error():
  with pytest.raises(ValueError):
    CheckConfiguration(eps=1.0).validate()
  assert issubclass(ConfigurationError, GradientCheckError)
  assert issubclass(EvaluationError, ArithmeticError)


def test_validated_configuration_is_coerced():
  config = CheckConfiguration(eps="1e-6", min_absolute_error=0, workers=2.0).validate()
  assert config.eps == 1e-6 and isinstance(config.eps, float)
  assert isinstance(config.min_absolute_error, float)
  assert config.workers == 2 and isinstance(config.workers, int)


def test_single_precision_is_rejected():
  with default_dtype(np.float32):
    network = build_network(IRIS_CNN)
  features, labels = iris_batch(4)
  with pytest.raises(ConfigurationError, match="double precision"):
    check_gradients(network, features, labels)


def test_single_precision_default_is_rejected():
  network = build_network(IRIS_CNN)
  features, labels = iris_batch(4)
  with default_dtype(np.float32):
    with pytest.raises(ConfigurationError, match="double precision"):
      check_gradients(network, features, labels)


@pytest.mark.parametrize(
  "features_shape,labels_shape,match",
  [
    ((4, 1, 4, 1), (5, 3), "Batch size"),
    ((4, 1, 4, 1), (4, 2), "columns"),
    ((4, 1, 5, 1), (4, 3), "expects examples"),
    ((4, 1, 4, 1), (4,), "labels"),
  ],
)
def test_shape_mismatch(features_shape, labels_shape, match):
  network = build_network(IRIS_CNN)
  with pytest.raises(ConfigurationError, match=match):
    check_gradients(network, np.random.rand(*features_shape), np.zeros(labels_shape))


def test_flat_features_are_accepted():
  network = build_network(IRIS_CNN)
  features, labels = iris_batch(5)
  result = check_gradients(network, features.reshape(5, 4), labels)
  assert result.passed, result.report()


def test_non_finite_loss():
  network = build_network(IRIS_CNN)
  features, labels = iris_batch(4)
  features[0, 0, 0, 0] = np.nan
  with pytest.raises(EvaluationError, match="not finite"):
    check_gradients(network, features, labels)


def test_stochastic_layers_are_rejected():
  spec = NetworkSpec(
    input_shape=(1, 4, 1),
    layers=(ConvolutionSpec(6, kernel_size=1), DropoutSpec(0.5)),
    output=OutputSpec(3),
  )
  network = build_network(spec)
  features, labels = iris_batch(4)
  with pytest.raises(ConfigurationError, match="stochastic"):
    check_gradients(network, features, labels)
  network.set_to_evaluation()
  assert check_gradients(network, features, labels).passed


@pytest.mark.parametrize("workers", [2, 3, 8])
def test_parallel_sweep_matches_sequential(workers):
  network = build_network(IRIS_CNN)
  features, labels = iris_batch(8)
  sequential = check_gradients(network, features, labels, check_input_gradients=True)
  parallel = check_gradients(
    network, features, labels, check_input_gradients=True, workers=workers
  )
  assert parallel.comparisons == sequential.comparisons
  assert parallel.passed


@pytest.mark.parametrize("workers", [2, 4])
def test_parallel_fail_fast_matches_sequential(monkeypatch, workers):
  network, features, labels = l2_network()
  omit_regularization_gradient(monkeypatch, network)
  sequential = check_gradients(network, features, labels, exit_on_first_failure=True)
  # clones keep the patched method, so every worker sees the same gradient
  parallel = check_gradients(
    network, features, labels, exit_on_first_failure=True, workers=workers
  )
  assert parallel.comparisons == sequential.comparisons
  assert parallel.first_failure == sequential.first_failure


def test_print_results_logs_every_index(capsys, tmp_path):
  network, features, labels = linear_identity_network(2, 1, 3)
  log_file = tmp_path / "check.log"
  result = check_gradients(
    network, features, labels, print_results=True, log_file=str(log_file)
  )
  lines = capsys.readouterr().out.strip().splitlines()
  assert len(lines) == result.total + 1
  assert "Param 0 (output.dense.weight) passed" in lines[0]
  assert lines[-1].endswith(f"{result.total} params checked, {result.total} passed, 0 failed. Largest relative error = {result.max_relative_error:.6g}")
  assert log_file.read_text().strip().splitlines() == lines


def test_configuration_from_config_section():
  config = CheckConfiguration.from_config(
    {
      "gradient_check": {
        "eps": 1e-5,
        "max_relative_error": 1e-2,
        "exit_on_first_failure": True,
        "workers": 2,
        "comment": "ignored",
      }
    }
  )
  assert config == CheckConfiguration(
    eps=1e-5, max_relative_error=1e-2, exit_on_first_failure=True, workers=2
  )
  assert CheckConfiguration.from_config(None) == CheckConfiguration()
