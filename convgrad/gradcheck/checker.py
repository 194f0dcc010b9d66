"""
Gradient checker: analytic gradient once, then one central difference per
trainable scalar (and per input scalar in input mode), compared index by
index.

Sequence
∘ validate thresholds, dtype and shapes          →  ConfigurationError
∘ L, ∇L ← one forward + backward pass
∘ for i in 0 … N−1: nᵢ ← (L(θ+εeᵢ) − L(θ−εeᵢ)) ⁄ 2ε, compare with ∇Lᵢ
∘ fold into a ComparisonResult

Parallel mode splits the indices into contiguous blocks; each worker owns a
clone of the network with its own arena, so no perturbation is ever visible
to another worker. Merged results are identical to a sequential run.
"""

import dataclasses
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

import numpy as np
from tqdm import tqdm

from ..core.tensor import get_default_dtype
from ..utils.common import log_message
from .accessor import ParameterAccessor
from .comparator import Comparator, ComparisonResult, IndexComparison
from .errors import ConfigurationError
from .estimator import FiniteDifferenceEstimator
from .evaluator import LossGradientEvaluator

MAX_EPS = 0.1
MAX_RELATIVE_ERROR = 0.25
REQUIRED_DTYPE = np.dtype(np.float64)


def _finite(name: str, value) -> float:
  if isinstance(value, bool):
    raise ConfigurationError(f"{name} must be a number, got {value!r}")
  try:
    number = float(value)
  except (TypeError, ValueError):
    raise ConfigurationError(f"{name} must be a number, got {value!r}") from None
  if not math.isfinite(number):
    raise ConfigurationError(f"{name} must be finite, got {value!r}")
  return number


@dataclass(frozen=True)
class CheckConfiguration:
  eps: float = 1e-6
  max_relative_error: float = 1e-3
  min_absolute_error: float = 1e-8
  relative_error_floor: float = 1e-12
  print_results: bool = False
  exit_on_first_failure: bool = False
  check_input_gradients: bool = False
  workers: int = 1
  progress: bool = False
  log_file: Optional[str] = None

  def validate(self) -> "CheckConfiguration":
    """Checked copy with thresholds coerced to float and `workers` to int."""
    eps = _finite("eps", self.eps)
    max_relative_error = _finite("max_relative_error", self.max_relative_error)
    min_absolute_error = _finite("min_absolute_error", self.min_absolute_error)
    relative_error_floor = _finite("relative_error_floor", self.relative_error_floor)
    if not 0.0 < eps <= MAX_EPS:
      raise ConfigurationError(f"eps must be in (0, {MAX_EPS}], got {eps}")
    if not 0.0 < max_relative_error <= MAX_RELATIVE_ERROR:
      raise ConfigurationError(
        f"max_relative_error must be in (0, {MAX_RELATIVE_ERROR}], "
        f"got {max_relative_error}"
      )
    if min_absolute_error < 0.0:
      raise ConfigurationError(f"min_absolute_error must be >= 0, got {min_absolute_error}")
    if relative_error_floor <= 0.0:
      raise ConfigurationError(
        f"relative_error_floor must be > 0, got {relative_error_floor}"
      )
    workers = _finite("workers", self.workers)
    if not workers.is_integer() or workers < 1:
      raise ConfigurationError(f"workers must be a positive integer, got {self.workers}")
    return dataclasses.replace(
      self,
      eps=eps,
      max_relative_error=max_relative_error,
      min_absolute_error=min_absolute_error,
      relative_error_floor=relative_error_floor,
      workers=int(workers),
    )

  def replace(self, **overrides) -> "CheckConfiguration":
    known = {field.name for field in dataclasses.fields(self)}
    unknown = sorted(set(overrides) - known)
    if unknown:
      raise ConfigurationError(f"Unknown gradient check options: {unknown}")
    return dataclasses.replace(self, **overrides)

  @classmethod
  def from_config(cls, config: dict | None) -> "CheckConfiguration":
    """Build from the `gradient_check` section of a loaded config.jsonc."""
    section = (config or {}).get("gradient_check", {})
    known = {field.name for field in dataclasses.fields(cls)}
    return cls(**{key: value for key, value in section.items() if key in known})


class GradientChecker:
  def __init__(self, network, features, labels, config: Optional[CheckConfiguration] = None):
    self.config = (config or CheckConfiguration()).validate()
    self.network = network
    self._validate_inputs(np.asarray(features), np.asarray(labels))
    self.evaluator = LossGradientEvaluator(
      network, features, labels, include_input=self.config.check_input_gradients
    )
    self.accessor = self._accessor_for(network, self.evaluator)
    self.comparator = Comparator(
      self.config.max_relative_error,
      self.config.min_absolute_error,
      self.config.relative_error_floor,
    )

  def _validate_inputs(self, features: np.ndarray, labels: np.ndarray) -> None:
    arena_dtype = self.network.arena.dtype
    if arena_dtype != REQUIRED_DTYPE or get_default_dtype() != REQUIRED_DTYPE:
      raise ConfigurationError(
        f"Gradient checks need double precision: parameters are {arena_dtype}, "
        f"default dtype is {get_default_dtype()}. Build the network under "
        "default_dtype(np.float64)"
      )
    if features.ndim < 2 or labels.ndim != 2:
      raise ConfigurationError(
        f"Expected batched features and (batch, classes) labels, "
        f"got {features.shape} and {labels.shape}"
      )
    if features.shape[0] != labels.shape[0]:
      raise ConfigurationError(
        f"Batch size mismatch: {features.shape[0]} examples, {labels.shape[0]} labels"
      )
    try:
      self.network.check_input(features)
    except ValueError as error:
      raise ConfigurationError(str(error)) from error
    if labels.shape[1] != self.network.output_size:
      raise ConfigurationError(
        f"Labels have {labels.shape[1]} columns, network has {self.network.output_size} outputs"
      )

  def _accessor_for(self, network, evaluator: LossGradientEvaluator) -> ParameterAccessor:
    input_array = evaluator.input_array if self.config.check_input_gradients else None
    return ParameterAccessor.for_network(network, input_array)

  def _log(self, message: str, level: str = "INFO", indent: int = 0) -> None:
    log_message(message, level, indent, log_file=self.config.log_file)

  def run(self) -> ComparisonResult:
    _, analytic_gradient = self.evaluator.loss_and_gradient()
    total = self.accessor.size
    if analytic_gradient.size != total:
      raise ConfigurationError(
        f"Gradient has {analytic_gradient.size} entries for {total} scalars"
      )

    with tqdm(
      total=total,
      desc="Gradient check",
      disable=not self.config.progress,
      leave=False,
      bar_format="  {l_bar}{bar}{r_bar}",
    ) as progress_bar:
      if self.config.workers > 1 and total > 1:
        comparisons = self._parallel_sweep(analytic_gradient, progress_bar)
        if self.config.print_results:
          for comparison in comparisons:
            self._log(comparison.describe(), indent=1)
      else:
        comparisons = self._sequential_sweep(analytic_gradient, progress_bar)

    result = self.comparator.summarize(comparisons, total)
    if self.config.print_results:
      self._log(result.summary(), "INFO" if result.passed else "ERROR")
    return result

  def _sequential_sweep(self, analytic_gradient, progress_bar) -> list[IndexComparison]:
    estimator = FiniteDifferenceEstimator(self.accessor, self.evaluator.loss, self.config.eps)
    comparisons = []
    for record in estimator.sweep(range(self.accessor.size)):
      comparison = self.comparator.compare(
        record.index,
        self.accessor.name_of(record.index),
        analytic_gradient[record.index],
        record.numeric_gradient,
      )
      comparisons.append(comparison)
      progress_bar.update(1)
      if self.config.print_results:
        self._log(comparison.describe(), indent=1)
      if not comparison.passed and self.config.exit_on_first_failure:
        break
    return comparisons

  def _parallel_sweep(self, analytic_gradient, progress_bar) -> list[IndexComparison]:
    total = self.accessor.size
    workers = min(self.config.workers, total)
    blocks = [
      block for block in np.array_split(np.arange(total), workers) if block.size
    ]
    fail_fast = self.config.exit_on_first_failure
    failure_seen = threading.Event()
    abort = threading.Event()
    lock = threading.Lock()
    earliest_failure = [total]

    def check_block(block: np.ndarray) -> list[IndexComparison]:
      try:
        network = self.network.clone()
        evaluator = LossGradientEvaluator(
          network,
          self.evaluator.features,
          self.evaluator.labels,
          include_input=self.config.check_input_gradients,
        )
        accessor = self._accessor_for(network, evaluator)
        estimator = FiniteDifferenceEstimator(accessor, evaluator.loss, self.config.eps)
        results = []
        for index in block.tolist():
          if abort.is_set():
            break
          # Only indices below the earliest known failure can still matter.
          if fail_fast and failure_seen.is_set() and index > earliest_failure[0]:
            break
          record = estimator.estimate(index)
          comparison = self.comparator.compare(
            index, accessor.name_of(index), analytic_gradient[index], record.numeric_gradient
          )
          results.append(comparison)
          with lock:
            progress_bar.update(1)
            if not comparison.passed and fail_fast:
              earliest_failure[0] = min(earliest_failure[0], index)
              failure_seen.set()
          if not comparison.passed and fail_fast:
            break
        return results
      except BaseException:
        abort.set()
        raise

    with ThreadPoolExecutor(max_workers=len(blocks)) as executor:
      futures = [executor.submit(check_block, block) for block in blocks]
      merged = [comparison for future in futures for comparison in future.result()]

    merged.sort(key=lambda comparison: comparison.index)
    if fail_fast and failure_seen.is_set():
      merged = [c for c in merged if c.index <= earliest_failure[0]]
    return merged


def check_gradients(
  network,
  features,
  labels,
  config: Optional[CheckConfiguration] = None,
  **overrides,
) -> ComparisonResult:
  """
  Compare backpropagated gradients with central differences.

  Returns a ComparisonResult; a mismatch is reported through it, never raised.
  Keyword overrides replace fields of `config`, e.g.
  `check_gradients(net, x, y, eps=1e-6, exit_on_first_failure=True)`.
  """
  config = config or CheckConfiguration()
  if overrides:
    config = config.replace(**overrides)
  return GradientChecker(network, features, labels, config).run()
