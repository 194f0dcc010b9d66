"""
Per-index verdicts and the aggregate result of a gradient check.

  abs_err = |a − n|
  rel_err = abs_err ⁄ max(|a| + |n|, floor)         (0 when a = n = 0)
  pass    ⇔ rel_err ≤ max_relative_error  ∨  abs_err ≤ min_absolute_error

The absolute floor exists because relative error is noise when both
gradients are tiny.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

from .errors import ConfigurationError


@dataclass(frozen=True)
class IndexComparison:
  index: int
  name: str
  analytic: float
  numeric: float
  absolute_error: float
  relative_error: float
  passed: bool

  def describe(self) -> str:
    verdict = "passed" if self.passed else "FAILED"
    return (
      f"Param {self.index} ({self.name}) {verdict}: grad={self.analytic:.10g}, "
      f"numericalGrad={self.numeric:.10g}, relError={self.relative_error:.6g}, "
      f"absError={self.absolute_error:.6g}"
    )


@dataclass(frozen=True)
class ComparisonResult:
  comparisons: tuple[IndexComparison, ...]
  total: int
  failures: tuple[IndexComparison, ...] = field(init=False)

  def __post_init__(self):
    object.__setattr__(
      self, "failures", tuple(c for c in self.comparisons if not c.passed)
    )

  @property
  def passed(self) -> bool:
    return not self.failures

  def __bool__(self) -> bool:
    return self.passed

  @property
  def checked(self) -> int:
    return len(self.comparisons)

  @property
  def first_failure(self) -> Optional[int]:
    return self.failures[0].index if self.failures else None

  @property
  def max_relative_error(self) -> float:
    return max((c.relative_error for c in self.comparisons), default=0.0)

  def summary(self) -> str:
    return (
      f"{self.checked} params checked, {self.checked - len(self.failures)} passed, "
      f"{len(self.failures)} failed. Largest relative error = {self.max_relative_error:.6g}"
    )

  def report(self) -> str:
    lines = [self.summary()]
    if self.checked < self.total:
      lines.append(f"Stopped after {self.checked} of {self.total} indices")
    lines.extend(f"  {failure.describe()}" for failure in self.failures)
    return "\n".join(lines)

  def raise_for_failures(self) -> None:
    if not self.passed:
      raise AssertionError(f"Gradient check failed\n{self.report()}")


class Comparator:
  def __init__(
    self,
    max_relative_error: float,
    min_absolute_error: float,
    relative_error_floor: float = 1e-12,
  ):
    if relative_error_floor <= 0:
      raise ConfigurationError(
        f"relative_error_floor must be > 0, got {relative_error_floor}"
      )
    self.max_relative_error = max_relative_error
    self.min_absolute_error = min_absolute_error
    self.relative_error_floor = relative_error_floor

  def compare(self, index: int, name: str, analytic: float, numeric: float) -> IndexComparison:
    analytic, numeric = float(analytic), float(numeric)
    absolute_error = abs(analytic - numeric)
    if absolute_error == 0.0:
      relative_error = 0.0
    else:
      relative_error = absolute_error / max(
        abs(analytic) + abs(numeric), self.relative_error_floor
      )
    passed = (
      relative_error <= self.max_relative_error
      or absolute_error <= self.min_absolute_error
    )
    return IndexComparison(
      index, name, analytic, numeric, absolute_error, relative_error, passed
    )

  def summarize(self, comparisons: Iterable[IndexComparison], total: int) -> ComparisonResult:
    return ComparisonResult(tuple(comparisons), total)
