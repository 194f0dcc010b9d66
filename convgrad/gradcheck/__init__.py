from .accessor import ParameterAccessor
from .checker import CheckConfiguration, GradientChecker, check_gradients
from .comparator import Comparator, ComparisonResult, IndexComparison
from .errors import ConfigurationError, EvaluationError, GradientCheckError, IndexOutOfRange
from .estimator import FiniteDifferenceEstimator, PerturbationRecord
from .evaluator import LossGradientEvaluator
from .warmup import WarmupResult, warm_up, warm_up_from_config

__all__ = [
  "CheckConfiguration",
  "Comparator",
  "ComparisonResult",
  "ConfigurationError",
  "EvaluationError",
  "FiniteDifferenceEstimator",
  "GradientCheckError",
  "GradientChecker",
  "IndexComparison",
  "IndexOutOfRange",
  "LossGradientEvaluator",
  "ParameterAccessor",
  "PerturbationRecord",
  "WarmupResult",
  "check_gradients",
  "warm_up",
  "warm_up_from_config",
]
