class GradientCheckError(Exception):
  """Base class for everything the gradient checker raises."""


class ConfigurationError(GradientCheckError, ValueError):
  """Thresholds, dtype, shapes or layers make a check meaningless. Raised before any perturbation."""


class EvaluationError(GradientCheckError, ArithmeticError):
  """A forward or backward pass failed or produced a non-finite value."""


class IndexOutOfRange(GradientCheckError, IndexError):
  pass
