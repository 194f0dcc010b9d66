"""
"Characteristic mode": a few optimizer steps before a gradient check, so the
check runs away from the initialization where some layers sit in easy
regimes (e.g. near-zero pre-activations).
"""

from dataclasses import dataclass

from ..core.optim import get_optimizer
from ..utils.common import log_message

DEFAULT_STEPS = 10
DEFAULT_LEARNING_RATE = 0.1
DEFAULT_DECREASE_RATIO = 0.8


@dataclass(frozen=True)
class WarmupResult:
  score_before: float
  score_after: float
  steps: int

  def decreased(self, ratio: float = DEFAULT_DECREASE_RATIO) -> bool:
    return self.score_after < ratio * self.score_before


def warm_up(
  network,
  features,
  labels,
  steps: int = DEFAULT_STEPS,
  learning_rate: float = DEFAULT_LEARNING_RATE,
  optimizer: str = "adam",
  verbose: bool = False,
) -> WarmupResult:
  """
  Full-batch training on (features, labels); parameters are updated in place.
  The network's training/evaluation mode is restored afterwards and both
  scores are taken in that mode.
  """
  if steps < 0:
    raise ValueError(f"steps must be >= 0, got {steps}")
  modes = [(module, module.training) for module in network.modules()]
  parameter_optimizer = get_optimizer(optimizer, network.parameters(), learning_rate)

  score_before = network.score(features, labels)
  network.set_to_training()
  try:
    for step_index in range(steps):
      score, _, _ = network.compute_gradient_and_score(features, labels)
      parameter_optimizer.step()
      if verbose:
        log_message(f"Warm-up step {step_index + 1}/{steps}, Score: {score:.6f}", indent=1)
  finally:
    for module, training in modes:
      module.training = training
    network.zero_grad()
  score_after = network.score(features, labels)
  return WarmupResult(score_before, score_after, steps)


def warm_up_from_config(network, features, labels, config: dict | None) -> WarmupResult:
  section = (config or {}).get("warmup", {})
  return warm_up(
    network,
    features,
    labels,
    steps=int(section.get("steps", DEFAULT_STEPS)),
    learning_rate=float(section.get("learning_rate", DEFAULT_LEARNING_RATE)),
    optimizer=section.get("optimizer", "adam"),
  )
