import argparse
import sys
from pathlib import Path

import numpy as np
from tqdm import tqdm

from convgrad.core.builder import build_network, spec_from_config
from convgrad.core.tensor import default_dtype
from convgrad.data.synthetic import iris_like, random_batch
from convgrad.gradcheck import CheckConfiguration, GradientCheckError, check_gradients
from convgrad.gradcheck.warmup import warm_up_from_config
from convgrad.utils.common import (
  add_check_arguments,
  add_path_arguments,
  load_config,
  log_message,
)


def build_parser(argv=None) -> argparse.ArgumentParser:
  pre_parser = argparse.ArgumentParser(add_help=False)
  pre_parser.add_argument("--config", type=str, default="config.jsonc")
  config_path = pre_parser.parse_known_args(argv)[0].config
  config = load_config(config_path)

  parser = argparse.ArgumentParser(
    description="Finite-difference gradient checks for the scenarios in a config file.",
    parents=[pre_parser],
  )
  parser.add_argument(
    "--scenario",
    action="append",
    default=None,
    help="Run only the named scenario (repeatable).",
  )
  parser.add_argument("--seed", type=int, default=config.get("seed", 12345))
  parser = add_check_arguments(parser, config)
  parser = add_path_arguments(parser, config)
  parser.set_defaults(loaded_config=config)
  return parser


def scenario_data(scenario: dict, spec, seed: int):
  batch_size = int(scenario.get("minibatch", 2))
  if scenario.get("dataset") == "iris":
    features, labels = iris_like(seed=seed)
    return features[:batch_size].reshape((batch_size,) + spec.input_shape), labels[:batch_size]
  return random_batch(batch_size, spec.input_shape, spec.output.out_features, seed=seed)


def run_scenario(scenario: dict, check_config: CheckConfiguration, config: dict, seed: int) -> bool:
  name = scenario.get("name", "unnamed")
  with default_dtype(np.float64):
    spec = spec_from_config(scenario)
    np.random.seed(seed)
    network = build_network(spec)
    features, labels = scenario_data(scenario, spec, seed)
    log_message(f"Scenario {name}: {spec.describe()}", log_file=check_config.log_file)
    log_message(
      f"{network.num_params()} parameters, minibatch {features.shape[0]}",
      indent=1,
      log_file=check_config.log_file,
    )

    if scenario.get("warmup", False):
      result = warm_up_from_config(network, features, labels, config)
      ratio = config.get("warmup", {}).get("decrease_ratio", 0.8)
      log_message(
        f"Warm-up: score {result.score_before:.6f} → {result.score_after:.6f}",
        indent=1,
        log_file=check_config.log_file,
      )
      if not result.decreased(ratio):
        log_message(
          f"Score did not drop below {ratio} × initial score",
          "ERROR",
          indent=1,
          log_file=check_config.log_file,
        )
        return False

    try:
      comparison = check_gradients(network, features, labels, check_config)
    except GradientCheckError as error:
      log_message(f"{type(error).__name__}: {error}", "ERROR", indent=1, log_file=check_config.log_file)
      return False

  level = "INFO" if comparison.passed else "ERROR"
  for line in comparison.report().splitlines():
    log_message(line, level, indent=1, log_file=check_config.log_file)
  return comparison.passed


def main(argv=None) -> int:
  args = build_parser(argv).parse_args(argv)
  config = args.loaded_config

  console_log_file = Path(args.console_log_file)
  if console_log_file.exists():
    console_log_file.unlink()

  check_config = CheckConfiguration.from_config(config).replace(
    eps=args.eps,
    max_relative_error=args.max_relative_error,
    min_absolute_error=args.min_absolute_error,
    print_results=args.print_results,
    exit_on_first_failure=args.exit_on_first_failure,
    workers=args.workers,
    log_file=str(console_log_file),
  )
  scenarios = config.get("scenarios", [])
  if args.scenario:
    scenarios = [s for s in scenarios if s.get("name") in set(args.scenario)]
  if not scenarios:
    log_message("No scenarios selected", "ERROR", log_file=check_config.log_file)
    return 1

  log_message(f"Running {len(scenarios)} gradient check scenarios", log_file=check_config.log_file)
  failed = []
  for scenario in tqdm(scenarios, desc="Scenarios", bar_format="  {l_bar}{bar}{r_bar}"):
    if not run_scenario(scenario, check_config, config, args.seed):
      failed.append(scenario.get("name", "unnamed"))

  if failed:
    log_message(f"Failed scenarios: {', '.join(failed)}", "ERROR", log_file=check_config.log_file)
    return 1
  log_message("All gradient checks passed.", log_file=check_config.log_file)
  return 0


if __name__ == "__main__":
  sys.exit(main())
