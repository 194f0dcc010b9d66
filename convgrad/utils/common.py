import argparse
import json
import re
import time
from pathlib import Path

INITIAL_START_TIME = time.time()
LOG_LEVELS = {"INFO", "ERROR", "DEBUG", "WARN"}


def load_config(config_path: str | Path = "config.jsonc") -> dict:
  raw_text = Path(config_path).read_text()
  cleaned_text = re.sub(r"//.*?\n|/\*.*?\*/", "", raw_text, flags=re.S)
  return json.loads(cleaned_text)


def log_message(
  message: str,
  level: str = "INFO",
  indent: int = 0,
  log_file: str | Path | None = None,
) -> str:
  """
  Print `○ [LEVEL] HH:MM:SS ∘ message`, time measured from import.
  The same line is appended to `log_file` when one is given.
  """
  if level not in LOG_LEVELS:
    raise ValueError(f"Invalid log level: '{level}'. Must be one of {LOG_LEVELS}")
  elapsed_time_seconds = time.time() - INITIAL_START_TIME
  time_string = time.strftime("%H:%M:%S", time.gmtime(elapsed_time_seconds))
  indentation = " " * (indent * 2)
  formatted_log_message = f"{indentation}○ [{level}] {time_string} ∘ {message}"
  print(formatted_log_message)
  if log_file:
    with open(log_file, "a") as file_handle:
      file_handle.write(formatted_log_message + "\n")
  return formatted_log_message


def add_path_arguments(
  parser: argparse.ArgumentParser, config: dict | None = None
) -> argparse.ArgumentParser:
  config = config if config is not None else load_config()
  path_section = config.get("paths", {})
  parser.add_argument(
    "--console-log-file",
    type=str,
    default=path_section.get("console_log_file", "gradient_check_log.txt"),
  )
  return parser


def add_check_arguments(
  parser: argparse.ArgumentParser, config: dict | None = None
) -> argparse.ArgumentParser:
  config = config if config is not None else load_config()
  check_section = config.get("gradient_check", {})
  parser.add_argument("--eps", type=float, default=check_section.get("eps", 1e-6))
  parser.add_argument(
    "--max-relative-error",
    type=float,
    default=check_section.get("max_relative_error", 1e-3),
  )
  parser.add_argument(
    "--min-absolute-error",
    type=float,
    default=check_section.get("min_absolute_error", 1e-8),
  )
  parser.add_argument(
    "--print-results",
    action=argparse.BooleanOptionalAction,
    default=check_section.get("print_results", False),
  )
  parser.add_argument(
    "--exit-on-first-failure",
    action=argparse.BooleanOptionalAction,
    default=check_section.get("exit_on_first_failure", False),
  )
  parser.add_argument(
    "--workers", type=int, default=check_section.get("workers", 1)
  )
  return parser
