"""Subprocess integration with the coding-agent backend."""

from .command import BackendOptions, allow_all_tools_from_env, build_command, describe_command
from .runner import (
    BackendError,
    BackendRunner,
    MissingFinalMessageError,
    StepResult,
    SubprocessTerminated,
    Termination,
    Timeouts,
    describe_termination,
    infer_signal,
)

__all__ = [
    "BackendError",
    "BackendOptions",
    "BackendRunner",
    "MissingFinalMessageError",
    "StepResult",
    "SubprocessTerminated",
    "Termination",
    "Timeouts",
    "allow_all_tools_from_env",
    "build_command",
    "describe_command",
    "describe_termination",
    "infer_signal",
]
