"""Command-line construction for the coding-agent backend."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

__all__ = ["BackendOptions", "RESUME_PROMPT", "allow_all_tools_from_env", "build_command", "describe_command"]

RESUME_PROMPT = "continue"
DEFAULT_SANDBOX = "workspace-write"
BYPASS_FLAG = "--dangerously-bypass-approvals-and-sandbox"
REASONING_LEVELS = ("low", "medium", "high", "xhigh")


def allow_all_tools_from_env(env: Mapping[str, str] | None = None) -> bool:
    """``ALLOW_ALL_TOOLS=true|1`` switches the backend to bypass mode."""
    source = os.environ if env is None else env
    return (source.get("ALLOW_ALL_TOOLS") or "").strip().lower() in {"true", "1"}


@dataclass(slots=True)
class BackendOptions:
    """Invocation settings passed through to the backend executable."""

    command: Tuple[str, ...] = ("codex",)
    model: Optional[str] = None
    reasoning_effort: str = "medium"
    sandbox: str = DEFAULT_SANDBOX
    allow_all_tools: bool = False
    extra_args: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        env: Mapping[str, str] | None = None,
    ) -> "BackendOptions":
        backend = config.get("backend") or {}
        raw_command = backend.get("command") or "codex"
        if isinstance(raw_command, str):
            command = tuple(shlex.split(raw_command))
        else:
            command = tuple(str(part) for part in raw_command)
        effort = str(backend.get("reasoning_effort") or "medium").lower()
        if effort not in REASONING_LEVELS:
            raise ValueError(
                f"Unsupported reasoning effort {effort!r}; expected one of {', '.join(REASONING_LEVELS)}"
            )
        extra = backend.get("extra_args") or ()
        if isinstance(extra, str):
            extra = shlex.split(extra)
        extra_env = backend.get("env") or {}
        return cls(
            command=command or ("codex",),
            model=backend.get("model") or None,
            reasoning_effort=effort,
            sandbox=str(backend.get("sandbox") or DEFAULT_SANDBOX),
            allow_all_tools=bool(backend.get("allow_all_tools")) or allow_all_tools_from_env(env),
            extra_args=tuple(str(item) for item in extra),
            env={str(key): str(value) for key, value in dict(extra_env).items()},
        )

    def sandbox_args(self) -> List[str]:
        if self.allow_all_tools:
            return [BYPASS_FLAG]
        return ["--sandbox", self.sandbox]


def build_command(
    prompt: str,
    options: BackendOptions,
    *,
    resume_thread_id: Optional[str] = None,
) -> List[str]:
    """Return argv for one ``exec --json`` invocation.

    With ``resume_thread_id`` the previous conversation is resumed and the
    backend is simply told to continue.
    """
    argv: List[str] = [*options.command, "exec", "-c", f"model_reasoning_effort={options.reasoning_effort}"]
    argv.extend(options.sandbox_args())
    if options.model:
        argv.extend(["--model", options.model])
    argv.extend(options.extra_args)
    argv.append("--json")
    if resume_thread_id:
        argv.extend(["resume", resume_thread_id, RESUME_PROMPT])
    else:
        argv.append(prompt)
    return argv


def describe_command(argv: Sequence[str], *, max_length: int = 160) -> str:
    """Shell-quoted preview of ``argv`` for log lines."""
    rendered = shlex.join(argv)
    if len(rendered) > max_length:
        return rendered[: max_length - 3] + "..."
    return rendered
