"""Run one backend phase as a subprocess and stream its output."""

from __future__ import annotations

import logging
import os
import selectors
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Sequence

from ..protocol.events import AgentEvent
from ..protocol.normalizer import StreamNormalizer
from .command import BackendOptions, build_command, describe_command

LOGGER = logging.getLogger(__name__)

DEFAULT_INACTIVITY_TIMEOUT = 10 * 60.0
DEFAULT_INITIAL_INACTIVITY_TIMEOUT = 60.0
DEFAULT_MAX_ATTEMPTS = 3
READ_SIZE = 65536

__all__ = [
    "BackendError",
    "BackendRunner",
    "MissingFinalMessageError",
    "StepResult",
    "SubprocessTerminated",
    "Termination",
    "Timeouts",
    "describe_termination",
    "infer_signal",
]

CommandBuilder = Callable[..., List[str]]


class BackendError(RuntimeError):
    """Base error raised when a backend phase cannot produce a result."""


class SubprocessTerminated(BackendError):
    """The backend kept exiting abnormally until the attempt budget ran out."""

    def __init__(self, message: str, *, termination: "Termination", attempts: int) -> None:
        self.termination = termination
        self.attempts = attempts
        super().__init__(message)


class MissingFinalMessageError(BackendError):
    """The backend exited cleanly without emitting an agent message."""


_SIGNAL_EXIT_CODES = {137: "SIGKILL", 143: "SIGTERM"}


def infer_signal(returncode: Optional[int]) -> Optional[str]:
    """Map a return code to the signal that ended the process, if any."""
    if returncode is None:
        return None
    if returncode < 0:
        try:
            return signal.Signals(-returncode).name
        except ValueError:
            return f"signal {-returncode}"
    return _SIGNAL_EXIT_CODES.get(returncode)


def describe_termination(
    exit_code: Optional[int],
    signal_name: Optional[str],
    killed_by_inactivity: bool,
) -> str:
    parts: List[str] = []
    if killed_by_inactivity:
        parts.append("was terminated after inactivity")
    if signal_name:
        parts.append(f"received {signal_name}")
    elif exit_code not in (0, None):
        parts.append(f"exited with code {exit_code}")
    return " ".join(parts) or "terminated unexpectedly"


@dataclass(slots=True)
class Termination:
    """How a backend attempt ended."""

    exit_code: Optional[int]
    signal_name: Optional[str] = None
    killed_by_inactivity: bool = False

    @classmethod
    def from_returncode(cls, returncode: Optional[int], *, killed_by_inactivity: bool = False) -> "Termination":
        return cls(
            exit_code=returncode,
            signal_name=infer_signal(returncode),
            killed_by_inactivity=killed_by_inactivity,
        )

    @property
    def clean(self) -> bool:
        return self.exit_code == 0 and not self.killed_by_inactivity and self.signal_name is None

    @property
    def should_retry(self) -> bool:
        return not self.clean

    def describe(self) -> str:
        return describe_termination(self.exit_code, self.signal_name, self.killed_by_inactivity)


@dataclass(slots=True)
class Timeouts:
    """Inactivity limits (seconds) applied while waiting for backend output."""

    inactivity: float = DEFAULT_INACTIVITY_TIMEOUT
    initial: float = DEFAULT_INITIAL_INACTIVITY_TIMEOUT

    @classmethod
    def from_env(
        cls,
        env: Mapping[str, str] | None = None,
        *,
        inactivity: float = DEFAULT_INACTIVITY_TIMEOUT,
        initial: float = DEFAULT_INITIAL_INACTIVITY_TIMEOUT,
    ) -> "Timeouts":
        """Honour ``CODEX_OUTPUT_TIMEOUT_MS`` when it holds a positive integer."""
        source = os.environ if env is None else env
        override = (source.get("CODEX_OUTPUT_TIMEOUT_MS") or "").strip()
        if override:
            try:
                parsed = int(override)
            except ValueError:
                LOGGER.warning("Ignoring invalid CODEX_OUTPUT_TIMEOUT_MS=%r", override)
            else:
                if parsed > 0:
                    inactivity = parsed / 1000.0
        return cls(inactivity=inactivity, initial=min(initial, inactivity))


@dataclass(slots=True)
class StepResult:
    """Outcome of one successful backend phase call."""

    final_message: str
    failed: bool
    thread_id: Optional[str] = None
    attempts: int = 1
    events: List[AgentEvent] = field(default_factory=list)
    stderr: str = ""
    elapsed_seconds: float = 0.0


@dataclass(slots=True)
class _AttemptOutcome:
    termination: Termination
    stderr: str


class BackendRunner:
    """Spawn the backend, feed stdout through the normalizer, retry bad exits.

    One subprocess is active at a time. An attempt is killed when no output
    arrives within ``timeouts.initial`` seconds of launch, or within
    ``timeouts.inactivity`` seconds of the previous output.
    """

    def __init__(
        self,
        options: Optional[BackendOptions] = None,
        *,
        timeouts: Optional[Timeouts] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        command_builder: CommandBuilder = build_command,
        on_event: Optional[Callable[[AgentEvent], None]] = None,
        on_stderr: Optional[Callable[[str], None]] = None,
        poll_interval: float = 0.2,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.options = options or BackendOptions()
        self.timeouts = timeouts or Timeouts.from_env()
        self.max_attempts = max_attempts
        self._build = command_builder
        self._on_event = on_event
        self._on_stderr = on_stderr
        self._poll_interval = poll_interval

    def run(self, prompt: str, cwd: Path | str, *, title: Optional[str] = None) -> StepResult:
        """Execute ``prompt`` and return the phase's final agent message."""
        label = title or "Backend"
        thread_id: Optional[str] = None
        started = time.monotonic()
        last: Optional[Termination] = None

        for attempt in range(1, self.max_attempts + 1):
            normalizer = StreamNormalizer(on_event=self._on_event)
            resume = thread_id if attempt > 1 else None
            if attempt > 1 and not thread_id:
                LOGGER.warning("%s retry requested but no thread id was captured; issuing a fresh run.", label)
            argv = self._build(prompt, self.options, resume_thread_id=resume)
            LOGGER.debug("%s attempt %d/%d: %s", label, attempt, self.max_attempts, describe_command(argv))

            outcome = self._run_attempt(argv, Path(cwd), attempt=attempt, label=label, normalizer=normalizer)
            thread_id = thread_id or normalizer.thread_id
            last = outcome.termination

            if last.should_retry:
                reason = last.describe()
                if attempt < self.max_attempts:
                    LOGGER.warning("%s attempt %d/%d %s; retrying...", label, attempt, self.max_attempts, reason)
                    continue
                raise SubprocessTerminated(
                    f"{label} failed after {self.max_attempts} attempts ({reason}).",
                    termination=last,
                    attempts=attempt,
                )

            final = normalizer.final_agent_message
            if not final:
                LOGGER.error("%s returned no final agent message.", label)
                raise MissingFinalMessageError(f"No final agent message found in {label} output.")
            return StepResult(
                final_message=final,
                failed=normalizer.failed,
                thread_id=thread_id,
                attempts=attempt,
                events=list(normalizer.events),
                stderr=outcome.stderr,
                elapsed_seconds=time.monotonic() - started,
            )

        # Unreachable: the loop either returns or raises on the final attempt.
        raise SubprocessTerminated(
            f"{label} failed after {self.max_attempts} attempts.",
            termination=last or Termination(exit_code=None),
            attempts=self.max_attempts,
        )

    def _run_attempt(
        self,
        argv: Sequence[str],
        cwd: Path,
        *,
        attempt: int,
        label: str,
        normalizer: StreamNormalizer,
    ) -> _AttemptOutcome:
        env = {**os.environ, **self.options.env}
        try:
            process = subprocess.Popen(
                list(argv),
                cwd=cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as error:
            raise BackendError(f"Unable to start backend {argv[0]!r}: {error}") from error

        assert process.stdout is not None and process.stderr is not None
        selector = selectors.DefaultSelector()
        selector.register(process.stdout, selectors.EVENT_READ, "stdout")
        selector.register(process.stderr, selectors.EVENT_READ, "stderr")

        stderr_chunks: List[bytes] = []
        last_output = time.monotonic()
        seen_output = False
        killed = False
        open_streams = 2

        try:
            while open_streams:
                limit = self.timeouts.inactivity if seen_output else self.timeouts.initial
                if time.monotonic() - last_output > limit:
                    LOGGER.warning(
                        "%s produced no output for %s; terminating attempt %d/%d.",
                        label,
                        _format_duration(limit),
                        attempt,
                        self.max_attempts,
                    )
                    process.kill()
                    killed = True
                    break

                for key, _ in selector.select(timeout=self._poll_interval):
                    data = os.read(key.fileobj.fileno(), READ_SIZE)  # type: ignore[union-attr]
                    if not data:
                        selector.unregister(key.fileobj)
                        open_streams -= 1
                        continue
                    last_output = time.monotonic()
                    seen_output = True
                    if key.data == "stdout":
                        for _event in normalizer.feed(data):
                            pass
                    else:
                        stderr_chunks.append(data)
                        if self._on_stderr is not None:
                            self._on_stderr(data.decode("utf-8", errors="replace"))
            for _event in normalizer.finish():
                pass
            returncode = process.wait()
        finally:
            selector.close()
            process.stdout.close()
            process.stderr.close()
            if process.poll() is None:
                process.kill()
                process.wait()

        stderr_text = b"".join(stderr_chunks).decode("utf-8", errors="replace")
        return _AttemptOutcome(
            termination=Termination.from_returncode(returncode, killed_by_inactivity=killed),
            stderr=stderr_text,
        )


def _format_duration(seconds: float) -> str:
    if seconds >= 60:
        minutes = round(seconds / 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds:g} second{'s' if seconds != 1 else ''}"
