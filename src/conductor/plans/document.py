"""Read and write plan documents (YAML front matter plus a markdown body)."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import ValidationError

from .schema import Plan

__all__ = [
    "PlanDocumentError",
    "PlanParseError",
    "PlanValidationError",
    "dump_plan",
    "load_plan",
    "parse_plan",
    "save_plan",
]

FRONT_MATTER_FENCE = "---"


class PlanDocumentError(ValueError):
    """Base error raised for unusable plan documents."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        self.path = path
        prefix = f"{path}: " if path is not None else ""
        super().__init__(f"{prefix}{message}")


class PlanParseError(PlanDocumentError):
    """Raised when a plan document is not well-formed."""


class PlanValidationError(PlanDocumentError):
    """Raised when a plan document violates the plan schema."""


def _split_front_matter(text: str, path: Path | None) -> tuple[Any, str]:
    stripped = text.lstrip("﻿")
    lines = stripped.splitlines(keepends=True)
    if not lines or lines[0].strip() != FRONT_MATTER_FENCE:
        # Plain YAML documents (older *.yml plans) carry everything in one mapping.
        try:
            return yaml.safe_load(stripped), ""
        except yaml.YAMLError as error:
            raise PlanParseError(f"invalid YAML: {error}", path=path) from error

    for index in range(1, len(lines)):
        if lines[index].strip() == FRONT_MATTER_FENCE:
            header = "".join(lines[1:index])
            body = "".join(lines[index + 1 :])
            break
    else:
        raise PlanParseError("front matter is not terminated by '---'", path=path)

    try:
        metadata = yaml.safe_load(header)
    except yaml.YAMLError as error:
        raise PlanParseError(f"invalid YAML front matter: {error}", path=path) from error
    return metadata, body.strip("\n")


def parse_plan(text: str, *, path: Path | None = None) -> Plan:
    """Parse ``text`` into a validated :class:`Plan`."""
    metadata, body = _split_front_matter(text, path)
    if metadata is None:
        raise PlanParseError("document has no metadata block", path=path)
    if not isinstance(metadata, dict):
        raise PlanParseError("metadata block must be a mapping", path=path)

    payload: Dict[str, Any] = dict(metadata)
    if body.strip():
        payload["details"] = body
    try:
        return Plan.model_validate(payload)
    except ValidationError as error:
        raise PlanValidationError(_summarise_validation(error), path=path) from error


def load_plan(path: Path | str) -> Plan:
    """Load and validate the plan document stored at ``path``."""
    plan_path = Path(path)
    try:
        text = plan_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        raise PlanParseError(f"unable to read plan: {error}", path=plan_path) from error
    return parse_plan(text, path=plan_path)


def dump_plan(plan: Plan) -> str:
    """Render ``plan`` as front matter followed by its details body."""
    validated = _revalidate(plan, None)
    metadata = validated.model_dump(mode="json", by_alias=True, exclude={"details"}, exclude_none=True)
    header = yaml.safe_dump(metadata, sort_keys=False, allow_unicode=True)
    parts = [FRONT_MATTER_FENCE, "\n", header, FRONT_MATTER_FENCE, "\n"]
    if validated.details:
        parts.extend(["\n", validated.details.rstrip("\n"), "\n"])
    return "".join(parts)


def save_plan(path: Path | str, plan: Plan) -> Path:
    """Validate ``plan`` and atomically replace the document at ``path``."""
    plan_path = Path(path)
    _revalidate(plan, plan_path)
    content = dump_plan(plan)
    plan_path.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=plan_path.parent,
        prefix=f".{plan_path.name}.",
        suffix=".tmp",
        delete=False,
    )
    try:
        with handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(handle.name, plan_path)
    except BaseException:
        Path(handle.name).unlink(missing_ok=True)
        raise
    return plan_path


def _revalidate(plan: Plan, path: Path | None) -> Plan:
    # Models are mutable, so invariants are re-checked before anything is written.
    try:
        return Plan.model_validate(plan.model_dump(by_alias=True))
    except ValidationError as error:
        raise PlanValidationError(_summarise_validation(error), path=path) from error


def _summarise_validation(error: ValidationError) -> str:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "<plan>"
        messages.append(f"{location}: {item.get('msg', 'invalid value')}")
    return "schema validation failed: " + "; ".join(messages)
