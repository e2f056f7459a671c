"""Shared utility functions used across gapwatch modules."""
from __future__ import annotations

import inspect
import json
import logging
import re
import uuid
from datetime import UTC, datetime
from typing import Any, Callable

from gapwatch.schemas import SideEffectOutcome

log = logging.getLogger(__name__)

_MISSING = object()
_FENCE_RE = re.compile(r'```(?:json)?\s*(\{.*\}|\[.*\])\s*```', re.DOTALL)
_OBJECT_RE = re.compile(r'\{.*\}', re.DOTALL)


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def extract_json_object(text: str | None) -> Any:
    """Pull the JSON payload out of a completion, tolerating fences and chatter.

    Returns ``None`` when nothing parseable is found.
    """
    text = (text or "").strip()
    m = _FENCE_RE.search(text)
    if m:
        text = m.group(1)
    parsed = json_parse(text, None)
    if parsed is not None:
        return parsed
    m = _OBJECT_RE.search(text)
    if m:
        return json_parse(m.group(0), None)
    return None


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def ms_between(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


async def best_effort(name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> SideEffectOutcome:
    """Run a side effect whose failure must not fail the owning operation.

    *fn* may be a plain function or a coroutine function.
    """
    try:
        result = fn(*args, **kwargs)
        if inspect.isawaitable(result):
            await result
    except Exception as exc:
        log.warning("Side effect %s failed: %s", name, exc)
        return SideEffectOutcome(name=name, ok=False, error=str(exc))
    return SideEffectOutcome(name=name, ok=True)
