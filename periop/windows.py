"""Time windows attached to perioperative instruction items.

A window describes when an instruction matters relative to the scheduled
surgery time.  It is stored on guideline items and plan-version items either
as a JSON object or as a JSON-encoded string, with up to three keys::

    {"when": "DOS-2h"}
    {"from": "D-4", "until": "postop-stable"}

Each value is an expression from a small grammar:

* ``D<+/-n>``      -- whole days from the scheduled time (``n * 24`` hours)
* ``DOS<+/-n>h``   -- hours from the scheduled time
* ``DOS-morning``  -- 07:00 on the day of surgery
* ``postop-stable`` -- 24 hours after surgery

:func:`is_active` decides whether an instruction should be surfaced right now
and :func:`target_time` computes the moment its action is anchored to.  Both
are pure functions of their arguments and never raise for malformed windows:
anything that cannot be interpreted is logged and treated as "no window"
(inactive, no target time).
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, Mapping, Optional, Union

import structlog

from periop.metrics import WINDOW_DEGRADED_TOTAL
from periop.time_utils import MILLIS_PER_HOUR, ensure_utc, to_epoch_millis


logger = structlog.get_logger(__name__)

DOS_MORNING = "DOS-morning"
POSTOP_STABLE = "postop-stable"

# Activity band widths, in hours, for anchors before/after the operation.
PREOP_BAND_HOURS = 2
DAY_BAND_HOURS = 24
MORNING_LEAD_HOURS = 3
MORNING_HOUR = 7

_DAY_EXPR = re.compile(r"D([-+][0-9]+)")
_DOS_EXPR = re.compile(r"DOS([-+][0-9]+)h")


class WindowParseError(ValueError):
    """Raised by :func:`parse_window` when a window cannot be interpreted."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


@dataclass(frozen=True)
class WindowSpec:
    """Decoded window.  ``from_`` carries the ``from`` key."""

    when: Optional[str] = None
    from_: Optional[str] = None
    until: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "WindowSpec":
        """Build a spec from a decoded JSON object, ignoring unknown keys."""

        return cls(
            when=_present(data.get("when")),
            from_=_present(data.get("from")),
            until=_present(data.get("until")),
        )

    @property
    def is_empty(self) -> bool:
        return self.when is None and self.from_ is None and self.until is None

    def to_dict(self) -> Dict[str, str]:
        payload: Dict[str, str] = {}
        if self.when is not None:
            payload["when"] = self.when
        if self.from_ is not None:
            payload["from"] = self.from_
        if self.until is not None:
            payload["until"] = self.until
        return payload


WindowSource = Union[None, str, bytes, Mapping[str, Any], WindowSpec]


def _present(value: Any) -> Any:
    if value is None or value == "":
        return None
    return value


def expr_to_hour(expr: Any) -> Optional[int]:
    """Return the signed hour magnitude of ``expr`` or ``None`` when unknown."""

    if not isinstance(expr, str) or not expr:
        return None
    try:
        match = _DAY_EXPR.fullmatch(expr)
        if match:
            return int(match.group(1)) * 24
        match = _DOS_EXPR.fullmatch(expr)
        if match:
            return int(match.group(1))
    except ValueError:
        # Digit strings beyond the interpreter's int conversion limit.
        return None
    if expr == DOS_MORNING:
        return 0
    if expr == POSTOP_STABLE:
        return 24
    return None


def parse_window(raw: WindowSource) -> Optional[WindowSpec]:
    """Decode ``raw`` into a :class:`WindowSpec`.

    Returns ``None`` for an absent or empty window and raises
    :class:`WindowParseError` when the value is present but unusable.
    """

    if raw is None or isinstance(raw, WindowSpec):
        spec = raw
    else:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        if isinstance(raw, str):
            if not raw.strip():
                return None
            try:
                decoded = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise WindowParseError("invalid_json", f"window is not valid JSON: {exc.msg}") from exc
        else:
            decoded = raw
        if decoded is None:
            return None
        if not isinstance(decoded, Mapping):
            raise WindowParseError("not_an_object", "window must decode to a JSON object")
        spec = WindowSpec.from_mapping(decoded)

    if spec is None or spec.is_empty:
        return None
    for key, value in (("when", spec.when), ("from", spec.from_), ("until", spec.until)):
        if value is not None and expr_to_hour(value) is None:
            raise WindowParseError("unknown_expression", f"unrecognised {key} expression {value!r}")
    return spec


def resolve_window(raw: WindowSource, **log_context: Any) -> Optional[WindowSpec]:
    """Like :func:`parse_window` but logs and returns ``None`` on failure."""

    try:
        return parse_window(raw)
    except WindowParseError as exc:
        WINDOW_DEGRADED_TOTAL.labels(exc.reason).inc()
        logger.warning(
            "window_parse_failed",
            reason=exc.reason,
            error=str(exc),
            window=repr(raw)[:200],
            **log_context,
        )
        return None


def is_active(window: WindowSource, scheduled_at: datetime, now: datetime) -> bool:
    """Return whether the instruction guarded by ``window`` is live at ``now``."""

    spec = resolve_window(window)
    if spec is None:
        return False

    # Milliseconds until surgery; negative once it has started.
    to_surgery = to_epoch_millis(scheduled_at) - to_epoch_millis(now)  # type: ignore[operator]

    if spec.when is not None:
        if spec.when == DOS_MORNING:
            return 0 <= to_surgery <= MORNING_LEAD_HOURS * MILLIS_PER_HOUR
        hours = expr_to_hour(spec.when)
        if hours is None:
            return False
        if hours > 0:
            return (hours - PREOP_BAND_HOURS) * MILLIS_PER_HOUR < to_surgery <= hours * MILLIS_PER_HOUR
        if hours < 0:
            anchor = abs(hours)
            return (anchor - DAY_BAND_HOURS) * MILLIS_PER_HOUR < to_surgery <= anchor * MILLIS_PER_HOUR
        # A zero-hour anchor other than DOS-morning never fires.
        return False

    from_ok = True
    if spec.from_ is not None:
        from_ok = to_surgery <= abs(expr_to_hour(spec.from_) or 0) * MILLIS_PER_HOUR

    until_ok = True
    if spec.until == POSTOP_STABLE:
        until_ok = -to_surgery < 24 * MILLIS_PER_HOUR
    elif spec.until is not None:
        until_ok = to_surgery >= abs(expr_to_hour(spec.until) or 0) * MILLIS_PER_HOUR

    return from_ok and until_ok


def target_time(
    window: WindowSource,
    scheduled_at: datetime,
    tz: Optional[tzinfo] = None,
) -> Optional[datetime]:
    """Return the moment the instruction's action is anchored to.

    ``from`` takes precedence over ``when`` for the offset.  ``DOS-morning``
    then pins the time of day to 07:00 on the resulting calendar date, in
    ``tz`` (defaults to the zone of ``scheduled_at``, UTC when naive).
    """

    spec = resolve_window(window)
    if spec is None:
        return None

    from_hours = expr_to_hour(spec.from_) if spec.from_ is not None else None
    when_hours = expr_to_hour(spec.when) if spec.when is not None else None
    offset = from_hours if from_hours is not None else when_hours

    zone = tz or scheduled_at.tzinfo or timezone.utc
    try:
        target = ensure_utc(scheduled_at)
        if offset is not None:
            target = target + timedelta(hours=offset)
        target = target.astimezone(zone)
    except OverflowError as exc:
        WINDOW_DEGRADED_TOTAL.labels("out_of_range").inc()
        logger.warning(
            "window_parse_failed",
            reason="out_of_range",
            error=str(exc),
            window=spec.to_dict(),
        )
        return None
    if spec.when == DOS_MORNING:
        target = target.replace(hour=MORNING_HOUR, minute=0, second=0, microsecond=0)
    return target


__all__ = [
    "DOS_MORNING",
    "POSTOP_STABLE",
    "WindowParseError",
    "WindowSpec",
    "WindowSource",
    "expr_to_hour",
    "parse_window",
    "resolve_window",
    "is_active",
    "target_time",
]
