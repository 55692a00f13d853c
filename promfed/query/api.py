"""Helpers for the Prometheus-compatible HTTP query API.

These cover request parameter parsing and validation, and the JSON envelope
that every endpoint answers with.
"""

from __future__ import annotations

import dataclasses
import enum
import json
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Union

__all__ = [
    "ApiError",
    "ErrorType",
    "Response",
    "cors_headers",
    "parse_bool",
    "parse_duration",
    "parse_time",
    "respond",
    "respond_error",
    "status_code_for",
    "validate_range_params",
]

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"

MAX_POINTS_PER_SERIES = 11000

_MAX_INT64 = 2**63 - 1
_MIN_INT64 = -(2**63)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_CORS_HEADERS = {
    "Access-Control-Allow-Headers": "Accept, Accept-Encoding, Authorization, Content-Type, Origin",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Expose-Headers": "Date",
}

_FLOAT_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")
_SPECIAL_FLOAT_RE = re.compile(r"[+-]?(?:inf|infinity|nan)", re.IGNORECASE)
_RFC3339_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d{1,9}))?"
    r"(Z|[+-]\d{2}:\d{2})"
)
_DURATION_RE = re.compile(r"([0-9]+)(y|w|d|h|ms|m|s)")

_NS_PER_UNIT = {
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
    "d": 24 * 3600 * 1_000_000_000,
    "w": 7 * 24 * 3600 * 1_000_000_000,
    "y": 365 * 24 * 3600 * 1_000_000_000,
}

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


class ErrorType(str, enum.Enum):
    """Classification of API errors, reported as ``errorType``."""

    NONE = ""
    TIMEOUT = "timeout"
    CANCELED = "canceled"
    EXEC = "execution"
    BAD_DATA = "bad_data"
    INTERNAL = "internal"


class ApiError(Exception):
    """An error an endpoint reports to the client, with its classification."""

    def __init__(self, type: ErrorType, err: Union[str, BaseException]) -> None:
        super().__init__(type, err)
        self.type = ErrorType(type)
        self.err = err

    @property
    def message(self) -> str:
        return str(self.err)

    def __str__(self) -> str:
        return f"{self.type.value}: {self.err}"


@dataclass
class Response:
    """The JSON envelope of every API answer."""

    status: str
    data: Any = None
    error_type: ErrorType = ErrorType.NONE
    error: str = ""
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return the wire form; empty optional fields are left out."""
        body: dict[str, Any] = {"status": self.status}
        if self.data is not None:
            body["data"] = self.data
        if self.error_type != ErrorType.NONE:
            body["errorType"] = ErrorType(self.error_type).value
        if self.error:
            body["error"] = self.error
        if self.warnings:
            body["warnings"] = list(self.warnings)
        return body

    def to_json(self) -> bytes:
        """Encode as one line of JSON with HTML-sensitive characters escaped."""
        text = json.dumps(
            self.to_dict(),
            ensure_ascii=False,
            separators=(",", ":"),
            default=_json_default,
        )
        for raw, escaped in (
            ("<", "\\u003c"),
            (">", "\\u003e"),
            ("&", "\\u0026"),
            ("\u2028", "\\u2028"),
            ("\u2029", "\\u2029"),
        ):
            text = text.replace(raw, escaped)
        return (text + "\n").encode("utf-8")

    @classmethod
    def from_json(cls, body: Union[str, bytes]) -> "Response":
        data = json.loads(body)
        if not isinstance(data, dict):
            raise ValueError("response body must be a JSON object")
        return cls(
            status=data.get("status", ""),
            data=data.get("data"),
            error_type=ErrorType(data.get("errorType", "")),
            error=data.get("error", ""),
            warnings=list(data.get("warnings") or []),
        )


def _json_default(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"{type(value).__name__} is not JSON serialisable")


def cors_headers() -> dict[str, str]:
    """Return the headers that allow cross-site calls to the API."""
    return dict(_CORS_HEADERS)


def status_code_for(error_type: ErrorType) -> int:
    """Return the HTTP status code used for an error type."""
    if error_type == ErrorType.BAD_DATA:
        return 400
    if error_type == ErrorType.EXEC:
        return 422
    if error_type in (ErrorType.CANCELED, ErrorType.TIMEOUT):
        return 503
    return 500


def respond(
    data: Any, warnings: Optional[Iterable[Union[str, BaseException]]] = None
) -> tuple[int, dict[str, str], bytes]:
    """Build a success reply: ``(status code, headers, body)``."""
    resp = Response(
        status=STATUS_SUCCESS,
        data=data,
        warnings=[str(w) for w in (warnings or [])],
    )
    return 200, {"Content-Type": "application/json"}, resp.to_json()


def respond_error(
    api_error: ApiError, data: Any = None
) -> tuple[int, dict[str, str], bytes]:
    """Build an error reply: ``(status code, headers, body)``."""
    resp = Response(
        status=STATUS_ERROR,
        data=data,
        error_type=api_error.type,
        error=api_error.message,
    )
    return (
        status_code_for(api_error.type),
        {"Content-Type": "application/json"},
        resp.to_json(),
    )


def _parse_float(s: str) -> Optional[float]:
    """Parse a finite decimal float in the strict form a query string carries."""
    if _FLOAT_RE.fullmatch(s) is None and _SPECIAL_FLOAT_RE.fullmatch(s) is None:
        return None
    value = float(s)
    return value if math.isfinite(value) else None


def _trunc_div(n: int, d: int) -> int:
    q = abs(n) // d
    return q if n >= 0 else -q


def _parse_rfc3339(s: str) -> Optional[datetime]:
    m = _RFC3339_RE.fullmatch(s)
    if m is None:
        return None
    year, month, day, hour, minute, second = (int(g) for g in m.groups()[:6])
    fraction, zone = m.group(7), m.group(8)
    micro = int((fraction or "").ljust(9, "0")[:6] or 0)
    if zone == "Z":
        tz = timezone.utc
    else:
        off_h, off_m = int(zone[1:3]), int(zone[4:6])
        if off_h >= 24 or off_m >= 60:
            return None
        offset = timedelta(hours=off_h, minutes=off_m)
        tz = timezone(-offset if zone[0] == "-" else offset)
    try:
        parsed = datetime(year, month, day, hour, minute, second, micro, tzinfo=tz)
        return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        return None


def parse_time(s: str) -> datetime:
    """Parse a Unix timestamp in seconds or an RFC 3339 time into a UTC datetime.

    Precision below a microsecond is dropped. Raises ValueError.
    """
    value = _parse_float(s)
    if value is not None:
        frac, whole = math.modf(value)
        nanos = int(frac * 1e9)
        try:
            return _EPOCH + timedelta(
                seconds=int(whole), microseconds=_trunc_div(nanos, 1000)
            )
        except OverflowError:
            pass
    else:
        parsed = _parse_rfc3339(s)
        if parsed is not None:
            return parsed
    raise ValueError(f"cannot parse {json.dumps(s)} to a valid timestamp")


def parse_duration(s: str) -> timedelta:
    """Parse seconds as a float, or a duration like ``15s`` or ``5m``.

    Precision below a microsecond is dropped. Raises ValueError.
    """
    value = _parse_float(s)
    if value is not None:
        ns = value * 1e9
        if ns > float(_MAX_INT64) or ns < float(_MIN_INT64):
            raise ValueError(
                f"cannot parse {json.dumps(s)} to a valid duration. It overflows int64"
            )
        return timedelta(microseconds=_trunc_div(int(ns), 1000))
    m = _DURATION_RE.fullmatch(s)
    if m is not None:
        ns = int(m.group(1)) * _NS_PER_UNIT[m.group(2)]
        if ns > _MAX_INT64:
            raise ValueError(
                f"cannot parse {json.dumps(s)} to a valid duration. It overflows int64"
            )
        return timedelta(microseconds=ns // 1000)
    raise ValueError(f"cannot parse {json.dumps(s)} to a valid duration")


def parse_bool(s: str) -> bool:
    """Parse the boolean spellings accepted in query parameters."""
    if s in _TRUE_WORDS:
        return True
    if s in _FALSE_WORDS:
        return False
    raise ValueError(f"parsing {json.dumps(s)}: invalid syntax")


def validate_range_params(
    start: str,
    end: str,
    step: str,
    max_source_resolution: Optional[str] = None,
    enable_autodownsampling: bool = False,
) -> tuple[datetime, datetime, timedelta, timedelta]:
    """Parse and check the parameters of a range query.

    Returns ``(start, end, step, max_source_resolution)``. Without an explicit
    resolution, auto-downsampling allows a fifth of the step. Raises
    :class:`ApiError` of type ``BAD_DATA`` on any invalid parameter.
    """
    try:
        start_t = parse_time(start)
        end_t = parse_time(end)
    except ValueError as exc:
        raise ApiError(ErrorType.BAD_DATA, exc) from exc
    if end_t < start_t:
        raise ApiError(
            ErrorType.BAD_DATA, "end timestamp must not be before start time"
        )

    try:
        step_d = parse_duration(step)
    except ValueError as exc:
        raise ApiError(ErrorType.BAD_DATA, f"param step: {exc}") from exc
    if step_d <= timedelta(0):
        raise ApiError(
            ErrorType.BAD_DATA,
            "zero or negative query resolution step widths are not accepted. "
            "Try a positive integer",
        )

    resolution = step_d // 5 if enable_autodownsampling else timedelta(0)
    if max_source_resolution:
        try:
            resolution = parse_duration(max_source_resolution)
        except ValueError as exc:
            raise ApiError(
                ErrorType.BAD_DATA, f"param max_source_resolution: {exc}"
            ) from exc
    if resolution < timedelta(0):
        raise ApiError(
            ErrorType.BAD_DATA,
            "negative query max source resolution is not accepted. "
            "Try a positive integer",
        )

    # Limit the number of returned points per series.
    if (end_t - start_t) // step_d > MAX_POINTS_PER_SERIES:
        raise ApiError(
            ErrorType.BAD_DATA,
            "exceeded maximum resolution of 11,000 points per timeseries. "
            "Try decreasing the query resolution (?step=XX)",
        )
    return start_t, end_t, step_d, resolution