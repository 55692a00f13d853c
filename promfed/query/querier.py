"""Query store API data through a proxy, with optional replica deduplication."""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Sequence, Union

from promfed.query.iter import (
    DedupSeriesSet,
    Label,
    PromSeriesSet,
    ResAggr,
    StoreSeries,
    StoreSeriesSet,
)

__all__ = [
    "Aggr",
    "LabelMatcher",
    "LabelValuesResponse",
    "MatchType",
    "PartialError",
    "Querier",
    "Queryable",
    "QueryError",
    "SeriesRequest",
    "SeriesResponse",
    "SeriesServer",
    "aggrs_from_func",
    "new_queryable_creator",
    "sort_dedup_labels",
    "translate_matchers",
]

_nop_log = logging.getLogger(f"{__name__}.nop")
_nop_log.addHandler(logging.NullHandler())
_nop_log.propagate = False

PartialErrReporter = Callable[[Exception], Any]


class QueryError(Exception):
    """Raised when a query against the proxy fails."""


class PartialError(Exception):
    """A warning from a store: only part of the result is available."""


class MatchType(enum.Enum):
    """How a label matcher compares a label value."""

    EQ = "="
    NEQ = "!="
    RE = "=~"
    NRE = "!~"


class Aggr(enum.IntEnum):
    """Aggregates of downsampled data that can be requested from a store."""

    RAW = 0
    COUNT = 1
    SUM = 2
    MIN = 3
    MAX = 4
    COUNTER = 5


@dataclass(frozen=True)
class LabelMatcher:
    """A matcher on one label, as sent to the store API."""

    type: MatchType
    name: str
    value: str


@dataclass
class SeriesRequest:
    """A request for series data from the store API."""

    min_time: int
    max_time: int
    matchers: list[LabelMatcher] = field(default_factory=list)
    max_resolution_window: int = 0
    aggregates: list[Aggr] = field(default_factory=list)


@dataclass
class SeriesResponse:
    """One streamed frame of a series response: a series or a warning."""

    series: Optional[StoreSeries] = None
    warning: str = ""

    @classmethod
    def of_series(cls, series: StoreSeries) -> "SeriesResponse":
        return cls(series=series)

    @classmethod
    def of_warning(cls, warning: Union[str, Exception]) -> "SeriesResponse":
        return cls(warning=str(warning))


@dataclass
class LabelValuesResponse:
    """Values of a label together with any partial-failure warnings."""

    values: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class StoreProxy(Protocol):
    def series(self, request: SeriesRequest, server: "SeriesServer") -> None: ...

    def label_values(self, label: str) -> LabelValuesResponse: ...


class SeriesServer:
    """Collects the series and warnings that a proxy streams back."""

    def __init__(self, done: Optional[threading.Event] = None) -> None:
        self._done = done or threading.Event()
        self.series: list[StoreSeries] = []
        self.warnings: list[str] = []

    @property
    def cancelled(self) -> bool:
        """Whether the querier that owns this server has been closed."""
        return self._done.is_set()

    def send(self, response: SeriesResponse) -> None:
        if response.warning:
            self.warnings.append(response.warning)
            return
        if response.series is None:
            raise ValueError("no seriesSet")
        self.series.append(response.series)


MatcherLike = Union[LabelMatcher, tuple]


def _translate_matcher(matcher: MatcherLike) -> LabelMatcher:
    if isinstance(matcher, LabelMatcher):
        typ, name, value = matcher.type, matcher.name, matcher.value
    else:
        typ, name, value = matcher
    try:
        match_type = MatchType(typ)
    except ValueError:
        raise ValueError(f"unrecognized matcher type {typ!r}") from None
    return LabelMatcher(match_type, name, value)


def translate_matchers(*matchers: MatcherLike) -> list[LabelMatcher]:
    """Convert matchers to store API matchers.

    Each matcher is a :class:`LabelMatcher` or a ``(type, name, value)`` tuple
    where ``type`` is a :class:`MatchType` or its operator string.
    """
    return [_translate_matcher(m) for m in matchers]


def aggrs_from_func(func: str) -> tuple[list[Aggr], ResAggr]:
    """Infer the aggregates to fetch from the function wrapping a selection."""
    if func == "min" or func.startswith("min_"):
        return [Aggr.MIN], ResAggr.MIN
    if func == "max" or func.startswith("max_"):
        return [Aggr.MAX], ResAggr.MAX
    if func == "count" or func.startswith("count_"):
        return [Aggr.COUNT], ResAggr.COUNT
    if func == "sum" or func.startswith("sum_"):
        return [Aggr.SUM], ResAggr.SUM
    if func in ("increase", "rate"):
        return [Aggr.COUNTER], ResAggr.COUNTER
    # Otherwise fetch count and sum to compute an average.
    return [Aggr.COUNT, Aggr.SUM], ResAggr.AVG


def sort_dedup_labels(series: list[StoreSeries], replica_label: str) -> None:
    """Sort in place so that replicas of the same series are adjacent.

    The replica label is moved to the end of each label set, then the series
    are ordered by their label sets.
    """
    for s in series:
        s.labels.sort(key=lambda lbl: (lbl.name == replica_label, lbl.name))
    series.sort(key=lambda s: [(lbl.name, lbl.value) for lbl in s.labels])


class Querier:
    """Fetches series from a store proxy for the range ``[mint, maxt]``."""

    def __init__(
        self,
        mint: int,
        maxt: int,
        replica_label: str,
        proxy: StoreProxy,
        deduplicate: bool = False,
        max_source_resolution: int = 0,
        partial_err_report: Optional[PartialErrReporter] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.mint = mint
        self.maxt = maxt
        self.replica_label = replica_label
        self.proxy = proxy
        self.deduplicate = deduplicate
        self.max_source_resolution = max_source_resolution
        self.partial_err_report: PartialErrReporter = partial_err_report or (
            lambda err: None
        )
        self.logger = logger or _nop_log
        self._done = threading.Event()

    @property
    def dedup_enabled(self) -> bool:
        return self.deduplicate and self.replica_label != ""

    def select(self, func: str = "", *matchers: MatcherLike):
        """Return a series set for the matchers.

        ``func`` names the function wrapping the selection and chooses which
        downsampled aggregate is used.
        """
        try:
            store_matchers = translate_matchers(*matchers)
        except ValueError as exc:
            raise QueryError(f"convert matchers: {exc}") from exc

        query_aggrs, res_aggr = aggrs_from_func(func)

        server = SeriesServer(self._done)
        request = SeriesRequest(
            min_time=self.mint,
            max_time=self.maxt,
            matchers=store_matchers,
            max_resolution_window=self.max_source_resolution,
            aggregates=query_aggrs,
        )
        try:
            self.proxy.series(request, server)
        except Exception as exc:
            raise QueryError(f"proxy Series(): {exc}") from exc

        for warning in server.warnings:
            self.partial_err_report(PartialError(warning))

        if not self.dedup_enabled:
            return PromSeriesSet(
                StoreSeriesSet(server.series), self.mint, self.maxt, res_aggr
            )

        sort_dedup_labels(server.series, self.replica_label)
        prom_set = PromSeriesSet(
            StoreSeriesSet(server.series), self.mint, self.maxt, res_aggr
        )
        return DedupSeriesSet(prom_set, self.replica_label)

    def label_values(self, name: str) -> list[str]:
        """Return all values of label ``name`` known to the proxy."""
        try:
            response = self.proxy.label_values(name)
        except Exception as exc:
            raise QueryError(f"proxy LabelValues(): {exc}") from exc
        for warning in response.warnings:
            self.partial_err_report(PartialError(warning))
        return list(response.values)

    def close(self) -> None:
        self._done.set()

    def __enter__(self) -> "Querier":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


@dataclass
class Queryable:
    """Creates queriers against a proxy with fixed query options."""

    proxy: StoreProxy
    replica_label: str
    deduplicate: bool
    max_source_resolution: float
    partial_err_report: Optional[PartialErrReporter] = None
    logger: Optional[logging.Logger] = None

    def querier(self, mint: int, maxt: int) -> Querier:
        return Querier(
            mint,
            maxt,
            self.replica_label,
            self.proxy,
            self.deduplicate,
            int(self.max_source_resolution * 1000),
            self.partial_err_report,
            self.logger,
        )


def new_queryable_creator(
    proxy: StoreProxy,
    replica_label: str,
    logger: Optional[logging.Logger] = None,
) -> Callable[..., Queryable]:
    """Return a factory of queryables over ``proxy``.

    The factory takes ``deduplicate``, ``max_source_resolution`` in seconds
    and an optional partial error reporter.
    """

    def create(
        deduplicate: bool,
        max_source_resolution: float = 0,
        partial_err_report: Optional[PartialErrReporter] = None,
    ) -> Queryable:
        return Queryable(
            proxy,
            replica_label,
            deduplicate,
            max_source_resolution,
            partial_err_report,
            logger,
        )

    return create