"""Series sets and sample iterators over store API series data.

Iterators follow a cursor protocol: ``next()`` advances and reports whether a
sample is available, ``seek(t)`` advances to the first sample at or after
``t``, ``at()`` returns the current ``(timestamp, value)`` pair and ``err()``
returns the error that stopped iteration, if any.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import ClassVar, Optional, Protocol, Sequence

__all__ = [
    "AggrChunk",
    "BoundedSeriesIterator",
    "Chunk",
    "ChunkSeries",
    "ChunkSeriesIterator",
    "DedupSeries",
    "DedupSeriesIterator",
    "DedupSeriesSet",
    "ErrSeriesIterator",
    "Label",
    "ListSeriesIterator",
    "PromSeriesSet",
    "ResAggr",
    "SeriesWithLabels",
    "StoreSeries",
    "StoreSeriesSet",
    "expand_series",
    "new_chunk_series_iterator",
]

MIN_INT64 = -(2**63)
_INITIAL_PENALTY = 5000

Sample = tuple[int, float]


@dataclass(frozen=True, order=True)
class Label:
    """A single name/value label pair."""

    name: str
    value: str


@dataclass
class Chunk:
    """A chunk of time-ordered samples with its encoding."""

    XOR: ClassVar[int] = 0

    samples: Sequence[Sample] = ()
    encoding: int = 0

    def __post_init__(self) -> None:
        self.samples = tuple((int(t), float(v)) for t, v in self.samples)


@dataclass
class AggrChunk:
    """Chunks covering one time range: raw data and/or downsampled aggregates."""

    min_time: int = 0
    max_time: int = 0
    raw: Optional[Chunk] = None
    count: Optional[Chunk] = None
    sum: Optional[Chunk] = None
    min: Optional[Chunk] = None
    max: Optional[Chunk] = None
    counter: Optional[Chunk] = None


@dataclass
class StoreSeries:
    """A series as delivered by a store: labels plus aggregate chunks."""

    labels: list[Label] = field(default_factory=list)
    chunks: list[AggrChunk] = field(default_factory=list)


class ResAggr(enum.IntEnum):
    """Which aggregate of downsampled data a query result is built from."""

    AVG = 0
    COUNT = 1
    SUM = 2
    MIN = 3
    MAX = 4
    COUNTER = 5


class SeriesIterator(Protocol):
    def next(self) -> bool: ...

    def seek(self, t: int) -> bool: ...

    def at(self) -> Sample: ...

    def err(self) -> Optional[Exception]: ...


class Series(Protocol):
    labels: tuple[Label, ...]

    def iterator(self) -> SeriesIterator: ...


class ListSeriesIterator:
    """Iterates over an in-memory list of samples.

    Before the first sample ``at()`` returns ``(0, 0.0)``; once exhausted it
    keeps returning the last sample. ``err()`` reports samples that are not
    ordered by timestamp.
    """

    def __init__(self, samples: Sequence[Sample]) -> None:
        self._samples = [(int(t), float(v)) for t, v in samples]
        self._i = -1
        self._err: Optional[Exception] = next(
            (
                ValueError(f"sample timestamps out of order: {prev} before {cur}")
                for (prev, _), (cur, _) in zip(self._samples, self._samples[1:])
                if cur < prev
            ),
            None,
        )

    def next(self) -> bool:
        if self._i + 1 >= len(self._samples):
            self._i = len(self._samples)
            return False
        self._i += 1
        return True

    def seek(self, t: int) -> bool:
        if self._i < 0:
            self._i = 0
        while self._i < len(self._samples):
            if self._samples[self._i][0] >= t:
                return True
            self._i += 1
        return False

    def at(self) -> Sample:
        if self._i < 0 or not self._samples:
            return 0, 0.0
        return self._samples[min(self._i, len(self._samples) - 1)]

    def err(self) -> Optional[Exception]:
        return self._err


class ErrSeriesIterator:
    """An iterator that yields nothing and reports a fixed error."""

    def __init__(self, err: Optional[Exception] = None) -> None:
        self._err = err

    def next(self) -> bool:
        return False

    def seek(self, t: int) -> bool:
        return self.next()

    def at(self) -> Sample:
        return 0, 0.0

    def err(self) -> Optional[Exception]:
        return self._err


class BoundedSeriesIterator:
    """Wraps an iterator so that it only emits samples within ``[mint, maxt]``."""

    def __init__(self, it: SeriesIterator, mint: int, maxt: int) -> None:
        self._it = it
        self._mint = mint
        self._maxt = maxt

    def seek(self, t: int) -> bool:
        if t > self._maxt:
            return False
        return self._it.seek(max(t, self._mint))

    def at(self) -> Sample:
        return self._it.at()

    def next(self) -> bool:
        if not self._it.next():
            return False
        t, _ = self._it.at()
        if t < self._mint:
            if not self.seek(self._mint):
                return False
            t, _ = self._it.at()
        # Once past the valid interval there is no going back.
        return t <= self._maxt

    def err(self) -> Optional[Exception]:
        return self._it.err()


class ChunkSeriesIterator:
    """Iterates over a list of time-ordered chunk iterators.

    Adjacent chunks may overlap; overlapping samples are skipped.
    """

    def __init__(self, chunks: Sequence[SeriesIterator]) -> None:
        if not chunks:
            raise ValueError("chunk series iterator needs at least one chunk")
        self._chunks = list(chunks)
        self._i = 0

    def seek(self, t: int) -> bool:
        while True:
            ct, _ = self.at()
            if ct >= t:
                return True
            if not self.next():
                return False

    def at(self) -> Sample:
        return self._chunks[self._i].at()

    def next(self) -> bool:
        last_t, _ = self.at()
        if self._chunks[self._i].next():
            return True
        if self.err() is not None:
            return False
        if self._i >= len(self._chunks) - 1:
            return False
        self._i += 1
        return self.seek(last_t + 1)

    def err(self) -> Optional[Exception]:
        return self._chunks[self._i].err()


def new_chunk_series_iterator(chunks: Sequence[SeriesIterator]) -> SeriesIterator:
    """Return a :class:`ChunkSeriesIterator`, or an empty iterator for no chunks."""
    if not chunks:
        return ErrSeriesIterator()
    return ChunkSeriesIterator(chunks)


class _AverageIterator:
    """Yields sum/count at each sample of paired sum and count chunks."""

    def __init__(self, count: SeriesIterator, total: SeriesIterator) -> None:
        self._count = count
        self._total = total

    def next(self) -> bool:
        return self._count.next() and self._total.next()

    def seek(self, t: int) -> bool:
        return self._count.seek(t) and self._total.seek(t)

    def at(self) -> Sample:
        t, total = self._total.at()
        _, count = self._count.at()
        return t, (total / count) if count else float("nan")

    def err(self) -> Optional[Exception]:
        return self._count.err() or self._total.err()


def _first_iterator(*chunks: Optional[Chunk]) -> SeriesIterator:
    for chunk in chunks:
        if chunk is None:
            continue
        if chunk.encoding != Chunk.XOR:
            return ErrSeriesIterator(
                ValueError(f"invalid chunk encoding {chunk.encoding}")
            )
        return ListSeriesIterator(chunk.samples)
    return ErrSeriesIterator(ValueError("no valid chunk found"))


class ChunkSeries:
    """A series built from store chunks, bounded to ``[mint, maxt]``."""

    def __init__(
        self,
        labels: Sequence[Label],
        chunks: Sequence[AggrChunk],
        mint: int,
        maxt: int,
        aggr: ResAggr,
    ) -> None:
        self.labels = tuple(labels)
        self.chunks = sorted(chunks, key=lambda c: c.min_time)
        self.mint = mint
        self.maxt = maxt
        self.aggr = aggr

    def iterator(self) -> SeriesIterator:
        aggr = self.aggr
        if aggr in (ResAggr.COUNT, ResAggr.SUM, ResAggr.MIN, ResAggr.MAX):
            attr = aggr.name.lower()
            its = [_first_iterator(getattr(c, attr), c.raw) for c in self.chunks]
            sit = new_chunk_series_iterator(its)
        elif aggr == ResAggr.AVG:
            its = [
                _first_iterator(c.raw)
                if c.raw is not None
                else _AverageIterator(_first_iterator(c.count), _first_iterator(c.sum))
                for c in self.chunks
            ]
            sit = new_chunk_series_iterator(its)
        elif aggr == ResAggr.COUNTER:
            return ErrSeriesIterator(
                ValueError("counter aggregate chunks are not supported")
            )
        else:
            return ErrSeriesIterator(
                ValueError(f"unexpected result aggregate type {aggr!r}")
            )
        return BoundedSeriesIterator(sit, self.mint, self.maxt)


class StoreSeriesSet:
    """A cursor over a list of :class:`StoreSeries`."""

    def __init__(self, series: Sequence[StoreSeries]) -> None:
        self._series = list(series)
        self._i = -1
        self._err: Optional[Exception] = None

    def next(self) -> bool:
        if self._i >= len(self._series) - 1:
            return False
        self._i += 1
        return True

    def at(self) -> tuple[list[Label], list[AggrChunk]]:
        if self._i < 0:
            raise IndexError("at() called before next()")
        s = self._series[self._i]
        return s.labels, s.chunks

    def err(self) -> Optional[Exception]:
        return self._err


class PromSeriesSet:
    """Exposes a store series set as a set of :class:`ChunkSeries`."""

    def __init__(
        self,
        store_set: StoreSeriesSet,
        mint: int,
        maxt: int,
        aggr: ResAggr = ResAggr.AVG,
    ) -> None:
        self._set = store_set
        self.mint = mint
        self.maxt = maxt
        self.aggr = aggr

    def next(self) -> bool:
        return self._set.next()

    def at(self) -> ChunkSeries:
        labels, chunks = self._set.at()
        return ChunkSeries(labels, chunks, self.mint, self.maxt, self.aggr)

    def err(self) -> Optional[Exception]:
        return self._set.err()


class SeriesWithLabels:
    """A series presented under a different label set."""

    def __init__(self, series: Series, labels: Sequence[Label]) -> None:
        self.series = series
        self.labels = tuple(labels)

    def iterator(self) -> SeriesIterator:
        return self.series.iterator()


class DedupSeries:
    """A series merged from several replicas of the same data."""

    def __init__(self, labels: Sequence[Label], replicas: Sequence[Series]) -> None:
        if not replicas:
            raise ValueError("dedup series needs at least one replica")
        self.labels = tuple(labels)
        self.replicas = list(replicas)

    def iterator(self) -> SeriesIterator:
        it = self.replicas[0].iterator()
        for other in self.replicas[1:]:
            it = DedupSeriesIterator(it, other.iterator())
        return it


class DedupSeriesSet:
    """Merges adjacent series that differ only in the replica label.

    The input must be sorted so that replicas of a series follow each other,
    with the replica label last in each label set.
    """

    def __init__(self, series_set, replica_label: str) -> None:
        self._set = series_set
        self._replica_label = replica_label
        self._replicas: list[Series] = []
        self._labels: tuple[Label, ...] = ()
        self._peek: Optional[Series] = None
        self._ok = self._set.next()
        if self._ok:
            self._peek = self._set.at()

    def _peek_labels(self) -> tuple[Label, ...]:
        labels = tuple(self._peek.labels)
        if labels and labels[-1].name == self._replica_label:
            return labels[:-1]
        return labels

    def next(self) -> bool:
        if not self._ok:
            return False
        self._labels = self._peek_labels()
        self._replicas = [self._peek]
        while True:
            self._ok = self._set.next()
            if not self._ok:
                return bool(self._replicas)
            self._peek = self._set.at()
            if self._peek_labels() != self._labels:
                return True
            self._replicas.append(self._peek)

    def at(self) -> Series:
        if len(self._replicas) == 1:
            return SeriesWithLabels(self._replicas[0], self._labels)
        return DedupSeries(self._labels, list(self._replicas))

    def err(self) -> Optional[Exception]:
        return self._set.err()


class DedupSeriesIterator:
    """Merges two replica iterators, preferring to stay on one of them.

    After picking a sample from one replica, the other is penalised so that
    it is only used again when the chosen one has a gap of more than twice
    its last sample delta.
    """

    def __init__(self, a: SeriesIterator, b: SeriesIterator) -> None:
        self._a = a
        self._b = b
        self._aok = True
        self._bok = True
        self._last_t = MIN_INT64
        self._pen_a = 0
        self._pen_b = 0
        self._use_a = False

    def next(self) -> bool:
        if self._aok:
            self._aok = self._a.seek(self._last_t + 1 + self._pen_a)
        if self._bok:
            self._bok = self._b.seek(self._last_t + 1 + self._pen_b)

        if not self._aok:
            self._use_a = False
            if self._bok:
                self._last_t, _ = self._b.at()
                self._pen_b = 0
            return self._bok
        if not self._bok:
            self._use_a = True
            self._last_t, _ = self._a.at()
            self._pen_a = 0
            return True

        ta, _ = self._a.at()
        tb, _ = self._b.at()
        self._use_a = ta <= tb

        if self._use_a:
            if self._last_t != MIN_INT64:
                self._pen_b = 2 * (ta - self._last_t)
            else:
                self._pen_b = _INITIAL_PENALTY
            self._pen_a = 0
            self._last_t = ta
            return True
        if self._last_t != MIN_INT64:
            self._pen_a = 2 * (tb - self._last_t)
        else:
            self._pen_a = _INITIAL_PENALTY
        self._pen_b = 0
        self._last_t = tb
        return True

    def seek(self, t: int) -> bool:
        while True:
            ts, _ = self.at()
            if ts > 0 and ts >= t:
                return True
            if not self.next():
                return False

    def at(self) -> Sample:
        return self._a.at() if self._use_a else self._b.at()

    def err(self) -> Optional[Exception]:
        return self._a.err() or self._b.err()


def expand_series(it: SeriesIterator) -> list[Sample]:
    """Drain ``it`` into a list of samples, raising the iterator's error if any."""
    samples = []
    while it.next():
        samples.append(it.at())
    error = it.err()
    if error is not None:
        raise error
    return samples