# Column-oriented, horizontally partitioned numeric datasets.
#
# A Frame is an immutable table of "n" rows by "d" float64 columns split
# into an ordered sequence of chunks, each covering the contiguous rows
# [start, start+length). Per-column mean and standard deviation over the
# observed (non-NaN) cells are computed once at construction.

from __future__ import annotations

import bisect
import json
import math
from typing import Iterable, List, Optional, Sequence

import numpy as np

from ..fs import FileSystem
from .chunk_io import ChunkReader, ChunkWriter, list_chunks

DEFAULT_CHUNK_ROWS = 1 << 16
FRAME_META_FILE = "frame_meta.json"


# One contiguous row range of a frame. The block is never written to.
class Chunk:
    __slots__ = ("start", "length", "_block")

    def __init__(self, start: int, block: np.ndarray):
        if block.ndim != 2:
            raise ValueError(f"Chunk block must be 2-D, received shape {block.shape}.")
        self.start = int(start)
        self.length = int(block.shape[0])
        self._block = block

    def __repr__(self):
        return f"Chunk(start={self.start}, length={self.length}, columns={self.column_count})"

    @property
    def column_count(self) -> int:
        return int(self._block.shape[1])

    # Value of "column" at the chunk-local "row" (NaN when missing).
    def at(self, column: int, row: int) -> float:
        return float(self._block[row, column])

    # All rows of this chunk as a (length, columns) float64 array.
    def block(self) -> np.ndarray:
        return np.asarray(self._block, dtype=np.float64)

    # A chunk over the same rows restricted to (and ordered by) "columns".
    def select(self, columns: Sequence[int]) -> "Chunk":
        return Chunk(self.start, self._block[:, list(columns)])


# Combine two sets of (count, mean, sum of squared deviations) per column.
def _combine_moments(n1, mean1, m21, n2, mean2, m22):
    n = n1 + n2
    with np.errstate(invalid="ignore", divide="ignore"):
        delta = mean2 - mean1
        mean = np.where(n > 0, mean1 + delta * np.where(n > 0, n2 / n, 0.0), 0.0)
        m2 = np.where(n > 0, m21 + m22 + delta**2 * np.where(n > 0, n1 * n2 / n, 0.0), 0.0)
    return n, mean, m2


# Immutable table of float64 columns partitioned into ordered chunks.
#
# Parameters:
#   chunks (Iterable[Chunk]): Chunks covering rows [0, n) contiguously, in order.
#   names (Sequence[str] | None): Column names, defaults to "C1", "C2", ...
#
# Raises:
#   ValueError: On gaps, overlaps, or column count mismatches between chunks.
#
class Frame:
    def __init__(self, chunks: Iterable[Chunk], names: Optional[Sequence[str]] = None,
                 _means: Optional[np.ndarray] = None, _sigmas: Optional[np.ndarray] = None):
        self.chunks: List[Chunk] = list(chunks)
        if not self.chunks:
            self._columns = len(names) if names is not None else 0
        else:
            self._columns = self.chunks[0].column_count
        expected_start = 0
        for chunk in self.chunks:
            if chunk.start != expected_start:
                raise ValueError(f"Chunk starting at row {chunk.start} does not continue from row {expected_start}.")
            if chunk.column_count != self._columns:
                raise ValueError(f"Chunk starting at row {chunk.start} has {chunk.column_count} columns, expected {self._columns}.")
            expected_start += chunk.length
        self._rows = expected_start
        self._starts = [chunk.start for chunk in self.chunks]
        if names is None:
            names = [f"C{i+1}" for i in range(self._columns)]
        if len(names) != self._columns:
            raise ValueError(f"Received {len(names)} names for {self._columns} columns.")
        self.names: List[str] = [str(n) for n in names]
        if (_means is None) or (_sigmas is None):
            _means, _sigmas = self._column_statistics()
        self._means = np.asarray(_means, dtype=np.float64)
        self._sigmas = np.asarray(_sigmas, dtype=np.float64)

    def __repr__(self):
        return f"Frame(rows={self._rows}, columns={self._columns}, chunks={len(self.chunks)})"

    # Mean and sample standard deviation of every column over observed cells.
    def _column_statistics(self):
        d = self._columns
        n, mean, m2 = np.zeros(d), np.zeros(d), np.zeros(d)
        for chunk in self.chunks:
            block = chunk.block()
            observed = ~np.isnan(block)
            cn = observed.sum(axis=0).astype(np.float64)
            with np.errstate(invalid="ignore", divide="ignore"):
                cmean = np.where(cn > 0, np.where(observed, block, 0.0).sum(axis=0) / np.maximum(cn, 1), 0.0)
            cm2 = np.where(observed, (block - cmean)**2, 0.0).sum(axis=0)
            n, mean, m2 = _combine_moments(n, mean, m2, cn, cmean, cm2)
        with np.errstate(invalid="ignore", divide="ignore"):
            means = np.where(n > 0, mean, np.nan)
            sigmas = np.where(n > 1, np.sqrt(m2 / np.maximum(n - 1, 1)), np.nan)
        return means, sigmas

    # Build a frame from a 2-D array, splitting rows into chunks of
    # "chunk_rows" rows (the last chunk may be shorter).
    @classmethod
    def from_array(cls, values, chunk_rows: int = DEFAULT_CHUNK_ROWS,
                   names: Optional[Sequence[str]] = None) -> "Frame":
        values = np.array(values, dtype=np.float64)
        if values.ndim != 2:
            raise ValueError(f"Expected a 2-D array of values, received shape {values.shape}.")
        if chunk_rows < 1:
            raise ValueError(f"chunk_rows must be at least 1, received {chunk_rows}.")
        values.setflags(write=False)
        chunks = [Chunk(start, values[start:start+chunk_rows])
                  for start in range(0, values.shape[0], chunk_rows)]
        if names is None:
            names = [f"C{i+1}" for i in range(values.shape[1])]
        return cls(chunks, names=names)

    # Write every chunk of this frame below "path" along with the frame
    # metadata (names and column statistics).
    def save(self, file_system: FileSystem, path: str) -> str:
        directory = file_system.mkdir(path, exist_ok=True)
        for stale in list_chunks(directory):
            file_system.remove(stale)
        for chunk in self.chunks:
            writer = ChunkWriter(file_system, directory, chunk_rows=max(1, chunk.length),
                                 column_count=self._columns, first_row=chunk.start)
            writer.add_rows(chunk.block())
            writer.save_chunk()
        meta = {
            "names": self.names,
            "row_count": self._rows,
            "chunk_count": len(self.chunks),
            "means": [None if math.isnan(v) else float(v) for v in self._means],
            "sigmas": [None if math.isnan(v) else float(v) for v in self._sigmas],
        }
        file_system.replace(file_system.join(directory, FRAME_META_FILE),
                            json.dumps(meta).encode("ascii"))
        return directory

    # Load a frame previously written with "save". Chunk values are
    # memory mapped, nothing is read until a chunk is materialized.
    @classmethod
    def load(cls, file_system: FileSystem, path: str) -> "Frame":
        directory = file_system.join(path)
        meta_path = file_system.join(directory, FRAME_META_FILE)
        if not file_system.exists(meta_path):
            raise FileNotFoundError(meta_path)
        meta = json.loads(file_system.read(meta_path).decode("ascii"))
        readers = [ChunkReader(p) for p in list_chunks(directory)]
        if len(readers) != meta["chunk_count"]:
            raise FileNotFoundError(
                f"Expected {meta['chunk_count']} chunks in {directory!r}, found {len(readers)}."
            )
        to_float = lambda values: np.array([np.nan if v is None else v for v in values], dtype=np.float64)
        frame = cls([Chunk(r.start, r.values) for r in readers], names=meta["names"],
                    _means=to_float(meta["means"]), _sigmas=to_float(meta["sigmas"]))
        if frame.row_count() != meta["row_count"]:
            raise ValueError(f"Frame at {directory!r} holds {frame.row_count()} rows, expected {meta['row_count']}.")
        return frame

    def row_count(self) -> int:
        return self._rows

    def column_count(self) -> int:
        return self._columns

    def column_mean(self, column: int) -> float:
        return float(self._means[column])

    def column_sigma(self, column: int) -> float:
        return float(self._sigmas[column])

    # The chunk holding the global "row" and the row offset inside it.
    def locate(self, row: int):
        if not (0 <= row < self._rows):
            raise IndexError(f"Row {row} out of range [0, {self._rows}).")
        index = bisect.bisect_right(self._starts, row) - 1
        chunk = self.chunks[index]
        return chunk, row - chunk.start

    # Values of every column at the global "row".
    def at(self, row: int) -> np.ndarray:
        chunk, local = self.locate(row)
        return chunk.block()[local].copy()

    # A frame over the same chunk layout restricted to "columns".
    def select(self, columns: Sequence[int]) -> "Frame":
        columns = [int(c) for c in columns]
        for c in columns:
            if not (0 <= c < self._columns):
                raise IndexError(f"Column {c} out of range [0, {self._columns}).")
        return Frame(
            [chunk.select(columns) for chunk in self.chunks],
            names=[self.names[c] for c in columns],
            _means=self._means[columns], _sigmas=self._sigmas[columns],
        )
