"""Chunk I/O utilities for frames.

This module isolates the minimal read/write surface for chunk data.
Chunks are directories named ``chunk_<start>_<end>.kpchunk`` (``end`` is
exclusive) containing:

- values.npy (float64, rows x columns, NaN marks a missing cell)
- chunk_meta.json (start/length/column_count)
"""

from __future__ import annotations

import io
import json
import os
from pathlib import Path
from typing import List, Optional

import numpy as np

from ..fs import FileSystem

CHUNK_SUFFIX = ".kpchunk"
VALUES_FILE = "values.npy"
META_FILE = "chunk_meta.json"


def chunk_name(start: int, length: int) -> str:
    return f"chunk_{start:012d}_{start + length:012d}{CHUNK_SUFFIX}"


class ChunkWriter:
    """Buffer rows then flush them to directory-based ``.kpchunk`` files.

    Rows are numbered in the order they are added, starting at
    ``first_row``. A chunk is written every ``chunk_rows`` rows, so the
    chunk layout only depends on the row order and ``chunk_rows``.
    """

    def __init__(
        self,
        file_system: FileSystem,
        output_directory: str,
        chunk_rows: int,
        column_count: int,
        first_row: int = 0,
    ):
        if chunk_rows < 1:
            raise ValueError(f"chunk_rows must be at least 1, received {chunk_rows}")
        if column_count < 1:
            raise ValueError(f"column_count must be at least 1, received {column_count}")
        self._fs = file_system
        self._output_directory = file_system.mkdir(output_directory, exist_ok=True)
        self._chunk_rows = int(chunk_rows)
        self._column_count = int(column_count)
        self._next_row = int(first_row)
        self._written: List[str] = []
        self._reset()

    def _reset(self) -> None:
        self._start = self._next_row
        self._buffer: List[np.ndarray] = []
        self._buffered = 0

    @property
    def written(self) -> List[str]:
        """Paths of the chunk directories written so far, in row order."""
        return list(self._written)

    def add_rows(self, rows: np.ndarray) -> None:
        rows = np.asarray(rows, dtype=np.float64)
        if rows.ndim == 1:
            rows = rows.reshape((1, -1))
        if rows.ndim != 2 or rows.shape[1] != self._column_count:
            raise ValueError(
                f"Expected rows with {self._column_count} columns, received shape {rows.shape}"
            )
        while rows.shape[0] > 0:
            take = min(self._chunk_rows - self._buffered, rows.shape[0])
            self._buffer.append(rows[:take])
            self._buffered += take
            self._next_row += take
            rows = rows[take:]
            if self._buffered >= self._chunk_rows:
                self.save_chunk()
    def save_chunk(self) -> Optional[str]:
        if self._buffered == 0:
            return None
        values = np.concatenate(self._buffer, axis=0)
        chunk_dir = self._fs.join(self._output_directory, chunk_name(self._start, values.shape[0]))
        if self._fs.isdir(chunk_dir):
            self._fs.remove(chunk_dir)
        encoded = io.BytesIO()
        np.save(encoded, values)
        self._fs.write(os.path.join(chunk_dir, VALUES_FILE), encoded.getvalue(), overwrite=False)
        chunk_meta = {
            "start": int(self._start),
            "length": int(values.shape[0]),
            "column_count": int(self._column_count),
        }
        self._fs.write(os.path.join(chunk_dir, META_FILE),
                       json.dumps(chunk_meta, separators=(",", ":")).encode("ascii"), overwrite=False)
        self._written.append(chunk_dir)
        self._reset()
        return chunk_dir


class ChunkReader:
    """Mmap-based reader for directory chunks."""

    def __init__(self, chunk_path: str):
        if not os.path.isdir(chunk_path):
            raise FileNotFoundError(chunk_path)
        self._path = Path(chunk_path)
        with open(self._path / META_FILE, "r", encoding="ascii") as f_meta:
            self._chunk_meta = json.load(f_meta)
        self._values = np.load(self._path / VALUES_FILE, mmap_mode="r")
        if self._values.shape != (self.length, self.column_count):
            raise ValueError(
                f"Chunk {chunk_path!r} holds values of shape {self._values.shape}, "
                f"metadata declares {(self.length, self.column_count)}"
            )

    @property
    def start(self) -> int:
        return int(self._chunk_meta["start"])

    @property
    def length(self) -> int:
        return int(self._chunk_meta["length"])

    @property
    def column_count(self) -> int:
        return int(self._chunk_meta["column_count"])

    @property
    def values(self) -> np.ndarray:
        return self._values


def list_chunks(directory: str) -> List[str]:
    """Chunk directories below *directory*, ordered by starting row."""
    paths = [p for p in Path(directory).glob("*" + CHUNK_SUFFIX) if p.is_dir()]
    return [str(p) for p in sorted(paths, key=lambda p: int(p.name.split("_")[1]))]
