"""Chunked, column-oriented numeric frames."""

from .chunk_io import ChunkReader, ChunkWriter
from .frame import Chunk, Frame

__all__ = ["Chunk", "ChunkReader", "ChunkWriter", "Frame"]
