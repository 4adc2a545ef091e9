# File system abstraction used to persist frames and model snapshots.
#
# A minimal, test-friendly interface rooted at a base directory. Every
# path is resolved against the root and may not escape it. Writes that
# must never be observed half-finished go through `replace`, which
# stages the bytes in a sibling temporary file and swaps it in place.
#
# Example usage:
#
#     fs = FileSystem(root="/tmp/kpar")
#     path = fs.join("model.json")
#     fs.replace(path, b"{}")
#     assert fs.read(path) == b"{}"


import os
import shutil
import tempfile
from dataclasses import dataclass
from typing import List


# Simple file system interface rooted at a specified base path.
#
# Parameters:
#   root (str): Base directory prepended to all relative paths.
#
@dataclass(frozen=True)
class FileSystem:
    root: str = os.path.join(tempfile.gettempdir(), "kpar")

    # Resolve a user-supplied path to an absolute path within root.
    # Raises ValueError if the resolved path escapes the root.
    def _resolve(self, path: str) -> str:
        root_path = os.path.abspath(self.root)
        abs_path = os.path.abspath(os.path.join(root_path, path))
        if not abs_path.startswith(root_path + os.sep) and abs_path != root_path:
            raise ValueError(f"Path '{path}' escapes root '{self.root}'.")
        return abs_path

    # Join one or more path components with the root.
    #
    # Returns:
    #   str: Absolute path within root.
    #
    def join(self, *parts: str) -> str:
        return self._resolve(os.path.join(*parts))

    # Create a directory (and parents) at the specified path.
    def mkdir(self, path: str, exist_ok: bool = False) -> str:
        path = self._resolve(path)
        os.makedirs(path, exist_ok=exist_ok)
        return path

    def exists(self, path: str) -> bool:
        return os.path.exists(self._resolve(path))

    def isdir(self, path: str) -> bool:
        return os.path.isdir(self._resolve(path))

    # List entries in a directory, sorted by name.
    def listdir(self, path: str) -> List[str]:
        return sorted(os.listdir(self._resolve(path)))

    # Read the full contents of a file as bytes.
    #
    # Raises:
    #   OSError: If the read fails.
    #
    def read(self, path: str) -> bytes:
        with open(self._resolve(path), "rb") as f:
            return f.read()

    # Write bytes to a file.
    #
    # Parameters:
    #   path (str): File path.
    #   data (bytes): Data to write.
    #   overwrite (bool): If False, raises on existing files.
    #   mkdir (bool): Create missing parent directories.
    #
    # Raises:
    #   RuntimeError: If refusing to overwrite an existing file.
    #
    def write(self, path: str, data: bytes, overwrite: bool = True, mkdir: bool = True) -> None:
        path = self._resolve(path)
        if not overwrite and os.path.exists(path):
            raise RuntimeError(
                f"Refusing to overwrite existing contents at '{path}'."
            )
        if mkdir: os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)

    # Atomically replace the contents of a file. Readers observe either
    # the previous contents or the new contents, never a partial write.
    #
    # Parameters:
    #   path (str): File path.
    #   data (bytes): New contents.
    #
    def replace(self, path: str, data: bytes) -> None:
        path = self._resolve(path)
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        fd, staging = tempfile.mkstemp(dir=directory, prefix=".staging-", suffix=os.path.basename(path))
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(staging, path)
        except BaseException:
            if os.path.exists(staging):
                os.remove(staging)
            raise

    # Remove a file or directory at the specified path.
    #
    # Raises:
    #   FileNotFoundError: If the path does not exist.
    #   RuntimeError: If recursive is False and path is a non-empty directory.
    #
    def remove(self, path: str, recursive: bool = True) -> None:
        path = self._resolve(path)
        if not os.path.exists(path):
            raise FileNotFoundError(f"Path '{path}' does not exist.")
        if os.path.isdir(path):
            if recursive:
                shutil.rmtree(path)
            else:
                try:
                    os.rmdir(path)
                except OSError as e:
                    raise RuntimeError(
                        f"Directory '{path}' is not empty or cannot be removed without recursive=True."
                    ) from e
        else:
            os.remove(path)
