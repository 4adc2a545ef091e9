import getpass
import json
import logging
import os
import time
from typing import Any, Dict, Iterator, List, Optional

from .fs import FileSystem


logger = logging.getLogger(__name__)

HOST: str = os.uname().nodename
USER: str = getpass.getuser()
PID: str = str(os.getpid())
LOCK_FILE_SEPERATOR: str = "--LOCK--"
SNAPSHOT_SUFFIX: str = ".model.json"
DEFAULT_REQUEST_DELAY: float = 0.001
DEFAULT_MAX_DELAY: float = 1.0
DEFAULT_MAX_RETRIES: int = 100
DEFAULT_LOCK_DURATION_SEC: int = 10


# Check if a process with the given PID is currently active.
def is_pid_active(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True


# FileLock is used to ensure that a lock is held during read, write, and delete operations.
#
# The lock is a directory (creation is atomic) holding one entry that
# names the owning host, user, process, and lock duration. Locks held by
# dead local processes, or older than their duration, are broken.
#
# Arguments:
#   lock_path (str): The path to the *desired* lock directory (must *not* exist whenever "unlocked").
#   lock_duration (int): Seconds competing operations allow the lock to be held before ignoring it.
#   request_delay (float): Initial delay in seconds between lock attempts (doubles every retry).
#   max_retries (int): The maximum number of retries on locking before raising an error.
#
class FileLock:
    class LockFailure(Exception): pass

    def __init__(self, lock_path: str, lock_duration: int = DEFAULT_LOCK_DURATION_SEC, request_delay: float = DEFAULT_REQUEST_DELAY, max_retries: int = DEFAULT_MAX_RETRIES) -> None:
        self.lock_path: str = lock_path
        self.lock_duration: int = lock_duration
        self.default_lock_info: str = LOCK_FILE_SEPERATOR.join([HOST, USER, PID, str(self.lock_duration)])
        self.lock_info_path: str = os.path.join(self.lock_path, self.default_lock_info)
        self.request_delay: float = request_delay
        self.max_retries: int = max_retries
        self.acquisition_time: float = 0.0

    # Remove a lock directory that is no longer legitimately held.
    def _break(self, reason: str) -> None:
        logger.warning("Removing lock %r %s..", self.lock_path, reason)
        try:
            for entry in os.listdir(self.lock_path):
                os.rmdir(os.path.join(self.lock_path, entry))
            os.rmdir(self.lock_path)
        except (FileNotFoundError, OSError):
            pass

    def __enter__(self) -> "FileLock":
        for retry in range(self.max_retries):
            try:
                os.mkdir(self.lock_path)
                os.mkdir(self.lock_info_path)
                self.acquisition_time = os.path.getctime(self.lock_info_path)
                return self
            except FileExistsError:
                try: lock_info: str = next(iter(os.listdir(self.lock_path)))
                except (StopIteration, FileNotFoundError): continue
                host, user, pid, lock_duration = lock_info.split(LOCK_FILE_SEPERATOR)
                try:
                    lock_expiration = os.path.getctime(self.lock_path) + float(lock_duration)
                except FileNotFoundError:
                    continue
                if time.time() >= lock_expiration:
                    self._break("after expiration")
                    continue
                elif ((host, user) == (HOST, USER)) and (not is_pid_active(int(pid))):
                    self._break(f"held by nonliving process {pid}")
                    continue
                else:
                    time.sleep(min(self.request_delay * (2 ** retry), DEFAULT_MAX_DELAY))
        raise FileLock.LockFailure(f"Max retries reached for acquiring file lock {self.lock_path!r}")

    def __exit__(self, *_) -> None:
        try:
            if os.path.getctime(self.lock_info_path) != self.acquisition_time:
                raise FileLock.LockFailure("Lock acquisition time does not match expected value. Race condition encountered.")
        except OSError as exc:
            raise FileLock.LockFailure("Lock changed during execution. Race condition encountered.") from exc
        try:
            os.rmdir(self.lock_info_path)
            os.rmdir(self.lock_path)
        except OSError as exc:
            raise FileLock.LockFailure("Lock removed during execution. Race condition encountered.") from exc


# ModelStore is a persistent mapping from destination keys to model
# snapshots. Every key is a single JSON document that is atomically
# replaced on write, so a reader never observes a half-written model and
# the last completed snapshot stays valid if training stops.
#
# Arguments:
#   file_system (FileSystem): Where snapshots are written.
#   directory (str): Directory (relative to the file system root) holding the snapshots.
#   request_delay (float): Initial delay in seconds between lock attempts.
#   max_retries (int): The maximum number of retries on locking before raising an error.
#
class ModelStore:
    def __init__(self, file_system: Optional[FileSystem] = None, directory: str = "models", request_delay: float = DEFAULT_REQUEST_DELAY, max_retries: int = DEFAULT_MAX_RETRIES) -> None:
        self.fs = file_system or FileSystem()
        self.directory = self.fs.mkdir(directory, exist_ok=True)
        self.lock_path = self.directory + ".lock"
        self.request_delay = request_delay
        self.max_retries = max_retries

    def __repr__(self) -> str:
        return f"{type(self).__name__}(directory={self.directory!r}, n={len(self)})"

    def _lock(self) -> FileLock:
        return FileLock(lock_path=self.lock_path, request_delay=self.request_delay, max_retries=self.max_retries)

    def _path(self, key: str) -> str:
        if (not key) or (os.sep in key) or key.startswith("."):
            raise KeyError(f"Invalid snapshot key {key!r}.")
        return self.fs.join(self.directory, key + SNAPSHOT_SUFFIX)

    def _keys(self) -> List[str]:
        return [name[:-len(SNAPSHOT_SUFFIX)] for name in self.fs.listdir(self.directory)
                if name.endswith(SNAPSHOT_SUFFIX) and not name.startswith(".")]

    def __len__(self) -> int:
        with self._lock():
            return len(self._keys())

    def __contains__(self, key: str) -> bool:
        with self._lock():
            return self.fs.exists(self._path(key))

    # Retrieve the stored snapshot for a key.
    #
    # Raises:
    #   KeyError: If the key is not found in the store.
    #
    def __getitem__(self, key: str) -> Dict[str, Any]:
        path = self._path(key)
        with self._lock():
            if not self.fs.exists(path):
                raise KeyError(key)
            return json.loads(self.fs.read(path).decode("utf-8"))

    # Replace the snapshot stored at a key. Values must be strict JSON
    # (no NaN or infinity), so snapshots parse outside of Python.
    def __setitem__(self, key: str, value: Dict[str, Any]) -> None:
        data = json.dumps(value, separators=(",", ":"), allow_nan=False).encode("utf-8")
        path = self._path(key)
        with self._lock():
            self.fs.replace(path, data)

    def __delitem__(self, key: str) -> None:
        path = self._path(key)
        with self._lock():
            if not self.fs.exists(path):
                raise KeyError(key)
            self.fs.remove(path)

    def __iter__(self) -> Iterator[str]:
        with self._lock():
            return iter(self._keys())

    def keys(self) -> List[str]:
        with self._lock():
            return self._keys()

    # Write a snapshot of a model (anything with a "to_dict" method).
    def snapshot(self, destination: str, model: Any) -> None:
        self[destination] = model.to_dict()
