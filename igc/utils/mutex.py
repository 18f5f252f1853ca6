import json
import logging
import os
import re
import socket
import time
from abc import (
    ABC,
    abstractmethod,
)
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import Self

from igc.utils.exceptions import (
    LockTimeoutError,
    ParameterError,
)

DEFAULT_LOCK_TIMEOUT = 300
DEFAULT_POLL_INTERVAL = 0.5
MAX_POLL_INTERVAL = 5.0


class LockStrategy(Enum):
    OPTIMISTIC = "optimistic"
    PESSIMISTIC = "pessimistic"
    BRANCH = "branch"

    @classmethod
    def parse(cls, value: "str | LockStrategy") -> "LockStrategy":
        if isinstance(value, LockStrategy):
            return value
        for strategy in cls:
            if value in {strategy.value, strategy.value[0]}:
                return strategy
        raise ParameterError(
            f"unknown lock strategy '{value}', "
            "expected one of optimistic, pessimistic, branch, o, p, b"
        )


@dataclass(frozen=True)
class MutexDescriptor:
    name: str
    namespace: str | None = None
    content_dir: str | None = None


class ClaimedMutex:
    """
    Lifecycle token handed out by `Mutex.claim`. It must be released
    exactly once; further releases are ignored.
    """

    def __init__(
        self,
        mutex: "Mutex",
        descriptor: MutexDescriptor,
        marker: Path | None = None,
    ) -> None:
        self.mutex = mutex
        self.descriptor = descriptor
        self.marker = marker
        self.released = False

    def release(self) -> None:
        self.mutex.release(self)

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.release()


class Mutex(ABC):
    @abstractmethod
    def claim(self, descriptor: MutexDescriptor) -> ClaimedMutex:
        pass

    @abstractmethod
    def release(self, claim: ClaimedMutex) -> None:
        pass


class NoopMutex(Mutex):
    """
    Never blocks. Used when concurrency safety comes from somewhere else,
    e.g. pushing to a unique branch and merging through a pull request.
    """

    def claim(self, descriptor: MutexDescriptor) -> ClaimedMutex:
        return ClaimedMutex(self, descriptor)

    def release(self, claim: ClaimedMutex) -> None:
        claim.released = True


class FileMutex(Mutex):
    """
    Pessimistic lock backed by an exclusively created marker file under
    `{tmp_dir}/{scope}/`. The lock scope only depends on the module name,
    so every populate of the same module is serialized, whatever its
    namespace or content directory.

    The marker directory has to be shared by all cooperating processes
    (e.g. a shared volume in CI) for the lock to be effective.
    """

    def __init__(
        self,
        tmp_dir: str,
        scope: str,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.lock_dir = Path(tmp_dir) / scope
        self.timeout = timeout
        self.poll_interval = poll_interval

    def marker_path(self, descriptor: MutexDescriptor) -> Path:
        key = re.sub(r"[^A-Za-z0-9_.-]", "_", descriptor.name)
        return self.lock_dir / f"{key}.lock"

    def _try_create(self, marker: Path, descriptor: MutexDescriptor) -> bool:
        try:
            fd = os.open(marker, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(
                    {
                        "name": descriptor.name,
                        "namespace": descriptor.namespace,
                        "contentDir": descriptor.content_dir,
                        "pid": os.getpid(),
                        "host": socket.gethostname(),
                        "claimed_at": time.time(),
                    },
                    f,
                )
        except BaseException:
            # a half written marker would block every later claim
            marker.unlink(missing_ok=True)
            raise
        return True

    def claim(self, descriptor: MutexDescriptor) -> ClaimedMutex:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        marker = self.marker_path(descriptor)
        start = time.monotonic()
        wait = self.poll_interval
        while not self._try_create(marker, descriptor):
            elapsed = time.monotonic() - start
            if elapsed >= self.timeout:
                raise LockTimeoutError(
                    f"unable to acquire lock {marker} for module "
                    f"{descriptor.name} within {self.timeout}s"
                )
            logging.debug(f"lock {marker} is held, retrying in {wait:.1f}s")
            time.sleep(min(wait, self.timeout - elapsed))
            wait = min(wait * 2, MAX_POLL_INTERVAL)
        logging.debug(f"claimed lock {marker}")
        return ClaimedMutex(self, descriptor, marker=marker)

    def release(self, claim: ClaimedMutex) -> None:
        if claim.released:
            return
        claim.released = True
        if claim.marker is None:
            return
        claim.marker.unlink(missing_ok=True)
        logging.debug(f"released lock {claim.marker}")


def create_mutex(
    lock: str | LockStrategy,
    tmp_dir: str,
    scope: str,
    timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> Mutex:
    if LockStrategy.parse(lock) == LockStrategy.PESSIMISTIC:
        return FileMutex(tmp_dir, scope, timeout=timeout)
    return NoopMutex()
