"""Collective reductions over the workers that share a search."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator, List, Sequence

import numpy as np


class Communicator(ABC):
    """Blocking collectives. Every worker must call them in the same order."""

    @property
    @abstractmethod
    def rank(self) -> int:
        ...

    @property
    @abstractmethod
    def size(self) -> int:
        ...

    @abstractmethod
    def allgather(self, value: Any) -> List[Any]:
        ...

    @abstractmethod
    def barrier(self) -> None:
        ...


class SerialCommunicator(Communicator):
    @property
    def rank(self) -> int:
        return 0

    @property
    def size(self) -> int:
        return 1

    def allgather(self, value: Any) -> List[Any]:
        return [value]

    def barrier(self) -> None:
        return None


class _ThreadGroup:
    def __init__(self, size: int):
        self.size = size
        self.slots: list[Any] = [None] * size
        self.barrier = threading.Barrier(size)


class ThreadCommunicator(Communicator):
    """One worker of an in-process group, each worker running on its own thread."""

    def __init__(self, group: _ThreadGroup, rank: int):
        self._group = group
        self._rank = rank

    @property
    def rank(self) -> int:
        return self._rank

    @property
    def size(self) -> int:
        return self._group.size

    def allgather(self, value: Any) -> List[Any]:
        self._group.slots[self._rank] = value
        self._group.barrier.wait()
        gathered = list(self._group.slots)
        # Nobody may overwrite a slot before every worker has read it.
        self._group.barrier.wait()
        return gathered

    def barrier(self) -> None:
        self._group.barrier.wait()


def thread_communicators(size: int) -> list[ThreadCommunicator]:
    if size < 1:
        raise ValueError("size must be >= 1")
    group = _ThreadGroup(size)
    return [ThreadCommunicator(group, rank) for rank in range(size)]


class ParallelContext:
    """Stack of communicators; the top one serves every collective call."""

    def __init__(self, communicator: Communicator | None = None):
        self._stack: list[Communicator] = [communicator or SerialCommunicator()]

    @property
    def communicator(self) -> Communicator:
        return self._stack[-1]

    def rank(self) -> int:
        return self.communicator.rank

    def size(self) -> int:
        return self.communicator.size

    def is_master(self) -> bool:
        return self.rank() == 0

    def push_sequential_context(self) -> None:
        self._stack.append(SerialCommunicator())

    def pop_context(self) -> None:
        if len(self._stack) == 1:
            raise ValueError("cannot pop the root parallel context")
        self._stack.pop()

    @contextmanager
    def sequential(self) -> Iterator["ParallelContext"]:
        self.push_sequential_context()
        try:
            yield self
        finally:
            self.pop_context()

    def allgather(self, value: Any) -> List[Any]:
        return self.communicator.allgather(value)

    def barrier(self) -> None:
        self.communicator.barrier()

    def sum_float(self, value: float) -> float:
        return float(sum(self.allgather(float(value))))

    def sum_int(self, value: int) -> int:
        return int(sum(self.allgather(int(value))))

    def max_int(self, value: int) -> int:
        return int(max(self.allgather(int(value))))

    def sum_array(self, values: np.ndarray) -> np.ndarray:
        gathered = self.allgather(np.asarray(values))
        return np.sum(np.stack(gathered), axis=0)

    def concatenate(self, values: Sequence[float]) -> list[float]:
        """Gather worker-local lists in rank order."""
        out: list[float] = []
        for chunk in self.allgather(list(values)):
            out.extend(chunk)
        return out

    def is_int_equal(self, value: int) -> bool:
        return len(set(self.allgather(int(value)))) == 1

    def get_begin(self, elements: int) -> int:
        return (self.rank() * elements) // self.size()

    def get_end(self, elements: int) -> int:
        return ((self.rank() + 1) * elements) // self.size()
