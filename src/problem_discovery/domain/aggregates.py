"""Aggregate roots for the problem discovery engine.

* ``ProblemSet`` -- the active set of problems for one run, an arena keyed
  by ``problem_id``.  Stages never rely on insertion order; they ask for an
  explicit ordering (ties broken by ``problem_id``).
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Iterator
from typing import Any

from .entities import Problem

OrderKey = Callable[[Problem], Any]


class ProblemSet:
    """Thread-safe arena of the problems alive in a discovery run.

    Services receive snapshots (deep copies) and hand back updated problems,
    which are written back with ``replace``; the lock only guards the
    mapping itself.
    """

    def __init__(self, problems: Iterable[Problem] = ()) -> None:
        self._problems: dict[str, Problem] = {}
        self._lock = threading.RLock()
        for problem in problems:
            self.add(problem)

    # -- mutations ------------------------------------------------------------

    def add(self, problem: Problem) -> None:
        """Insert *problem*.  Raises ``ValueError`` on a duplicate id."""
        with self._lock:
            if problem.problem_id in self._problems:
                raise ValueError(f"Problem {problem.problem_id!r} already in set")
            self._problems[problem.problem_id] = problem

    def replace(self, problem: Problem) -> None:
        """Overwrite the stored problem with the same id.

        Raises ``KeyError`` if the problem is no longer in the set (for
        instance because it was merged away).
        """
        with self._lock:
            if problem.problem_id not in self._problems:
                raise KeyError(f"Problem {problem.problem_id!r} not found in set")
            self._problems[problem.problem_id] = problem

    def remove(self, problem_id: str) -> Problem | None:
        """Remove and return *problem_id*, or ``None`` if absent."""
        with self._lock:
            return self._problems.pop(problem_id, None)

    def retain(self, problem_ids: Iterable[str]) -> list[str]:
        """Keep only *problem_ids*; return the ids that were dropped."""
        keep = set(problem_ids)
        with self._lock:
            dropped = [pid for pid in self._problems if pid not in keep]
            for pid in dropped:
                del self._problems[pid]
        return dropped

    # -- queries --------------------------------------------------------------

    def get(self, problem_id: str) -> Problem:
        """Retrieve a problem by id.  Raises ``KeyError`` if absent."""
        with self._lock:
            if problem_id not in self._problems:
                raise KeyError(f"Problem {problem_id!r} not found in set")
            return self._problems[problem_id]

    def __contains__(self, problem_id: object) -> bool:
        with self._lock:
            return problem_id in self._problems

    def __len__(self) -> int:
        with self._lock:
            return len(self._problems)

    def __iter__(self) -> Iterator[Problem]:
        return iter(self.ordered())

    def ordered(self, key: OrderKey | None = None) -> list[Problem]:
        """Problems sorted by *key*, then by id.  Default: by id only."""
        with self._lock:
            problems = list(self._problems.values())
        if key is None:
            return sorted(problems, key=lambda p: p.problem_id)
        return sorted(problems, key=lambda p: (key(p), p.problem_id))

    def by_quality(self, limit: int | None = None) -> list[Problem]:
        """Problems by ``overall`` descending, optionally truncated."""
        ranked = self.ordered(lambda p: -p.overall)
        return ranked if limit is None else ranked[:limit]

    def snapshot(self, key: OrderKey | None = None) -> list[Problem]:
        """Independent deep copies in the requested order."""
        return [p.copy() for p in self.ordered(key)]

    def average_quality(self) -> float:
        with self._lock:
            scores = [p.overall for p in self._problems.values()]
        if not scores:
            return 0.0
        return sum(scores) / len(scores)
