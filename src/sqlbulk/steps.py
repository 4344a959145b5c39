"""
I/O steps yielded by a staging plan.

A plan is a generator that yields steps and receives each step's result;
the blocking and async executors only differ in how they run a step.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Execute:
    """Run a statement; the result is the driver row count."""

    sql: str
    params: tuple = ()
    label: str = "execute"


@dataclass(frozen=True)
class Query:
    """Run a statement and fetch all rows of its result set."""

    sql: str
    params: tuple = ()
    label: str = "query"


@dataclass(frozen=True)
class Transfer:
    """
    Stream rows through the bulk transfer channel.

    ``sql`` is a single-row parameterized INSERT; ``rows`` are already
    flattened parameter tuples. The result is the number of rows sent.
    """

    sql: str
    rows: Sequence[tuple] = field(default_factory=list)
    batch_size: int = 5000
    label: str = "transfer"


Step = Execute | Query | Transfer
