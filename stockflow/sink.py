"""
Result sinks for simulation output
The clock pushes one row of level values per round through ResultSink;
TimeSeriesRecorder keeps the rows in memory
"""

from typing import Dict, List, Protocol, Sequence

import numpy as np

from stockflow.types import SimulationResultDict


class ResultSink(Protocol):
    """
    Consumer of per-round level values

    The clock calls append_row exactly once per round, round 0 included,
    in increasing round order. Each row holds the level values in the
    model's column order.
    """

    def append_row(self, round_index: int, row: Sequence[float]) -> None:
        ...


class TimeSeriesRecorder:
    """
    In-memory result sink

    Args:
        columns: Column names, matching the model's level order
    """

    def __init__(self, columns: Sequence[str]):
        self.columns: List[str] = list(columns)
        self._rounds: List[int] = []
        self._rows: List[List[float]] = []

    def append_row(self, round_index: int, row: Sequence[float]) -> None:
        """
        Store one round

        Raises:
            ValueError: If the row length does not match the columns, or
                rounds do not arrive as 0, 1, 2, ...
        """
        if len(row) != len(self.columns):
            raise ValueError(
                f"Row has {len(row)} values, expected {len(self.columns)} ({', '.join(self.columns)})"
            )
        expected = len(self._rounds)
        if round_index != expected:
            raise ValueError(f"Expected round {expected}, got round {round_index}")

        self._rounds.append(round_index)
        self._rows.append([float(v) for v in row])

    @property
    def rounds(self) -> List[int]:
        return list(self._rounds)

    @property
    def rows(self) -> List[List[float]]:
        return [list(row) for row in self._rows]

    def __len__(self) -> int:
        return len(self._rows)

    def as_array(self) -> np.ndarray:
        """Rows as a 2-D array of shape (rounds, columns)"""
        return np.array(self._rows, dtype=float).reshape(len(self._rows), len(self.columns))

    def column(self, name: str) -> List[float]:
        """
        Time series of one column

        Raises:
            KeyError: If there is no such column
        """
        if name not in self.columns:
            raise KeyError(f"Unknown column '{name}'")
        index = self.columns.index(name)
        return self.as_array()[:, index].tolist()

    def to_dict(self) -> SimulationResultDict:
        """Convert to a result dictionary keyed by column"""
        values = self.as_array()
        results: Dict[str, List[float]] = {
            name: values[:, i].tolist() for i, name in enumerate(self.columns)
        }
        return {
            "rounds": self.rounds,
            "columns": list(self.columns),
            "results": results,
        }
