"""Named per-frame diagnostic values.

The pipeline records one value per processed frame for each quantity it
reports (keypoint counts, match counts, degraded flags, costs). Values are
kept in insertion order and read back as numpy arrays, e.g. for plotting.
"""

from collections import OrderedDict
from typing import List, Mapping

import numpy as np


class DiagnosticSeries:
    """
    Collection of named time series of scalars.

    Example:
        >>> series = DiagnosticSeries()
        >>> series.record({"ego_motion.n_matches": 120, "mapping.degraded": 0})
        >>> series.latest("ego_motion.n_matches")
        120.0
    """

    def __init__(self):
        self._values: "OrderedDict[str, List[float]]" = OrderedDict()

    def __len__(self) -> int:
        """Number of recorded frames (length of the longest series)."""
        return max((len(v) for v in self._values.values()), default=0)

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def record(self, values: Mapping[str, float]) -> None:
        """Append one value to each named series."""
        for name, value in values.items():
            self._values.setdefault(name, []).append(float(value))

    def names(self) -> List[str]:
        return list(self._values)

    def get(self, name: str) -> np.ndarray:
        """
        Full series of one quantity.

        Raises:
            KeyError: If nothing was recorded under this name.
        """
        if name not in self._values:
            raise KeyError(f"No diagnostic named {name!r}; known: {self.names()}")
        return np.asarray(self._values[name])

    def latest(self, name: str) -> float:
        """Last recorded value of one quantity."""
        return float(self.get(name)[-1])

    def clear(self) -> None:
        self._values.clear()
