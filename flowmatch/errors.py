"""Error taxonomy for the matching pipeline.

Two kinds of failure abort a call: bad input (``ConfigurationError``) and a
solver fault that is not plain infeasibility (``SolverFailure``).
Infeasibility is an expected outcome and travels as an ``Infeasible`` value.
"""

from __future__ import annotations

from dataclasses import dataclass


class ConfigurationError(ValueError):
    """Invalid arguments detected before any network is built."""


class SolverFailure(RuntimeError):
    """The minimum-cost-flow solver failed for a reason other than infeasibility."""


@dataclass
class Infeasible:
    """Marker returned when no feasible match exists.

    Attributes:
        reason: Human-readable cause.
        treated_node: Global node id (1..n_t) of the treated unit that
            cannot be matched, when a single unit is to blame.
    """

    reason: str
    treated_node: int | None = None

    def __bool__(self) -> bool:
        return False
