"""Configuration defaults shared by the edge-list, network and solver stages."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class MatchConfig:
    """Numeric knobs that turn real-valued distances into an integer program."""

    # Raw distances are multiplied by this factor and rounded to integer costs
    cost_scale: float = 1000.0

    # Added (in distance units) to exact-mismatched edges when soft_exact=True
    soft_exact_penalty: float = 1000.0

    # Cost per surplus control in a fine-balance level; None derives one
    # large enough to dominate every pairing cost
    fine_balance_penalty: Optional[float] = None


# Global configuration instance
MATCH_CONFIG = MatchConfig()
