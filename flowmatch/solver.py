"""Minimum-cost flow solver boundary.

The assembly and decoding layers depend only on :class:`MinCostFlowSolver`:
a network goes in, a :class:`FlowSolution` or :class:`Infeasible` comes out.
:class:`NetworkSimplexSolver` is the default implementation and delegates
to ``networkx.network_simplex``; any other algorithm can be substituted by
implementing :meth:`MinCostFlowSolver.solve`.

Calls are single, blocking and never retried. Infeasibility is returned as
a value; every other solver failure raises :class:`SolverFailure`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

import networkx as nx

from .errors import Infeasible, SolverFailure
from .logging import get_logger
from .network import Network

logger = get_logger(__name__)


@dataclass
class FlowSolution:
    """Integer flow per arc, keyed by ``(tail, head)``, and its total cost."""

    flow: dict[tuple[int, int], int]
    cost: int

    def positive_arcs(self) -> list[tuple[int, int]]:
        return [arc for arc, f in self.flow.items() if f > 0]


class MinCostFlowSolver(ABC):
    """Interface for minimum-cost flow implementations."""

    @abstractmethod
    def solve(self, network: Network) -> FlowSolution | Infeasible:
        """Return a minimum-cost feasible flow or an infeasibility marker."""


class NetworkSimplexSolver(MinCostFlowSolver):
    """Network simplex from networkx.

    Arc lower bounds are folded into capacities and node demands before
    the call and added back to the returned flow.
    """

    def to_graph(self, network: Network) -> nx.DiGraph:
        """Translate ``network`` into a ``networkx.DiGraph`` with lower bounds removed."""
        demand = {node: 0 for node in range(network.n_nodes)}
        for node, supply in network.supply.items():
            demand[node] -= supply

        G = nx.DiGraph()
        G.add_nodes_from(range(network.n_nodes))
        for arc in network.arcs:
            if arc.lower:
                demand[arc.tail] += arc.lower
                demand[arc.head] -= arc.lower
            G.add_edge(
                arc.tail,
                arc.head,
                weight=arc.cost,
                capacity=arc.capacity - arc.lower,
            )
        nx.set_node_attributes(G, demand, "demand")
        return G

    def solve(self, network: Network) -> FlowSolution | Infeasible:
        G = self.to_graph(network)
        logger.debug(
            "Solving min-cost flow: %d nodes, %d arcs", G.number_of_nodes(), G.number_of_edges()
        )
        try:
            cost, flow_dict = nx.network_simplex(G)
        except nx.NetworkXUnfeasible as exc:
            logger.info("Min-cost flow infeasible: %s", exc)
            return Infeasible(reason=f"No feasible flow: {exc}")
        except (nx.NetworkXUnbounded, nx.NetworkXError) as exc:
            raise SolverFailure(f"network_simplex failed: {exc}") from exc

        flow: dict[tuple[int, int], int] = {}
        for arc in network.arcs:
            units = int(flow_dict[arc.tail][arc.head]) + arc.lower
            flow[(arc.tail, arc.head)] = units
            cost += arc.lower * arc.cost
        return FlowSolution(flow=flow, cost=int(cost))


def solve_network(
    network: Network,
    solver: MinCostFlowSolver | None = None,
) -> FlowSolution | Infeasible:
    """Solve ``network`` with ``solver`` (default: :class:`NetworkSimplexSolver`)."""
    solver = solver or NetworkSimplexSolver()
    return solver.solve(network)
