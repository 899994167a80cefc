"""Tests for flowmatch/solver.py -- min-cost flow adapter.

Tests cover:
- Optimal assignment on a small hand-checked network
- Lower bounds (include) are honoured and reported in flow and cost
- Infeasibility from the solver is returned, not raised
- Other solver errors raise SolverFailure
- A custom MinCostFlowSolver can be plugged in
"""

from __future__ import annotations

import networkx as nx
import pytest

from flowmatch.edges import EdgeList
from flowmatch.errors import Infeasible, SolverFailure
from flowmatch.network import assemble_network
from flowmatch.solver import (
    FlowSolution,
    MinCostFlowSolver,
    NetworkSimplexSolver,
    solve_network,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _assignment_edges() -> EdgeList:
    # Greedy would give treated 1 control 3 (cost 1) and then treated 2
    # control 4 (cost 10); the optimum crosses over for a total of 4.
    return EdgeList(
        start_n=[1, 1, 2, 2],
        end_n=[3, 4, 3, 4],
        d=[1, 2, 2, 10],
        n_t=2,
        n_c=2,
    )


# ---------------------------------------------------------------------------
# Solving
# ---------------------------------------------------------------------------


def test_solver_finds_optimal_assignment():
    net = assemble_network(_assignment_edges())
    solution = solve_network(net)
    assert isinstance(solution, FlowSolution)
    assert solution.cost == 4
    pairs = {arc for arc in solution.positive_arcs() if 1 <= arc[0] <= 2 and arc[1] in (3, 4)}
    assert pairs == {(1, 4), (2, 3)}


def test_graph_demands_balance():
    net = assemble_network(_assignment_edges())
    G = NetworkSimplexSolver().to_graph(net)
    assert sum(G.nodes[n]["demand"] for n in G.nodes) == 0
    assert G.nodes[0]["demand"] == -2
    assert G.nodes[net.sink]["demand"] == 2


def test_lower_bound_is_folded_and_restored():
    # control 5 is expensive but must be used
    edges = EdgeList(
        start_n=[1, 1, 1],
        end_n=[2, 3, 4],
        d=[1, 2, 50],
        n_t=1,
        n_c=3,
    )
    net = assemble_network(edges, include=[False, False, True])
    solution = solve_network(net)
    assert solution.flow[(1, 4)] == 1
    assert solution.flow[(4, net.sink)] == 1
    assert solution.cost == 50


def test_unbalanced_include_is_infeasible():
    # both included controls can only be reached from treated 1
    edges = EdgeList(start_n=[1, 1, 2], end_n=[4, 5, 3], d=[1, 1, 1], n_t=2, n_c=3)
    net = assemble_network(edges, include=[False, True, True])
    out = solve_network(net)
    assert isinstance(out, Infeasible)
    assert "No feasible flow" in out.reason


def test_other_solver_errors_raise(monkeypatch):
    def _broken(G):
        raise nx.NetworkXUnbounded("negative cycle with infinite capacity")

    monkeypatch.setattr(nx, "network_simplex", _broken)
    net = assemble_network(_assignment_edges())
    with pytest.raises(SolverFailure, match="network_simplex failed"):
        solve_network(net)


def test_custom_solver_is_used():
    class _Fixed(MinCostFlowSolver):
        def __init__(self):
            self.calls = 0

        def solve(self, network):
            self.calls += 1
            return Infeasible(reason="stub")

    solver = _Fixed()
    out = solve_network(assemble_network(_assignment_edges()), solver)
    assert solver.calls == 1
    assert isinstance(out, Infeasible)


def test_abstract_solver_cannot_be_instantiated():
    with pytest.raises(TypeError):
        MinCostFlowSolver()
