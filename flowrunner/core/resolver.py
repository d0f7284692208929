"""Graph resolver: turns a persisted flow into an executable plan.

Resolution normalizes every node's data, resolves its handles, checks every
edge against the handle type system and computes loop structure: which nodes
form each loop's body and the stack of loops enclosing each node. All
structural problems are collected and raised together as one GraphError.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field

import networkx as nx

from flowrunner.core.exceptions import GraphError, GraphIssue, SchemaError
from flowrunner.core.flow_schema import NodeData, NodeHandles, SpecEdge, SpecFlow, SpecNode
from flowrunner.core.handles import check_edge, find_handle, resolve_handles
from flowrunner.core.migrations import migrate_flow, migrate_node_data
from flowrunner.core.registry import ControlKind, NodeDefinition, NodeRegistry

logger = logging.getLogger(__name__)

# Output handles of a loop node that enter its body
LOOP_BODY_HANDLES = frozenset({"item", "index"})
# Input handle of a loop node that marks the end of its body
LOOP_NEXT_HANDLE = "next"

MAX_CYCLES_TO_REPORT = 10


@dataclass(frozen=True)
class InputBinding:
    """One edge feeding an input handle"""

    target_handle: str | None
    source: str
    source_handle: str | None
    edge_id: str


@dataclass
class PlannedNode:
    """A node with its definition, validated data and resolved handles"""

    node: SpecNode
    definition: NodeDefinition
    data: NodeData
    handles: NodeHandles
    index: int  # Authored position, used to break scheduling ties

    @property
    def id(self) -> str:
        return self.node.id

    @property
    def type(self) -> str:
        return self.node.type

    def output_ids(self) -> set[str | None]:
        return {h.id for h in self.handles.outputs}


@dataclass
class ExecutionPlan:
    """Everything the engine needs to run a flow."""

    flow: SpecFlow
    nodes: dict[str, PlannedNode]
    bindings: dict[str, list[InputBinding]]
    loop_scopes: dict[str, tuple[str, ...]]
    loop_bodies: dict[str, frozenset[str]]
    start_nodes: list[str]
    back_edges: frozenset[str] = frozenset()
    # Loop id -> end-of-body edges feeding its 'next' input, in authored order
    loop_end_bindings: dict[str, list[InputBinding]] = field(default_factory=dict)
    # Scope stack -> node ids of that region in execution order
    regions: dict[tuple[str, ...], list[str]] = field(default_factory=dict)

    def region(self, scope: tuple[str, ...]) -> list[str]:
        return self.regions.get(scope, [])

    def scope_of(self, node_id: str) -> tuple[str, ...]:
        return self.loop_scopes.get(node_id, ())

    def outgoing(self, node_id: str) -> list[SpecEdge]:
        return [e for e in self.flow.edges if e.source == node_id and e.id not in self.back_edges]

    @property
    def order(self) -> list[str]:
        return sorted(self.nodes, key=lambda n: self.nodes[n].index)


@dataclass
class _Analysis:
    """Intermediate results shared by validate() and resolve()"""

    planned: dict[str, PlannedNode] = field(default_factory=dict)
    issues: list[GraphIssue] = field(default_factory=list)
    schema_errors: list[SchemaError] = field(default_factory=list)
    bindings: dict[str, list[InputBinding]] = field(default_factory=dict)
    back_edges: set[str] = field(default_factory=set)
    loop_end_bindings: dict[str, list[InputBinding]] = field(default_factory=dict)
    loop_bodies: dict[str, frozenset[str]] = field(default_factory=dict)
    loop_scopes: dict[str, tuple[str, ...]] = field(default_factory=dict)
    graph: nx.MultiDiGraph | None = None
    flow: SpecFlow | None = None


class GraphResolver:
    """Validates flows and builds execution plans."""

    def __init__(self, registry: NodeRegistry):
        self.registry = registry

    def validate(self, flow: SpecFlow) -> list[GraphIssue]:
        """Return every problem with ``flow`` without raising.

        Schema problems (bad node data) are reported as issues too.
        """
        analysis = self._analyze(flow)
        schema_issues = [
            GraphIssue(f"{e.field}: {e.message}" if e.field else e.message, node_id=e.node_id)
            for e in analysis.schema_errors
        ]
        # Every node of an acyclic flow is reachable from some start node
        required = self._check_required_inputs(analysis, set(analysis.planned))
        return schema_issues + analysis.issues + required

    def resolve(
        self,
        flow: SpecFlow,
        start_node_id: str | None = None,
        end_node_id: str | None = None,
    ) -> ExecutionPlan:
        """Build the execution plan for ``flow``.

        Args:
            flow: The flow to resolve
            start_node_id: Run only this node and its descendants
            end_node_id: Run only this node and its ancestors

        Raises:
            SchemaError: If a node's data cannot be migrated or validated
            GraphError: If the flow is structurally invalid
        """
        analysis = self._analyze(flow)
        if analysis.schema_errors:
            raise analysis.schema_errors[0]

        issues = list(analysis.issues)
        for node_id in (start_node_id, end_node_id):
            if node_id is not None and node_id not in analysis.planned:
                issues.append(GraphIssue("node not found or not executable", node_id=node_id))
        if start_node_id is not None and analysis.loop_scopes.get(start_node_id):
            issues.append(
                GraphIssue("cannot start inside a loop body; start from the loop node", node_id=start_node_id)
            )
        if issues:
            raise GraphError(issues)

        G = analysis.graph
        if start_node_id is not None:
            start_nodes = [start_node_id]
        else:
            start_nodes = self._default_starts(analysis.flow, analysis)

        selected: set[str] = set()
        for node_id in start_nodes:
            selected.add(node_id)
            selected |= nx.descendants(G, node_id)
        if end_node_id is not None:
            selected &= nx.ancestors(G, end_node_id) | {end_node_id}

        # Required inputs only matter for nodes that will actually run
        issues = self._check_required_inputs(analysis, selected)
        if issues:
            raise GraphError(issues)

        nodes = {nid: pn for nid, pn in analysis.planned.items() if nid in selected}
        plan = ExecutionPlan(
            flow=analysis.flow,
            nodes=nodes,
            bindings={nid: analysis.bindings.get(nid, []) for nid in nodes},
            loop_scopes={nid: analysis.loop_scopes.get(nid, ()) for nid in nodes},
            loop_bodies={
                loop_id: frozenset(body & selected)
                for loop_id, body in analysis.loop_bodies.items()
                if loop_id in selected
            },
            start_nodes=[s for s in start_nodes if s in selected],
            back_edges=frozenset(analysis.back_edges),
            loop_end_bindings={
                loop_id: [b for b in bindings if b.source in selected]
                for loop_id, bindings in analysis.loop_end_bindings.items()
                if loop_id in selected
            },
        )
        plan.regions = self._order_regions(plan, G)
        logger.debug(
            f"Resolved plan: {len(nodes)} nodes, {len(plan.loop_bodies)} loops, "
            f"start={plan.start_nodes}"
        )
        return plan

    # ========== Analysis ==========

    @staticmethod
    def _authored(planned: dict[str, PlannedNode]) -> list[str]:
        return sorted(planned, key=lambda n: planned[n].index)

    def _default_starts(self, flow: SpecFlow, analysis: _Analysis) -> list[str]:
        """Every executable node without incoming edges, in authored order."""
        targets = {e.target for e in flow.edges}
        return [nid for nid in self._authored(analysis.planned) if nid not in targets]

    def _analyze(self, flow: SpecFlow) -> _Analysis:
        analysis = _Analysis()
        issues = analysis.issues

        # Upgrade node data and apply edge rewrites (e.g. renamed handles) first
        flow = migrate_flow(flow, self.registry, analysis.schema_errors)
        analysis.flow = flow
        failed = {e.node_id for e in analysis.schema_errors}

        dup_nodes, dup_edges = flow.duplicate_ids()
        issues.extend(GraphIssue("duplicate node id", node_id=n) for n in dup_nodes)
        issues.extend(GraphIssue("duplicate edge id", edge_id=e) for e in dup_edges)

        # Nodes: definition, data, handles
        node_map = flow.node_map()
        visual: set[str] = set()
        all_handles: dict[str, NodeHandles] = {}
        for index, node in enumerate(flow.nodes):
            if node_map[node.id] is not node or node.id in failed:
                continue
            definition = self.registry.get(node.type)
            if definition is None:
                issues.append(GraphIssue(f"unknown node type '{node.type}'", node_id=node.id))
                continue
            try:
                data = migrate_node_data(definition, node.id, node.data)
            except SchemaError as e:
                analysis.schema_errors.append(e)
                continue
            handles = resolve_handles(definition, data)
            all_handles[node.id] = handles
            if definition.is_visual:
                visual.add(node.id)
                continue
            analysis.planned[node.id] = PlannedNode(node, definition, data, handles, index)

        # Edges: endpoints, handles, categories, bindings
        per_handle: dict[tuple[str, str | None], list[SpecEdge]] = {}
        G = nx.MultiDiGraph()
        G.add_nodes_from(analysis.planned)
        for edge in flow.edges:
            missing = [n for n in (edge.source, edge.target) if n not in node_map]
            if missing:
                issues.append(GraphIssue(f"references missing node(s) {', '.join(missing)}", edge_id=edge.id))
                continue
            if edge.source in visual or edge.target in visual:
                issues.append(GraphIssue("edges cannot touch visual nodes", edge_id=edge.id))
                continue
            if edge.source not in all_handles or edge.target not in all_handles:
                continue  # Endpoint already reported (unknown type or bad data)

            for problem in check_edge(edge, all_handles[edge.source], all_handles[edge.target]):
                issues.append(GraphIssue(problem, edge_id=edge.id))
            target_handle = find_handle(all_handles[edge.target], edge.target_handle, "input")
            source_handle = find_handle(all_handles[edge.source], edge.source_handle, "output")
            if target_handle is None or source_handle is None:
                continue

            target = analysis.planned[edge.target]
            if target.definition.control == ControlKind.LOOP and target_handle.id == LOOP_NEXT_HANDLE:
                analysis.back_edges.add(edge.id)
                analysis.loop_end_bindings.setdefault(edge.target, []).append(
                    InputBinding(target_handle.id, edge.source, source_handle.id, edge.id)
                )
                continue

            per_handle.setdefault((edge.target, target_handle.id), []).append(edge)
            analysis.bindings.setdefault(edge.target, []).append(
                InputBinding(target_handle.id, edge.source, source_handle.id, edge.id)
            )
            G.add_edge(edge.source, edge.target, key=edge.id, source_handle=source_handle.id)

        for (node_id, handle_id), edges in per_handle.items():
            if len(edges) > 1:
                issues.append(
                    GraphIssue(
                        f"input '{handle_id}' has {len(edges)} incoming edges "
                        f"({', '.join(e.id for e in edges)}); at most one is allowed",
                        node_id=node_id,
                    )
                )

        analysis.graph = G
        if self._check_cycles(G, issues):
            self._analyze_loops(flow, analysis)
        return analysis

    def _check_cycles(self, G: nx.MultiDiGraph, issues: list[GraphIssue]) -> bool:
        """Report cycles formed by ordinary edges. Returns True if acyclic."""
        if nx.is_directed_acyclic_graph(G):
            return True
        for count, cycle in enumerate(nx.simple_cycles(nx.DiGraph(G)), start=1):
            if count > MAX_CYCLES_TO_REPORT:
                issues.append(GraphIssue(f"more than {MAX_CYCLES_TO_REPORT} cycles found"))
                break
            path = " -> ".join([*cycle, cycle[0]])
            issues.append(
                GraphIssue(f"cycle outside a loop's end-of-body edges: {path}", node_id=cycle[0])
            )
        return False

    def _analyze_loops(self, flow: SpecFlow, analysis: _Analysis) -> None:
        G = analysis.graph
        issues = analysis.issues
        loops = [
            nid
            for nid in self._authored(analysis.planned)
            if analysis.planned[nid].definition.control == ControlKind.LOOP
        ]

        exits: dict[str, set[str]] = {}
        for loop_id in loops:
            body: set[str] = set()
            exit_reach: set[str] = set()
            for _, target, data in G.out_edges(loop_id, data=True):
                side = body if data.get("source_handle") in LOOP_BODY_HANDLES else exit_reach
                side.add(target)
            body = self._reach(G, body, stop=loop_id)
            exits[loop_id] = self._reach(G, exit_reach, stop=loop_id)
            analysis.loop_bodies[loop_id] = frozenset(body)

            for node_id in sorted(body & exits[loop_id], key=lambda n: analysis.planned[n].index):
                issues.append(
                    GraphIssue(
                        f"reachable from both the body and the exit of loop {loop_id}",
                        node_id=node_id,
                    )
                )

        # Bodies either nest or are disjoint
        for i, outer in enumerate(loops):
            for inner in loops[i + 1:]:
                a, b = analysis.loop_bodies[outer], analysis.loop_bodies[inner]
                if not a & b:
                    continue
                nested = (inner in a and b <= a) or (outer in b and a <= b)
                if not nested:
                    issues.append(
                        GraphIssue(f"loop bodies of {outer} and {inner} overlap without nesting", node_id=inner)
                    )

        # Scope stacks: enclosing loops ordered outermost first
        for node_id, planned in analysis.planned.items():
            enclosing = [loop_id for loop_id in loops if node_id in analysis.loop_bodies[loop_id]]
            enclosing.sort(key=lambda loop_id: (-len(analysis.loop_bodies[loop_id]), analysis.planned[loop_id].index))
            analysis.loop_scopes[node_id] = tuple(enclosing)

            control = planned.definition.control
            if control in (ControlKind.LOOP_BREAK, ControlKind.LOOP_CONTINUE) and not enclosing:
                issues.append(
                    GraphIssue(
                        f"'{planned.type}' must be inside a loop body",
                        node_id=node_id,
                    )
                )

        for edge in flow.edges:
            if edge.id in analysis.back_edges and edge.source not in analysis.loop_bodies.get(edge.target, ()):
                issues.append(
                    GraphIssue(
                        f"end-of-body edge into loop {edge.target} must come from inside its body",
                        edge_id=edge.id,
                    )
                )

    @staticmethod
    def _reach(G: nx.MultiDiGraph, seeds: set[str], stop: str) -> set[str]:
        """Nodes reachable from ``seeds`` without passing through ``stop``."""
        seen = {s for s in seeds if s != stop}
        queue = deque(seen)
        while queue:
            current = queue.popleft()
            for successor in G.successors(current):
                if successor != stop and successor not in seen:
                    seen.add(successor)
                    queue.append(successor)
        return seen

    def _check_required_inputs(self, analysis: _Analysis, selected: set[str]) -> list[GraphIssue]:
        issues = []
        for node_id in self._authored(analysis.planned):
            if node_id not in selected:
                continue
            bound = {b.target_handle for b in analysis.bindings.get(node_id, [])}
            for handle in analysis.planned[node_id].handles.inputs:
                if handle.required and handle.id not in bound:
                    issues.append(
                        GraphIssue(f"required input '{handle.id}' is not connected", node_id=node_id)
                    )
        return issues

    # ========== Region ordering ==========

    def _order_regions(self, plan: ExecutionPlan, G: nx.MultiDiGraph) -> dict[tuple[str, ...], list[str]]:
        """Topologically order each region, lifting edges into nested bodies.

        An edge whose target lies deeper than the region is attributed to the
        region's loop node that encloses the target. Ties break on authored
        order so runs are deterministic.
        """
        scopes: dict[tuple[str, ...], list[str]] = {}
        for node_id in plan.order:
            scopes.setdefault(plan.scope_of(node_id), []).append(node_id)

        regions: dict[tuple[str, ...], list[str]] = {}
        for scope, members in scopes.items():
            depth = len(scope)
            member_set = set(members)
            H = nx.DiGraph()
            H.add_nodes_from(members)
            for source, target in G.edges():
                if source not in plan.nodes or target not in plan.nodes:
                    continue
                lifted = [self._lift(plan.scope_of(n), n, scope, depth) for n in (source, target)]
                u, v = lifted
                if u in member_set and v in member_set and u != v:
                    H.add_edge(u, v)
            index = {n: plan.nodes[n].index for n in members}
            regions[scope] = list(nx.lexicographical_topological_sort(H, key=index.__getitem__))
        return regions

    @staticmethod
    def _lift(node_scope: tuple[str, ...], node_id: str, scope: tuple[str, ...], depth: int) -> str | None:
        if node_scope == scope:
            return node_id
        if node_scope[:depth] == scope and len(node_scope) > depth:
            return node_scope[depth]
        return None
