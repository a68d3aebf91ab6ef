"""Workflow compiler: validates an authored node graph and assembles a LangGraph state machine."""
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

import structlog
from langgraph.graph import END, START, StateGraph

from support_workflow.agent.conditions import Condition
from support_workflow.agent.context import get_variables
from support_workflow.agent.nodes import (
    NodeServices,
    emotion_detector_node,
    escalation_offer_node,
    handoff_node,
    rag_node,
    smart_chat_node,
)
from support_workflow.agent.state import WorkflowState
from support_workflow.config import Settings, get_settings
from support_workflow.exceptions import (
    DuplicateNodeIdError,
    InvalidNodeIdError,
    InvalidStartEdgesError,
    MultipleStartError,
    NoEndError,
    NoReachableEndError,
    NoStartError,
)
from support_workflow.models import NodeType, WorkflowDefinition, WorkflowEdge

logger = structlog.get_logger(__name__)

NodeHandler = Callable[[WorkflowState, Any, NodeServices], Awaitable[Dict[str, Any]]]

NODE_HANDLERS: Dict[str, NodeHandler] = {
    NodeType.EMOTION_DETECTOR.value: emotion_detector_node,
    NodeType.RAG.value: rag_node,
    NodeType.SMART_CHAT.value: smart_chat_node,
    NodeType.ESCALATION_OFFER.value: escalation_offer_node,
    NodeType.HANDOFF.value: handoff_node,
}

CONTROL_TYPES = {NodeType.START.value, NodeType.END.value}
RESERVED_ID_CHARS = ("|", ":")
# LangGraph rejects node names that collide with its sentinels or state keys
RESERVED_IDS = {START, END, *WorkflowState.__annotations__}


@dataclass(frozen=True)
class DirectRoute:
    source: str
    target: str


@dataclass(frozen=True)
class ConditionalRoute:
    """First truthy condition wins, else the unconditioned edge, else END."""
    source: str
    branches: Tuple[Tuple[Condition, str], ...]
    default: Optional[str] = None

    def resolve(self, variables: Dict[str, Any]) -> str:
        for condition, target in self.branches:
            if condition.evaluate(variables):
                return target
        return self.default or END


Route = Union[DirectRoute, ConditionalRoute]


@dataclass
class CompiledWorkflow:
    """A validated workflow ready to run."""
    workflow_id: str
    name: str
    graph: Any
    routes: Dict[str, Route]
    nodes: List[str]
    excluded_nodes: List[str] = field(default_factory=list)
    has_cycle: bool = False
    recursion_limit: int = 25

    async def ainvoke(self, state: WorkflowState) -> WorkflowState:
        return await self.graph.ainvoke(state, config={"recursion_limit": self.recursion_limit})


def _bind(handler: NodeHandler, node_config: Any, services: NodeServices):
    async def run(state: WorkflowState) -> Dict[str, Any]:
        return await handler(state, node_config, services)

    return run


def _find_cycle(nodes: List[str], adjacency: Dict[str, List[str]]) -> bool:
    visiting: Set[str] = set()
    done: Set[str] = set()

    def visit(node: str) -> bool:
        visiting.add(node)
        for nxt in adjacency.get(node, []):
            if nxt in visiting:
                return True
            if nxt not in done and visit(nxt):
                return True
        visiting.discard(node)
        done.add(node)
        return False

    return any(node not in done and visit(node) for node in nodes)


class WorkflowCompiler:
    """Compiles WorkflowDefinitions against a fixed set of node services."""

    def __init__(self, services: NodeServices, settings: Optional[Settings] = None):
        self.services = services
        self.settings = settings or get_settings()

    def compile(self, definition: WorkflowDefinition) -> CompiledWorkflow:
        """
        Validate and assemble a workflow.

        Args:
            definition: The authored workflow

        Returns:
            CompiledWorkflow

        Raises:
            StructuralError: missing/multiple START, no END, no reachable END,
                invalid START edges, or invalid/duplicate node ids
        """
        log = logger.bind(workflow_id=definition.id)
        nodes = {}
        for node in definition.nodes:
            if any(ch in node.id for ch in RESERVED_ID_CHARS) or node.id in RESERVED_IDS:
                raise InvalidNodeIdError(f"Invalid node id: {node.id!r}", {"node_id": node.id})
            if node.id in nodes:
                raise DuplicateNodeIdError(f"Duplicate node id: {node.id!r}", {"node_id": node.id})
            nodes[node.id] = node

        starts = [n.id for n in definition.nodes if n.type == NodeType.START.value]
        if not starts:
            raise NoStartError("Workflow has no start node", {"workflow_id": definition.id})
        if len(starts) > 1:
            raise MultipleStartError("Workflow has multiple start nodes", {"start_nodes": starts})
        start_id = starts[0]

        end_ids = {n.id for n in definition.nodes if n.type == NodeType.END.value}
        if not end_ids:
            raise NoEndError("Workflow has no end node", {"workflow_id": definition.id})

        edges: List[WorkflowEdge] = []
        for edge in definition.edges:
            if edge.source not in nodes or edge.target not in nodes:
                log.warning("edge_unknown_node_dropped", edge_id=edge.id, source=edge.source, target=edge.target)
                continue
            if edge.target == start_id:
                log.warning("edge_into_start_dropped", edge_id=edge.id)
                continue
            edges.append(edge)

        adjacency: Dict[str, List[str]] = {}
        for edge in edges:
            adjacency.setdefault(edge.source, []).append(edge.target)

        reachable = {start_id}
        queue = deque([start_id])
        while queue:
            current = queue.popleft()
            for nxt in adjacency.get(current, []):
                if nxt not in reachable:
                    reachable.add(nxt)
                    queue.append(nxt)

        excluded = [n.id for n in definition.nodes if n.id not in reachable]
        for node_id in excluded:
            log.warning("unreachable_node_excluded", node_id=node_id, node_type=nodes[node_id].type)

        if not end_ids & reachable:
            raise NoReachableEndError("No end node is reachable from start", {"workflow_id": definition.id})

        wired = [e for e in edges if e.source in reachable and e.target in reachable]

        start_edges = [e for e in wired if e.source == start_id]
        if len(start_edges) != 1 or start_edges[0].condition:
            raise InvalidStartEdgesError(
                "Start node must have exactly one unconditional outgoing edge",
                {"edge_count": len(start_edges)},
            )

        def target_key(node_id: str) -> str:
            return END if node_id in end_ids else node_id

        action_ids = [
            n.id for n in definition.nodes
            if n.id in reachable and n.type not in CONTROL_TYPES
        ]

        graph = StateGraph(WorkflowState)
        for node_id in action_ids:
            node = nodes[node_id]
            graph.add_node(node_id, _bind(NODE_HANDLERS[node.type], node.config, self.services))

        graph.add_edge(START, target_key(start_edges[0].target))

        routes: Dict[str, Route] = {}
        action_adjacency: Dict[str, List[str]] = {}
        for node_id in action_ids:
            outgoing = [e for e in wired if e.source == node_id]
            action_adjacency[node_id] = [e.target for e in outgoing if e.target not in end_ids]

            if not outgoing:
                route: Route = DirectRoute(node_id, END)
                graph.add_edge(node_id, END)
            elif len(outgoing) == 1 and not outgoing[0].condition:
                route = DirectRoute(node_id, target_key(outgoing[0].target))
                graph.add_edge(node_id, route.target)
            else:
                branches = tuple(
                    (Condition(e.condition), target_key(e.target)) for e in outgoing if e.condition
                )
                default = next((target_key(e.target) for e in outgoing if not e.condition), None)
                route = ConditionalRoute(node_id, branches, default)
                path_map = {target_key(e.target): target_key(e.target) for e in outgoing}
                path_map[END] = END
                graph.add_conditional_edges(node_id, self._router(route), path_map)
            routes[node_id] = route

        has_cycle = _find_cycle(action_ids, action_adjacency)
        if has_cycle:
            log.warning("workflow_cycle_detected", recursion_limit=self.settings.workflow_recursion_limit)

        compiled = CompiledWorkflow(
            workflow_id=definition.id,
            name=definition.name,
            graph=graph.compile(),
            routes=routes,
            nodes=action_ids,
            excluded_nodes=excluded,
            has_cycle=has_cycle,
            recursion_limit=self.settings.workflow_recursion_limit,
        )
        log.info("workflow_compiled", nodes=len(action_ids), excluded=len(excluded), has_cycle=has_cycle)
        return compiled

    @staticmethod
    def _router(route: ConditionalRoute) -> Callable[[WorkflowState], str]:
        def route_next(state: WorkflowState) -> str:
            return route.resolve(get_variables(state))

        return route_next
