"""Workflow graph schema definitions using Pydantic models.

A workflow is a list of typed nodes. There is no separate edge entity:
control-flow nodes embed the ids of the nodes they schedule inside their own
config (a condition's thenNodeId/elseNodeId, a loop's loopNodeId, a parallel
node's paths, and any node's nextNodeId).

Each node type has its own config model, validated when the graph is loaded
rather than lazily inside the handlers. Config keys are camelCase on the wire
and snake_case in Python.

Security-first design:
- No arbitrary code execution in conditions (structured operators only)
- Loop protection via maxIterations
- Reference cycles rejected before execution (no unbounded recursion)
"""

from enum import Enum
from typing import Annotated, Any, Literal, Union

import networkx as nx
from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    PrivateAttr,
    Tag,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from nodeflow.core.errors import GraphValidationError, MalformedConfigError, NodeNotFoundError
from nodeflow.core.expressions import ConditionOperator


class NodeType(str, Enum):
    """Supported node types in workflow graphs"""

    TRIGGER = "trigger"  # Entry marker, no computation
    CONDITION = "condition"  # First-match branching
    LOOP = "loop"  # Bounded iteration over an array
    PARALLEL = "parallel"  # Concurrent side-effect branches
    API_CALL = "api_call"  # Outbound HTTP call
    DATABASE_QUERY = "database_query"  # Entity store operation
    DATA_TRANSFORM = "data_transform"  # Transformation pipeline
    FILTER = "filter"  # Keep array items matching all conditions
    DELAY = "delay"  # Suspend before continuing
    OUTPUT = "output"  # Terminal marker, no computation


class _WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Condition(_WireModel):
    """
    Safe, declarative condition: `lookup(field) <operator> value`.
    NO arbitrary code execution - only structured operators.
    """

    field: str | None = None  # Dotted path, resolved against the context or filter item
    operator: ConditionOperator | None = None  # Missing operator never matches
    value: Any = None
    then_node_id: str | None = None  # Only meaningful on condition nodes


class NodeConfig(_WireModel):
    """Fields shared by every node config."""

    next_node_id: str | None = None  # Continue here after this node returns


class TriggerConfig(NodeConfig):
    """Configuration for TRIGGER nodes - nothing to configure"""


class OutputConfig(NodeConfig):
    """Configuration for OUTPUT nodes - nothing to configure"""


class ConditionConfig(NodeConfig):
    """Configuration for CONDITION nodes - first matching condition wins"""

    conditions: list[Condition] = Field(default_factory=list)
    else_node_id: str | None = None


class LoopConfig(NodeConfig):
    """Configuration for LOOP nodes - sequential iteration with a hard cap"""

    array_field: str | None = None
    item_variable_name: str | None = None
    loop_node_id: str | None = None  # Body; runs once per item
    max_iterations: int | None = Field(default=None, ge=0)  # 0/None -> engine default


class ParallelPath(_WireModel):
    node_id: str | None = None


class ParallelConfig(NodeConfig):
    """Configuration for PARALLEL nodes - fan-out, join, discard branch contexts"""

    paths: list[ParallelPath] = Field(default_factory=list)


class ApiCallConfig(NodeConfig):
    """Configuration for API_CALL nodes"""

    method: str = "GET"
    url: str = Field(min_length=1)  # Supports {field} placeholders
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None  # Strings are sent as-is, anything else JSON-encoded
    response_variable_name: str | None = None

    @field_validator("method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return v.strip().upper() or "GET"


class DatabaseQueryConfig(NodeConfig):
    """Configuration for DATABASE_QUERY nodes"""

    entity_name: str = Field(min_length=1)
    operation: Literal["list", "filter", "create", "update", "delete"] | None = None
    filter: dict[str, Any] | None = None  # update/delete read filter.id
    data: dict[str, Any] | None = None
    variable_name: str | None = None


class Transformation(_WireModel):
    type: str  # Unknown types pass values through unchanged
    params: dict[str, Any] = Field(default_factory=dict)


class DataTransformConfig(NodeConfig):
    """Configuration for DATA_TRANSFORM nodes - ordered transform pipeline"""

    source_variable: str | None = None
    transformations: list[Transformation] = Field(default_factory=list)
    output_variable: str | None = None


class FilterConfig(NodeConfig):
    """Configuration for FILTER nodes - all conditions must hold per item"""

    array_variable: str | None = None
    conditions: list[Condition] = Field(default_factory=list)
    output_variable: str | None = None


class DelayConfig(NodeConfig):
    """Configuration for DELAY nodes"""

    duration: float = Field(default=0, ge=0)
    unit: Literal["seconds", "minutes", "hours"] = "seconds"

    @property
    def seconds(self) -> float:
        multiplier = {"seconds": 1, "minutes": 60, "hours": 3600}[self.unit]
        return self.duration * multiplier


class _NodeBase(BaseModel):
    """Fields shared by every node."""

    id: str = Field(min_length=1)
    name: str | None = None  # Display only

    @property
    def next_node_id(self) -> str | None:
        return self.config.next_node_id

    @property
    def label(self) -> str:
        return self.name or self.id


class TriggerNode(_NodeBase):
    type: Literal["trigger"] = "trigger"
    config: TriggerConfig = Field(default_factory=TriggerConfig)


class ConditionNode(_NodeBase):
    type: Literal["condition"] = "condition"
    config: ConditionConfig = Field(default_factory=ConditionConfig)


class LoopNode(_NodeBase):
    type: Literal["loop"] = "loop"
    config: LoopConfig = Field(default_factory=LoopConfig)


class ParallelNode(_NodeBase):
    type: Literal["parallel"] = "parallel"
    config: ParallelConfig = Field(default_factory=ParallelConfig)


class ApiCallNode(_NodeBase):
    type: Literal["api_call"] = "api_call"
    config: ApiCallConfig


class DatabaseQueryNode(_NodeBase):
    type: Literal["database_query"] = "database_query"
    config: DatabaseQueryConfig


class DataTransformNode(_NodeBase):
    type: Literal["data_transform"] = "data_transform"
    config: DataTransformConfig = Field(default_factory=DataTransformConfig)


class FilterNode(_NodeBase):
    type: Literal["filter"] = "filter"
    config: FilterConfig = Field(default_factory=FilterConfig)


class DelayNode(_NodeBase):
    type: Literal["delay"] = "delay"
    config: DelayConfig = Field(default_factory=DelayConfig)


class OutputNode(_NodeBase):
    type: Literal["output"] = "output"
    config: OutputConfig = Field(default_factory=OutputConfig)


class UnknownNode(_NodeBase):
    """A node type this engine does not know.

    Graphs authored by newer tools may carry types added after this release.
    They load, execute as a no-op, and still honor nextNodeId.
    """

    type: str
    config: dict[str, Any] = Field(default_factory=dict)

    @property
    def next_node_id(self) -> str | None:
        value = self.config.get("nextNodeId")
        return value if isinstance(value, str) and value else None


_KNOWN_TYPES = frozenset(t.value for t in NodeType)


def _node_kind(value: Any) -> str:
    """Pick the union member for a raw node mapping or a node instance."""
    node_type = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    if isinstance(node_type, NodeType):
        node_type = node_type.value
    return node_type if node_type in _KNOWN_TYPES else "unknown"


Node = Annotated[
    Union[
        Annotated[TriggerNode, Tag("trigger")],
        Annotated[ConditionNode, Tag("condition")],
        Annotated[LoopNode, Tag("loop")],
        Annotated[ParallelNode, Tag("parallel")],
        Annotated[ApiCallNode, Tag("api_call")],
        Annotated[DatabaseQueryNode, Tag("database_query")],
        Annotated[DataTransformNode, Tag("data_transform")],
        Annotated[FilterNode, Tag("filter")],
        Annotated[DelayNode, Tag("delay")],
        Annotated[OutputNode, Tag("output")],
        Annotated[UnknownNode, Tag("unknown")],
    ],
    Discriminator(_node_kind),
]


def child_references(node: Node) -> list[tuple[str, str]]:
    """List the (config path, node id) pairs a node may schedule."""
    refs: list[tuple[str, str]] = []

    match node:
        case ConditionNode(config=config):
            for idx, condition in enumerate(config.conditions):
                if condition.then_node_id:
                    refs.append((f"conditions[{idx}].thenNodeId", condition.then_node_id))
            if config.else_node_id:
                refs.append(("elseNodeId", config.else_node_id))
        case LoopNode(config=config):
            if config.loop_node_id:
                refs.append(("loopNodeId", config.loop_node_id))
        case ParallelNode(config=config):
            for idx, path in enumerate(config.paths):
                if path.node_id:
                    refs.append((f"paths[{idx}].nodeId", path.node_id))
        case _:
            pass

    if node.next_node_id:
        refs.append(("nextNodeId", node.next_node_id))
    return refs


class WorkflowGraph(BaseModel):
    """Complete workflow definition: the node list of one invocation."""

    nodes: list[Node]

    _node_map: dict[str, Node] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        # First occurrence wins; duplicates are reported by validate_graph()
        for node in self.nodes:
            self._node_map.setdefault(node.id, node)

    @classmethod
    def load(cls, nodes: list[dict[str, Any]]) -> "WorkflowGraph":
        """
        Build and validate a graph from wire-format node mappings.

        Raises:
            MalformedConfigError: A node does not match its type's schema
            NodeNotFoundError: A node references an id that does not exist
            GraphValidationError: Any other structural problem
        """
        try:
            graph = cls(nodes=nodes)
        except ValidationError as e:
            raise MalformedConfigError(_format_validation_errors(e, nodes)) from e

        missing = graph.dangling_references()
        if missing:
            source, target = missing[0]
            raise NodeNotFoundError(target, referenced_by=source)

        errors = graph.validate_graph()
        if errors:
            raise GraphValidationError(errors)
        return graph

    # ========== Lookups ==========

    def get_node(self, node_id: str) -> Node | None:
        return self._node_map.get(node_id)

    @property
    def entry_node(self) -> Node:
        return self.nodes[0]

    def referenced_ids(self) -> set[str]:
        return {target for node in self.nodes for _, target in child_references(node)}

    def root_nodes(self) -> list[Node]:
        """
        Nodes on the main path, in list order.

        The entry node always comes first. Every other node runs at top level
        only if no node references it; referenced nodes run when scheduled.
        """
        if not self.nodes:
            return []
        referenced = self.referenced_ids()
        entry = self.entry_node
        return [entry] + [
            n for n in self.nodes[1:] if n.id not in referenced and n.id != entry.id
        ]

    def dangling_references(self) -> list[tuple[str, str]]:
        """(source node id, missing target id) for every unresolved reference."""
        return [
            (node.id, target)
            for node in self.nodes
            for _, target in child_references(node)
            if target not in self._node_map
        ]

    # ========== Validation ==========

    def validate_graph(self) -> list[str]:
        """
        Validate graph structure using NetworkX.
        Returns list of validation errors.
        """
        errors = []

        if not self.nodes:
            return ["No nodes to execute"]

        # Check for duplicate node IDs (critical - lookups would be ambiguous)
        seen_node_ids = set()
        for node in self.nodes:
            if node.id in seen_node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_node_ids.add(node.id)

        # Check all references exist
        for source, target in self.dangling_references():
            errors.append(f"Node '{source}': referenced node '{target}' not found")

        # Check for reference cycles - they would recurse without bound
        # Limit cycle enumeration to prevent DoS on complex graphs
        MAX_CYCLES_TO_REPORT = 10
        MAX_NODES_FOR_FULL_CYCLE_CHECK = 50
        G = self._to_networkx()
        try:
            if len(self.nodes) > MAX_NODES_FOR_FULL_CYCLE_CHECK:
                try:
                    cycle = nx.find_cycle(G)
                    cycle_path = " -> ".join(edge[0] for edge in cycle)
                    errors.append(
                        f"Reference cycle detected: {cycle_path}... "
                        f"(graph too large for full cycle analysis)"
                    )
                except nx.NetworkXNoCycle:
                    pass  # No cycles - OK
            else:
                for cycle_count, cycle in enumerate(nx.simple_cycles(G), start=1):
                    if cycle_count > MAX_CYCLES_TO_REPORT:
                        errors.append(
                            f"Too many reference cycles (>{MAX_CYCLES_TO_REPORT}). "
                            f"Simplify graph structure."
                        )
                        break
                    errors.append(f"Reference cycle: {' -> '.join(cycle + cycle[:1])}")
        except nx.NetworkXError as e:
            errors.append(f"Could not perform cycle detection: {e}")

        return errors

    def graph_warnings(self) -> list[str]:
        """Non-fatal authoring issues worth surfacing to the graph author."""
        warnings = []
        if not self.nodes:
            return warnings

        if self.entry_node.type != NodeType.TRIGGER:
            warnings.append(
                f"First node '{self.entry_node.id}' is a '{self.entry_node.type}' node, "
                f"not a trigger"
            )

        for node in self.nodes:
            match node:
                case UnknownNode():
                    warnings.append(
                        f"Node '{node.id}': unknown type '{node.type}' will be skipped"
                    )
                case ConditionNode(config=config):
                    has_target = config.else_node_id or any(
                        c.then_node_id for c in config.conditions
                    )
                    if not has_target:
                        warnings.append(f"Condition node '{node.id}' has no branch targets")
                case LoopNode(config=config):
                    if not config.loop_node_id:
                        warnings.append(f"Loop node '{node.id}' has no loopNodeId (empty body)")
                    if not config.array_field:
                        warnings.append(f"Loop node '{node.id}' has no arrayField")
                case ParallelNode(config=config):
                    if not any(p.node_id for p in config.paths):
                        warnings.append(f"Parallel node '{node.id}' has no paths")
                case _:
                    pass

            if isinstance(node, (ConditionNode, FilterNode)):
                for index, condition in enumerate(node.config.conditions):
                    if condition.operator is None:
                        warnings.append(
                            f"Node '{node.id}': conditions[{index}] has no operator "
                            f"and never matches"
                        )

        return warnings

    def _to_networkx(self) -> nx.DiGraph:
        """Convert references to a NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for node in self.nodes:
            for label, target in child_references(node):
                if target in self._node_map:
                    G.add_edge(node.id, target, label=label)
        return G

    def get_terminal_nodes(self) -> set[str]:
        """Find nodes that schedule nothing"""
        G = self._to_networkx()
        return {n for n in G.nodes() if G.out_degree(n) == 0}


def check_nodes(nodes: list[Any]) -> tuple[list[str], list[str]]:
    """Collect every error and warning for a node list without raising."""
    if not nodes:
        return ["No nodes to execute"], []
    try:
        graph = WorkflowGraph(nodes=nodes)
    except ValidationError as e:
        return _format_validation_errors(e, nodes), []
    return graph.validate_graph(), graph.graph_warnings()


def _format_validation_errors(error: ValidationError, nodes: list[Any]) -> list[str]:
    """Turn pydantic errors into "node '<id>': <loc>: <msg>" lines."""
    messages = []
    for err in error.errors():
        loc = list(err["loc"])
        prefix = ""
        if len(loc) >= 2 and loc[0] == "nodes" and isinstance(loc[1], int):
            index = loc[1]
            raw = nodes[index] if index < len(nodes) else None
            node_id = raw.get("id") if isinstance(raw, dict) else None
            prefix = f"Node '{node_id}'" if node_id else f"Node #{index}"
            # Drop the union tag segment pydantic inserts after the index
            loc = [part for part in loc[2:] if part not in _KNOWN_TYPES and part != "unknown"]
        where = ".".join(str(part) for part in loc)
        text = f"{where}: {err['msg']}" if where else err["msg"]
        messages.append(f"{prefix}: {text}" if prefix else text)
    return messages
