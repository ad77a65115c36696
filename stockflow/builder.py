"""
Model lifecycle types
ModelBuilder holds an unvalidated model under construction; validate_model()
turns it into a RunnableModel, the only form the simulation clock accepts
"""

import logging
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from stockflow.constants import KIND_LEVEL, KIND_RATE, FORMULA_KINDS
from stockflow.exceptions import FormulaDependencyError, ModelNotChangeableError
from stockflow.graph import DependencyGraph
from stockflow.models import (
    BaseNode,
    ConstantNode,
    LevelNode,
    ModelDefinition,
    NodeAdapter,
)

logger = logging.getLogger(__name__)

NodeInput = Union[BaseNode, Dict[str, Any]]


class ModelBuilder:
    """
    Unvalidated model: node records as handed over by a model reader

    Accepts any well-formed collection of nodes, including duplicate ids
    and dangling references. Node definitions are immutable, so every
    construction operation replaces the affected node instance.

    Validation runs once per builder. After that attempt, successful or
    not, every construction operation raises ModelNotChangeableError.
    """

    def __init__(self, name: str = "", nodes: Iterable[NodeInput] = ()):
        self._name = name
        self._nodes: List[BaseNode] = []
        # None until validation ran, then True (validated) or False (discarded)
        self._validation_outcome: Optional[bool] = None
        for node in nodes:
            self.add_node(node)

    @classmethod
    def from_definition(cls, definition: ModelDefinition) -> "ModelBuilder":
        """Create a builder from a parsed model definition"""
        return cls(name=definition.name, nodes=definition.nodes)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ModelBuilder":
        """
        Create a builder from raw node records

        Args:
            data: Mapping with optional "name" and a "nodes" list of node dicts

        Raises:
            pydantic.ValidationError: If a record is malformed (unknown kind,
                missing fields, wrong types)
        """
        return cls.from_definition(ModelDefinition.model_validate(data))

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def nodes(self) -> Tuple[BaseNode, ...]:
        """Nodes in insertion order"""
        return tuple(self._nodes)

    def node(self, node_id: str) -> BaseNode:
        """
        Look up a node by id (first match when ids are duplicated)

        Raises:
            KeyError: If no node has this id
        """
        return self._nodes[self._index_of(node_id)]

    @property
    def validated(self) -> bool:
        return self._validation_outcome is True

    @property
    def validation_attempted(self) -> bool:
        return self._validation_outcome is not None

    # ------------------------------------------------------------------
    # Construction operations
    # ------------------------------------------------------------------

    def set_name(self, name: str) -> None:
        self._check_changeable("rename model")
        self._name = name

    def add_node(self, node: NodeInput) -> BaseNode:
        """
        Add a node definition or raw node record

        Returns:
            The stored node instance
        """
        self._check_changeable("add node")
        if not isinstance(node, BaseNode):
            node = NodeAdapter.validate_python(node)
        self._nodes.append(node)
        return node

    def remove_node(self, node_id: str) -> BaseNode:
        """
        Remove a node

        Removing a rate also detaches it from every level's flows.

        Raises:
            KeyError: If no node has this id
            FormulaDependencyError: If another node's formula references it
        """
        self._check_changeable("remove node")
        index = self._index_of(node_id)
        for other in self._nodes:
            if other.id != node_id and node_id in other.formula_references():
                raise FormulaDependencyError(node_id, other.id)

        removed = self._nodes.pop(index)
        if removed.kind == KIND_RATE:
            for level in [n for n in self._nodes if isinstance(n, LevelNode)]:
                if node_id in level.flow_references():
                    self._replace(
                        level.id,
                        inflows=[r for r in level.inflows if r != node_id],
                        outflows=[r for r in level.outflows if r != node_id],
                    )
        logger.debug(f"Removed {removed.kind} node '{node_id}'")
        return removed

    def set_formula(self, node_id: str, formula: str) -> None:
        self._check_changeable("change formula")
        node = self.node(node_id)
        if node.kind not in FORMULA_KINDS:
            raise ValueError(f"Node '{node_id}' is a {node.kind} node and has no formula")
        self._replace(node_id, formula=formula)

    def set_constant_value(self, node_id: str, value: float) -> None:
        self._check_changeable("change constant value")
        if not isinstance(self.node(node_id), ConstantNode):
            raise ValueError(f"Node '{node_id}' is not a constant node")
        self._replace(node_id, value=value)

    def set_initial_value(self, node_id: str, value: float) -> None:
        self._check_changeable("change initial value")
        if not isinstance(self.node(node_id), LevelNode):
            raise ValueError(f"Node '{node_id}' is not a level node")
        self._replace(node_id, initial=value)

    def add_inflow(self, level_id: str, rate_id: str) -> None:
        self._check_changeable("add inflow")
        level = self._level(level_id)
        if rate_id not in level.inflows:
            self._replace(level_id, inflows=list(level.inflows) + [rate_id])

    def add_outflow(self, level_id: str, rate_id: str) -> None:
        self._check_changeable("add outflow")
        level = self._level(level_id)
        if rate_id not in level.outflows:
            self._replace(level_id, outflows=list(level.outflows) + [rate_id])

    def remove_flow(self, level_id: str, rate_id: str) -> None:
        """Detach a rate from a level's inflows and outflows"""
        self._check_changeable("remove flow")
        level = self._level(level_id)
        self._replace(
            level_id,
            inflows=[r for r in level.inflows if r != rate_id],
            outflows=[r for r in level.outflows if r != rate_id],
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _index_of(self, node_id: str) -> int:
        for index, node in enumerate(self._nodes):
            if node.id == node_id:
                return index
        raise KeyError(f"Node '{node_id}' not found")

    def _level(self, level_id: str) -> LevelNode:
        node = self.node(level_id)
        if not isinstance(node, LevelNode):
            raise ValueError(f"Node '{level_id}' is not a level node")
        return node

    def _replace(self, node_id: str, **changes: Any) -> None:
        # Re-validate so field validators and initial values apply
        index = self._index_of(node_id)
        node = self._nodes[index]
        data = {**node.model_dump(), **changes}
        self._nodes[index] = type(node).model_validate(data)

    def _check_changeable(self, operation: str) -> None:
        if self._validation_outcome is not None:
            raise ModelNotChangeableError(operation)

    def _mark_validation(self, succeeded: bool) -> None:
        self._validation_outcome = succeeded

    def __repr__(self) -> str:
        return f"ModelBuilder(name={self._name!r}, nodes={len(self._nodes)})"


class RunnableModel:
    """
    Validated, structurally frozen model

    Created only by validate_model(). Exposes no structure mutators; the
    simulation clock is the only writer of node values.

    Attributes:
        name: Model name
        graph: Dependency graph of the model
        evaluation_order: Auxiliary node ids in per-round evaluation order
        level_order: Level node ids in output column order
        rate_order: Rate node ids in evaluation order
    """

    validated = True

    def __init__(
        self,
        name: str,
        nodes: Iterable[BaseNode],
        graph: DependencyGraph,
        evaluation_order: List[str],
    ):
        self.name = name
        # Own copies so values written during a run never leak into the builder
        self._nodes: Dict[str, BaseNode] = {node.id: node.model_copy() for node in nodes}
        self.graph = graph
        self.evaluation_order: Tuple[str, ...] = tuple(evaluation_order)
        self.rate_order: Tuple[str, ...] = tuple(graph.ids_of_kind(KIND_RATE))
        self.level_order: Tuple[str, ...] = tuple(
            sorted(
                graph.ids_of_kind(KIND_LEVEL),
                key=lambda node_id: (self._nodes[node_id].name, node_id),
            )
        )
        self.column_names: Tuple[str, ...] = self._build_column_names()

    def _build_column_names(self) -> Tuple[str, ...]:
        names = [self._nodes[node_id].name for node_id in self.level_order]
        # Levels sharing a name fall back to their ids
        return tuple(
            name if names.count(name) == 1 else node_id
            for name, node_id in zip(names, self.level_order)
        )

    @property
    def nodes(self) -> Mapping[str, BaseNode]:
        """Read-only mapping of node id to node"""
        return MappingProxyType(self._nodes)

    def node(self, node_id: str) -> BaseNode:
        return self._nodes[node_id]

    def current_value(self, node_id: str) -> float:
        return self._nodes[node_id].current_value()

    def level_values(self) -> List[float]:
        """Current level values in column order"""
        return [self._nodes[node_id].current_value() for node_id in self.level_order]

    def __repr__(self) -> str:
        return (
            f"RunnableModel(name={self.name!r}, nodes={len(self._nodes)}, "
            f"levels={list(self.level_order)})"
        )
