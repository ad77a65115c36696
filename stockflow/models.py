"""
Pydantic models for the stock-and-flow engine
Defines the four node kinds and the model definition handed over by a reader
"""

import math
from typing import Annotated, Any, List, Literal, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    TypeAdapter,
    field_validator,
    model_validator,
)

from stockflow.evaluator import extract_references, round_half_up


class ParameterRange(BaseModel):
    """
    Closed interval a numeric node parameter must lie in

    Attributes:
        min_value: Lower bound (inclusive)
        max_value: Upper bound (inclusive), strictly greater than min_value
    """

    model_config = ConfigDict(frozen=True)

    min_value: float
    max_value: float

    @model_validator(mode="after")
    def check_bounds(self) -> "ParameterRange":
        """Reject empty or inverted ranges"""
        if self.min_value >= self.max_value:
            raise ValueError(
                f"min_value ({self.min_value}) must be smaller than max_value ({self.max_value})"
            )
        return self

    def contains(self, value: float) -> bool:
        """Check whether value lies within the range"""
        return self.min_value <= value <= self.max_value


class BaseNode(BaseModel):
    """
    Fields and behaviour shared by every node kind

    Node definitions are immutable. Only the engine changes a node's
    current value, through _assign_value().

    Attributes:
        id: Unique identifier, also the name formulas use to reference the node
        name: Human-readable name (defaults to the id)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    name: str = ""

    _value: float = PrivateAttr(default=0.0)

    @model_validator(mode="before")
    @classmethod
    def default_name(cls, data: Any) -> Any:
        """Use the id as name when no name is given"""
        if isinstance(data, dict) and not data.get("name") and "id" in data:
            data = {**data, "name": data["id"]}
        return data

    def current_value(self) -> float:
        """Value as of the most recent evaluation"""
        return self._value

    def _assign_value(self, value: float) -> None:
        self._value = value

    def formula_references(self) -> List[str]:
        """Node ids this node's formula reads (none by default)"""
        return []


class ConstantNode(BaseNode):
    """
    Fixed numeric input

    Attributes:
        value: Constant value
        valid_range: Optional declared range for value
        rounded: Round the value half-up to the nearest integer when read
    """

    kind: Literal["constant"] = "constant"
    value: float
    valid_range: Optional[ParameterRange] = None
    rounded: bool = False

    def model_post_init(self, __context: Any) -> None:
        self._value = self.effective_value

    @property
    def effective_value(self) -> float:
        """Value as seen by formulas"""
        if self.rounded:
            return round_half_up(self.value)
        return self.value

    def current_value(self) -> float:
        return self.effective_value


class LevelNode(BaseNode):
    """
    Stock holding state from round to round

    Attributes:
        initial: Value at round 0
        inflows: Rate node ids added to the level every round
        outflows: Rate node ids subtracted from the level every round
        valid_range: Optional declared range for the initial value
    """

    kind: Literal["level"] = "level"
    initial: float
    inflows: Tuple[str, ...] = ()
    outflows: Tuple[str, ...] = ()
    valid_range: Optional[ParameterRange] = None

    def model_post_init(self, __context: Any) -> None:
        self._value = self.initial

    def flow_references(self) -> List[str]:
        """Rate ids attached to this level, inflows first"""
        return list(self.inflows) + list(self.outflows)


class _FormulaNode(BaseNode):
    """Node whose value is recomputed from a formula every round"""

    formula: str = ""
    valid_range: Optional[ParameterRange] = None

    @field_validator("formula")
    @classmethod
    def strip_formula(cls, v: str) -> str:
        return v.strip()

    def has_formula(self) -> bool:
        """Check if node has a non-empty formula"""
        return bool(self.formula)

    def formula_references(self) -> List[str]:
        return sorted(extract_references(self.formula))


class RateNode(_FormulaNode):
    """
    Flow computing a per-round magnitude for the levels it is attached to

    valid_range bounds the numeric coefficients appearing in the formula.
    """

    kind: Literal["rate"] = "rate"


class AuxiliaryNode(_FormulaNode):
    """
    Derived value recomputed fresh every round

    valid_range bounds the numeric coefficients appearing in the formula.
    """

    kind: Literal["auxiliary"] = "auxiliary"


Node = Annotated[
    Union[ConstantNode, LevelNode, RateNode, AuxiliaryNode],
    Field(discriminator="kind"),
]

NodeAdapter: TypeAdapter = TypeAdapter(Node)


class ModelDefinition(BaseModel):
    """
    Node records produced by a model reader

    Any well-formed collection is accepted here, including duplicate ids
    and dangling references. Structural checks are the validator's job.

    Attributes:
        name: Model name
        nodes: Node records in declaration order
    """

    name: str = ""
    nodes: List[Node] = []
