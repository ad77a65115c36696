"""
Tests for node models
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from stockflow.models import (
    AuxiliaryNode,
    ConstantNode,
    LevelNode,
    ModelDefinition,
    NodeAdapter,
    ParameterRange,
    RateNode,
)


def test_name_defaults_to_id():
    """Nodes without a name use their id"""
    node = ConstantNode(id="k", value=2.0)
    assert node.name == "k"

    named = ConstantNode(id="k", name="Growth factor", value=2.0)
    assert named.name == "Growth factor"


def test_current_values_before_first_round():
    """Constants and levels expose their inputs, formula nodes start at zero"""
    assert ConstantNode(id="k", value=2.5).current_value() == 2.5
    assert LevelNode(id="stock", initial=100.0).current_value() == 100.0
    assert RateNode(id="inflow", formula="10").current_value() == 0.0
    assert AuxiliaryNode(id="aux", formula="k * 2").current_value() == 0.0


def test_rounded_constant_rounds_half_up():
    """Rounded constants round half-up when read"""
    assert ConstantNode(id="k", value=2.5, rounded=True).current_value() == 3.0
    assert ConstantNode(id="k", value=2.4, rounded=True).current_value() == 2.0
    assert ConstantNode(id="k", value=-2.5, rounded=True).current_value() == -2.0


def test_nodes_are_frozen():
    """Node definitions cannot be changed in place"""
    rate = RateNode(id="inflow", formula="10")
    with pytest.raises(PydanticValidationError):
        rate.formula = "20"

    level = LevelNode(id="stock", initial=1.0, inflows=("inflow",))
    with pytest.raises(PydanticValidationError):
        level.inflows = ()


def test_formula_references():
    """Formula nodes report referenced ids sorted, without functions"""
    aux = AuxiliaryNode(id="aux", formula="max(stock, k) * t")
    assert aux.formula_references() == ["k", "stock", "t"]
    assert ConstantNode(id="k", value=1.0).formula_references() == []


def test_formula_is_stripped():
    """Surrounding whitespace is removed from formulas"""
    rate = RateNode(id="inflow", formula="  10  ")
    assert rate.formula == "10"
    assert not RateNode(id="empty", formula="   ").has_formula()


def test_level_flow_references():
    """Inflows come before outflows"""
    level = LevelNode(id="stock", initial=0.0, inflows=["a", "b"], outflows=["c"])
    assert level.inflows == ("a", "b")
    assert level.flow_references() == ["a", "b", "c"]


def test_parameter_range_rejects_inverted_bounds():
    """min_value must be smaller than max_value"""
    with pytest.raises(PydanticValidationError):
        ParameterRange(min_value=1.0, max_value=0.0)
    with pytest.raises(PydanticValidationError):
        ParameterRange(min_value=1.0, max_value=1.0)

    valid = ParameterRange(min_value=0.0, max_value=1.0)
    assert valid.contains(0.0)
    assert valid.contains(1.0)
    assert not valid.contains(1.5)


def test_node_adapter_dispatches_on_kind():
    """Raw records are parsed into the matching node class"""
    node = NodeAdapter.validate_python({"id": "stock", "kind": "level", "initial": 5})
    assert isinstance(node, LevelNode)
    assert node.initial == 5.0

    with pytest.raises(PydanticValidationError):
        NodeAdapter.validate_python({"id": "x", "kind": "delay", "formula": "1"})


def test_unknown_fields_rejected():
    """Extra fields are a schema error"""
    with pytest.raises(PydanticValidationError):
        ConstantNode(id="k", value=1.0, formula="2")


def test_model_definition_accepts_duplicates():
    """The definition does not check structure; the validator does"""
    definition = ModelDefinition.model_validate(
        {
            "name": "dup",
            "nodes": [
                {"id": "a", "kind": "constant", "value": 1},
                {"id": "a", "kind": "constant", "value": 2},
                {"id": "r", "kind": "rate", "formula": "missing * 2"},
            ],
        }
    )
    assert [n.id for n in definition.nodes] == ["a", "a", "r"]
