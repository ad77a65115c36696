"""
Tests for the model builder and the runnable model
"""

import pytest

from stockflow.builder import ModelBuilder, RunnableModel
from stockflow.exceptions import (
    FormulaDependencyError,
    LifecycleError,
    ModelNotChangeableError,
    StructuralError,
)
from stockflow.models import ConstantNode, LevelNode, ModelDefinition, RateNode
from stockflow.validation import validate_model


def make_growth_builder():
    """Level with one inflow driven by a constant"""
    return ModelBuilder(
        name="growth",
        nodes=[
            LevelNode(id="stock", name="Stock", initial=100.0, inflows=("inflow",)),
            RateNode(id="inflow", formula="k * 2"),
            ConstantNode(id="k", value=5.0),
        ],
    )


def test_builder_accepts_dicts_and_nodes():
    """Raw records and node instances can be mixed"""
    builder = ModelBuilder(
        nodes=[
            {"id": "stock", "kind": "level", "initial": 1},
            RateNode(id="inflow", formula="1"),
        ]
    )
    assert [n.id for n in builder.nodes] == ["stock", "inflow"]
    assert isinstance(builder.node("stock"), LevelNode)


def test_builder_from_dict_and_definition():
    """Builders can be created from reader output"""
    data = {
        "name": "m",
        "nodes": [
            {"id": "stock", "kind": "level", "initial": 1, "inflows": ["inflow"]},
            {"id": "inflow", "kind": "rate", "formula": "1"},
        ],
    }
    builder = ModelBuilder.from_dict(data)
    assert builder.name == "m"
    assert len(builder.nodes) == 2

    again = ModelBuilder.from_definition(ModelDefinition.model_validate(data))
    assert [n.id for n in again.nodes] == ["stock", "inflow"]


def test_node_lookup_unknown_id():
    """Unknown ids raise KeyError"""
    with pytest.raises(KeyError):
        make_growth_builder().node("nope")


def test_set_formula_replaces_node():
    """Changing a formula swaps in a new node instance"""
    builder = make_growth_builder()
    before = builder.node("inflow")

    builder.set_formula("inflow", "k * 3")

    assert builder.node("inflow").formula == "k * 3"
    assert before.formula == "k * 2"


def test_set_formula_rejects_non_formula_node():
    """Constants and levels have no formula"""
    with pytest.raises(ValueError):
        make_growth_builder().set_formula("k", "1")


def test_set_values():
    """Constant and initial values can be changed before validation"""
    builder = make_growth_builder()
    builder.set_constant_value("k", 7.0)
    builder.set_initial_value("stock", 50.0)

    assert builder.node("k").current_value() == 7.0
    assert builder.node("stock").current_value() == 50.0

    with pytest.raises(ValueError):
        builder.set_initial_value("k", 1.0)


def test_flow_editing():
    """Flows can be added and removed on levels"""
    builder = make_growth_builder()
    builder.add_node(RateNode(id="drain", formula="1"))
    builder.add_outflow("stock", "drain")
    builder.add_outflow("stock", "drain")

    assert builder.node("stock").outflows == ("drain",)

    builder.remove_flow("stock", "drain")
    assert builder.node("stock").outflows == ()
    assert builder.node("stock").inflows == ("inflow",)


def test_remove_referenced_node_fails():
    """A node used in another formula cannot be removed"""
    builder = make_growth_builder()

    with pytest.raises(FormulaDependencyError) as exc_info:
        builder.remove_node("k")

    assert exc_info.value.dependent_id == "inflow"
    assert isinstance(exc_info.value, LifecycleError)


def test_remove_rate_detaches_flows():
    """Removing a rate removes it from every level"""
    builder = make_growth_builder()
    builder.remove_node("inflow")

    assert builder.node("stock").inflows == ()
    assert [n.id for n in builder.nodes] == ["stock", "k"]


def test_builder_frozen_after_validation():
    """Every construction operation fails once validation has run"""
    builder = make_growth_builder()
    validate_model(builder)

    assert builder.validated
    with pytest.raises(ModelNotChangeableError):
        builder.add_node(ConstantNode(id="other", value=1.0))
    with pytest.raises(ModelNotChangeableError):
        builder.remove_node("k")
    with pytest.raises(ModelNotChangeableError):
        builder.set_formula("inflow", "1")
    with pytest.raises(LifecycleError):
        builder.add_outflow("stock", "inflow")


def test_builder_frozen_after_failed_validation():
    """A builder that failed validation must be discarded"""
    builder = make_growth_builder()
    builder.add_node(ConstantNode(id="unused", value=1.0))

    with pytest.raises(StructuralError):
        validate_model(builder)

    assert not builder.validated
    assert builder.validation_attempted
    with pytest.raises(ModelNotChangeableError):
        builder.remove_node("unused")


def test_runnable_model_views():
    """The runnable model exposes read-only structure"""
    model = validate_model(make_growth_builder())

    assert isinstance(model, RunnableModel)
    assert model.validated
    assert model.level_order == ("stock",)
    assert model.rate_order == ("inflow",)
    assert model.column_names == ("Stock",)
    assert model.level_values() == [100.0]
    assert model.current_value("k") == 5.0

    with pytest.raises(TypeError):
        model.nodes["k"] = ConstantNode(id="k", value=1.0)


def test_runnable_model_owns_node_copies():
    """Values written during a run do not touch the builder's nodes"""
    builder = make_growth_builder()
    model = validate_model(builder)

    model.node("stock")._assign_value(999.0)

    assert builder.node("stock").current_value() == 100.0


def test_level_columns_sorted_by_name():
    """Levels are ordered by name, then id"""
    builder = ModelBuilder(
        nodes=[
            LevelNode(id="a", name="Zeta", initial=1.0, inflows=("r",)),
            LevelNode(id="b", name="Alpha", initial=2.0, inflows=("r",)),
            LevelNode(id="c", name="Alpha", initial=3.0, inflows=("r",)),
            RateNode(id="r", formula="1"),
        ]
    )
    model = validate_model(builder)

    assert model.level_order == ("b", "c", "a")
    # Shared names fall back to ids
    assert model.column_names == ("b", "c", "Zeta")
    assert model.level_values() == [2.0, 3.0, 1.0]
