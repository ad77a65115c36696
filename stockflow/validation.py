"""
Structural validation for stock-and-flow models
Runs the model invariants in a fixed order and freezes the model on success
"""

from typing import List, Dict, Optional, Sequence, Set, Tuple
from pydantic import BaseModel
import ast
import keyword
import logging

from stockflow.builder import ModelBuilder, RunnableModel
from stockflow.config import Settings, get_settings
from stockflow.evaluator import formula_coefficients
from stockflow.exceptions import (
    CircularDependencyError,
    DanglingReferenceError,
    DuplicateNodeError,
    InvalidFormulaError,
    InvalidNodeIdError,
    InvalidReferenceError,
    MissingFormulaError,
    NoLevelNodeError,
    ParameterOutOfRangeError,
    RateNodeFlowError,
    StructuralError,
    UselessNodeError,
    ValidationAlreadyRunError,
    ValidationError,
)
from stockflow.constants import (
    SAFE_FUNCTION_NAMES,
    SAFE_AST_OPERATORS,
    BUILT_IN_VARIABLES,
    RESERVED_NAMES,
    FORMULA_INPUT_KINDS,
    KIND_AUXILIARY,
    KIND_CONSTANT,
    KIND_LEVEL,
    KIND_RATE,
)
from stockflow.graph import DependencyGraph
from stockflow.models import BaseNode, ConstantNode, LevelNode, ParameterRange
from stockflow.types import ValidationSummaryDict

logger = logging.getLogger(__name__)


class ValidationResult(BaseModel):
    """Result of a non-raising validation check"""

    valid: bool
    errors: List[ValidationError] = []


# ============================================================================
# Formula Syntax
# ============================================================================


def validate_equation_syntax(equation: str) -> Tuple[bool, Optional[str]]:
    """Validate formula syntax by parsing AST"""
    try:
        ast.parse(equation, mode="eval")
        return True, None
    except SyntaxError as e:
        return False, str(e)


def validate_equation_ast(node: ast.AST) -> Tuple[bool, Optional[str]]:
    """
    Recursively validate AST for unsafe operations

    Returns:
        Tuple of (is_valid, error_message)
    """
    if isinstance(node, ast.Expression):
        return validate_equation_ast(node.body)

    # Numeric literals only; strings and None have no value in a formula
    if isinstance(node, ast.Constant):
        if isinstance(node.value, (int, float)):
            return True, None
        return False, f"Unsupported literal: {node.value!r}"

    # Node reference
    if isinstance(node, ast.Name):
        return True, None

    # Binary operation
    if isinstance(node, ast.BinOp):
        if type(node.op) not in SAFE_AST_OPERATORS:
            return False, f"Unsupported operator: {type(node.op).__name__}"
        valid, error = validate_equation_ast(node.left)
        if not valid:
            return False, error
        return validate_equation_ast(node.right)

    # Unary operation
    if isinstance(node, ast.UnaryOp):
        if type(node.op) not in SAFE_AST_OPERATORS:
            return False, f"Unsupported unary operator: {type(node.op).__name__}"
        return validate_equation_ast(node.operand)

    # Function call
    if isinstance(node, ast.Call):
        if isinstance(node.func, ast.Name):
            func_name = node.func.id
            if func_name not in SAFE_FUNCTION_NAMES:
                return False, f"Function '{func_name}' is not allowed. Allowed: {', '.join(sorted(SAFE_FUNCTION_NAMES))}"
        else:
            return False, "Only simple function calls are allowed (no method calls)"

        if node.keywords:
            return False, f"Keyword arguments are not supported in '{func_name}'"

        for arg in node.args:
            valid, error = validate_equation_ast(arg)
            if not valid:
                return False, error

        return True, None

    # Ternary conditional
    if isinstance(node, ast.IfExp):
        valid, error = validate_equation_ast(node.test)
        if not valid:
            return False, error
        valid, error = validate_equation_ast(node.body)
        if not valid:
            return False, error
        return validate_equation_ast(node.orelse)

    # Comparison
    if isinstance(node, ast.Compare):
        valid, error = validate_equation_ast(node.left)
        if not valid:
            return False, error
        for op in node.ops:
            if type(op) not in SAFE_AST_OPERATORS:
                return False, f"Unsupported comparison: {type(op).__name__}"
        for comparator in node.comparators:
            valid, error = validate_equation_ast(comparator)
            if not valid:
                return False, error
        return True, None

    # Boolean operation (and, or)
    if isinstance(node, ast.BoolOp):
        for value in node.values:
            valid, error = validate_equation_ast(value)
            if not valid:
                return False, error
        return True, None

    return False, f"Unsupported expression type: {type(node).__name__}"


# ============================================================================
# 1. Uniqueness
# ============================================================================


def check_unique_ids(nodes: Sequence[BaseNode]) -> None:
    """
    Every node id is unique and usable as a formula name

    Raises:
        InvalidNodeIdError: On the first unusable id
        DuplicateNodeError: On the first duplicated id
    """
    seen: Set[str] = set()
    for node in nodes:
        if not node.id.isidentifier() or keyword.iskeyword(node.id):
            raise InvalidNodeIdError(node.id, "is not a valid identifier")
        if node.id in RESERVED_NAMES:
            raise InvalidNodeIdError(node.id, "shadows a built-in name")
        if node.id in seen:
            raise DuplicateNodeError(node.id)
        seen.add(node.id)


# ============================================================================
# 2. Reference Resolution
# ============================================================================


def check_references(nodes: Sequence[BaseNode]) -> None:
    """
    Every formula and flow reference resolves to a node of a usable kind

    Formulas must also be present, parse, and stay within the safe subset.

    Raises:
        MissingFormulaError, InvalidFormulaError, DanglingReferenceError,
        InvalidReferenceError: On the first violation, in declaration order
    """
    kinds: Dict[str, str] = {node.id: node.kind for node in nodes}
    input_kinds = sorted(FORMULA_INPUT_KINDS)

    for node in nodes:
        if node.kind in (KIND_RATE, KIND_AUXILIARY):
            _check_formula(node)
            for ref in node.formula_references():
                if ref in BUILT_IN_VARIABLES:
                    continue
                if ref not in kinds:
                    raise DanglingReferenceError(node.id, ref, field="formula")
                if kinds[ref] not in FORMULA_INPUT_KINDS:
                    raise InvalidReferenceError(node.id, ref, "formula", input_kinds)

        elif isinstance(node, LevelNode):
            for field, rate_ids in (("inflows", node.inflows), ("outflows", node.outflows)):
                for rate_id in rate_ids:
                    if rate_id not in kinds:
                        raise DanglingReferenceError(node.id, rate_id, field=field)
                    if kinds[rate_id] != KIND_RATE:
                        raise InvalidReferenceError(node.id, rate_id, field, [KIND_RATE])


def _check_formula(node: BaseNode) -> None:
    if not node.has_formula():
        raise MissingFormulaError(node.id, node.kind)

    valid, error = validate_equation_syntax(node.formula)
    if not valid:
        raise InvalidFormulaError(node.id, node.formula, f"syntax error: {error}")

    valid, error = validate_equation_ast(ast.parse(node.formula, mode="eval"))
    if not valid:
        raise InvalidFormulaError(node.id, node.formula, error, code="unsafe_formula")


# ============================================================================
# 3. Cycle Check
# ============================================================================


def check_auxiliary_cycles(graph: DependencyGraph) -> None:
    """
    Auxiliary nodes must be computable in one ordered pass

    Raises:
        CircularDependencyError: Naming the node at which the cycle was re-entered
    """
    cycle = graph.find_auxiliary_cycle()
    if cycle:
        cycle_path_str = " -> ".join(cycle) + f" -> {cycle[0]}"
        raise CircularDependencyError(
            message=f"Circular dependency detected: {cycle_path_str}",
            cycle=cycle,
        )


# ============================================================================
# 4. Rate-Flow Check
# ============================================================================


def check_rate_flows(nodes: Sequence[BaseNode], graph: DependencyGraph) -> None:
    """
    Every rate feeds or drains at least one level

    Raises:
        RateNodeFlowError: On the first unattached rate
    """
    attached = graph.attached_rates()
    for node in nodes:
        if node.kind == KIND_RATE and node.id not in attached:
            raise RateNodeFlowError(node.id)


# ============================================================================
# 5. Usefulness
# ============================================================================


def check_usefulness(nodes: Sequence[BaseNode], graph: DependencyGraph) -> None:
    """
    Every constant and auxiliary contributes to some level update

    Levels and rates attached to them are useful by definition; any other
    node must lie upstream of a level.

    Raises:
        NoLevelNodeError: If the model has no level at all
        UselessNodeError: On the first node with no path into a level
    """
    levels = graph.ids_of_kind(KIND_LEVEL)
    if not levels:
        raise NoLevelNodeError()

    useful = graph.upstream_of(levels)
    for node in nodes:
        if node.kind in (KIND_CONSTANT, KIND_AUXILIARY) and node.id not in useful:
            raise UselessNodeError(node.id, node.kind)


# ============================================================================
# 6. Parameter Range
# ============================================================================


def check_parameter_ranges(nodes: Sequence[BaseNode], settings: Settings) -> None:
    """
    Declared numeric parameters lie within their valid range

    Checks constant values, level initial values and the numeric
    coefficients of rate and auxiliary formulas. Nodes without a declared
    range are checked against the default range from settings.

    Raises:
        ParameterOutOfRangeError: On the first out-of-range parameter
    """
    for node in nodes:
        valid_range = node.valid_range or ParameterRange(
            min_value=settings.default_min_value,
            max_value=settings.default_max_value,
        )

        if isinstance(node, ConstantNode):
            checks = [("value", node.value)]
        elif isinstance(node, LevelNode):
            checks = [("initial", node.initial)]
        else:
            checks = [("formula", c) for c in formula_coefficients(node.formula)]

        for field, value in checks:
            if not valid_range.contains(value):
                raise ParameterOutOfRangeError(
                    node.id,
                    field,
                    value,
                    valid_range.min_value,
                    valid_range.max_value,
                )


# ============================================================================
# Main Validation Orchestrator
# ============================================================================


def run_checks(
    nodes: Sequence[BaseNode], settings: Optional[Settings] = None
) -> Tuple[DependencyGraph, List[str]]:
    """
    Run every structural check in order, stopping at the first violation

    Check order:
    1. Uniqueness
    2. Reference resolution
    3. Cycle check
    4. Rate-flow check
    5. Usefulness
    6. Parameter range

    Returns:
        Tuple of (dependency graph, auxiliary evaluation order)

    Raises:
        StructuralError: The first violation found
    """
    settings = settings or get_settings()
    nodes = list(nodes)

    check_unique_ids(nodes)
    check_references(nodes)

    graph = DependencyGraph.build(nodes)
    check_auxiliary_cycles(graph)
    check_rate_flows(nodes, graph)
    check_usefulness(nodes, graph)
    check_parameter_ranges(nodes, settings)

    return graph, graph.topological_order()


def validate_model(
    builder: ModelBuilder, settings: Optional[Settings] = None
) -> RunnableModel:
    """
    Validate a model once and freeze it

    On success the builder is marked validated and a RunnableModel with
    the cached evaluation order is returned. On failure the builder is
    left unusable and the error is re-raised; the caller must discard it.

    Args:
        builder: Unvalidated model
        settings: Optional settings (defaults to get_settings())

    Returns:
        Runnable model ready for simulation

    Raises:
        StructuralError: The first violated invariant
        ValidationAlreadyRunError: If this builder was validated before
    """
    if builder.validation_attempted:
        raise ValidationAlreadyRunError(builder.validated)

    try:
        graph, evaluation_order = run_checks(builder.nodes, settings)
    except StructuralError as e:
        builder._mark_validation(False)
        logger.warning(f"Model '{builder.name}' failed validation: {e}")
        raise

    builder._mark_validation(True)
    model = RunnableModel(
        name=builder.name,
        nodes=builder.nodes,
        graph=graph,
        evaluation_order=evaluation_order,
    )

    logger.info(
        f"Model '{model.name}' validated: {len(model.nodes)} nodes, "
        f"{len(model.level_order)} levels, {len(model.rate_order)} rates, "
        f"{len(model.evaluation_order)} auxiliaries"
    )
    logger.debug(f"Auxiliary evaluation order: {list(model.evaluation_order)}")
    return model


# ============================================================================
# Utility Functions
# ============================================================================


def check_model(
    builder: ModelBuilder, settings: Optional[Settings] = None
) -> ValidationResult:
    """
    Run the structural checks without freezing the builder

    Useful for editors that report problems while a model is being built.

    Returns:
        ValidationResult holding the first violation, if any
    """
    try:
        run_checks(builder.nodes, settings)
    except StructuralError as e:
        return ValidationResult(valid=False, errors=[e.to_validation_error()])
    return ValidationResult(valid=True, errors=[])


def get_validation_summary(result: ValidationResult) -> ValidationSummaryDict:
    """
    Get a summary of validation results

    Returns:
        Dictionary with error counts by code and by node
    """
    summary: ValidationSummaryDict = {
        "valid": result.valid,
        "error_count": len(result.errors),
        "errors_by_code": {},
        "errors_by_element": {},
    }

    for error in result.errors:
        # Count by code
        if error.code not in summary["errors_by_code"]:
            summary["errors_by_code"][error.code] = 0
        summary["errors_by_code"][error.code] += 1

        # Count by element
        elem_id = error.element_id or "model"
        if elem_id not in summary["errors_by_element"]:
            summary["errors_by_element"][elem_id] = 0
        summary["errors_by_element"][elem_id] += 1

    return summary
