"""
Formula evaluator for the stock-and-flow engine
Safely evaluates node formulas with controlled namespace and AST parsing
"""

from typing import Dict, Set, Optional, List, Any, Mapping, Tuple
import ast
import operator
import math
import logging

from stockflow.exceptions import EvaluationError

logger = logging.getLogger(__name__)


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round to ndigits decimals, ties towards positive infinity (2.5 -> 3, -2.5 -> -2)"""
    scale = 10.0 ** ndigits
    return math.floor(value * scale + 0.5) / scale


class SafeEquationEvaluator:
    """
    Safely evaluate node formulas with controlled namespace

    Supports:
    - Basic arithmetic operations (+, -, *, /, **, %, //)
    - Comparison operations (<, <=, >, >=, ==, !=)
    - Boolean operations (and, or, not)
    - Mathematical functions (sin, cos, tan, exp, log, sqrt, etc.)
    - Ternary conditional expressions (x if condition else y)
    - References to node ids and the built-in round variables
    """

    # Operator implementations
    SAFE_OPERATORS = {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: operator.mul,
        ast.Div: operator.truediv,
        ast.FloorDiv: operator.floordiv,
        ast.Mod: operator.mod,
        ast.Pow: operator.pow,
        ast.USub: operator.neg,
        ast.UAdd: operator.pos,
    }

    # Function implementations
    SAFE_FUNCTIONS = {
        # Basic math
        "abs": abs,
        "min": min,
        "max": max,
        "pow": pow,
        "round": round_half_up,
        # Exponential and logarithmic
        "exp": math.exp,
        "log": math.log,
        "log10": math.log10,
        "sqrt": math.sqrt,
        # Trigonometric
        "sin": math.sin,
        "cos": math.cos,
        "tan": math.tan,
        "asin": math.asin,
        "acos": math.acos,
        "atan": math.atan,
        "atan2": math.atan2,
        # Hyperbolic
        "sinh": math.sinh,
        "cosh": math.cosh,
        "tanh": math.tanh,
        # Rounding
        "ceil": math.ceil,
        "floor": math.floor,
    }

    def __init__(self):
        """Initialize evaluator with empty variable namespace"""
        self.variables: Mapping[str, float] = {}
        self._ast_cache: Dict[str, ast.Expression] = {}

    def set_variables(self, variables: Mapping[str, float]) -> None:
        """
        Set available variables for evaluation

        The mapping is read, never modified, so callers may keep
        updating it between evaluations.

        Args:
            variables: Mapping of node ids to values
        """
        self.variables = variables

    def clear_cache(self) -> None:
        """Clear the internal AST cache"""
        self._ast_cache.clear()

    def parse_equation(
        self, equation: str, element_id: Optional[str] = None, use_cache: bool = True
    ) -> ast.Expression:
        """
        Parse formula string into AST with optional caching

        Args:
            equation: Formula string
            element_id: Optional node id for error reporting
            use_cache: Whether to use internal cache

        Returns:
            Parsed AST expression

        Raises:
            EvaluationError: If formula syntax is invalid
        """
        equation = equation.strip()

        if use_cache and equation in self._ast_cache:
            return self._ast_cache[equation]

        try:
            tree = ast.parse(equation, mode="eval")
        except SyntaxError as e:
            raise EvaluationError(
                code="syntax_error",
                message=f"Syntax error in formula: {equation}. {str(e)}",
                element_id=element_id,
                equation=equation,
            ) from e

        if use_cache:
            self._ast_cache[equation] = tree
        return tree

    def eval_node(self, node: ast.AST, element_id: Optional[str] = None) -> Any:
        """
        Recursively evaluate AST node

        Args:
            node: AST node to evaluate
            element_id: Optional node id for error reporting

        Returns:
            Evaluated result (usually float, but can be bool)

        Raises:
            EvaluationError: If evaluation fails
        """
        if isinstance(node, ast.Expression):
            return self.eval_node(node.body, element_id)

        if isinstance(node, ast.Constant):
            # Literals are floats so huge powers overflow instead of growing ints
            if isinstance(node.value, (int, float)):
                return float(node.value)
            raise EvaluationError(
                code="unsupported_constant",
                message=f"Unsupported literal: {node.value!r}",
                element_id=element_id,
            )

        # Node reference
        if isinstance(node, ast.Name):
            var_name = node.id
            if var_name in self.variables:
                return self.variables[var_name]
            raise EvaluationError(
                code="undefined_variable",
                message=f"Undefined variable: {var_name}",
                element_id=element_id,
                equation=var_name,
            )

        if isinstance(node, ast.BinOp):
            return self._eval_binop(node, element_id)

        if isinstance(node, ast.UnaryOp):
            return self._eval_unaryop(node, element_id)

        if isinstance(node, ast.Call):
            return self._eval_call(node, element_id)

        if isinstance(node, ast.IfExp):
            return self._eval_ifexp(node, element_id)

        if isinstance(node, ast.Compare):
            return self._eval_compare(node, element_id)

        if isinstance(node, ast.BoolOp):
            return self._eval_boolop(node, element_id)

        raise EvaluationError(
            code="unsupported_node_type",
            message=f"Unsupported expression type: {type(node).__name__}",
            element_id=element_id,
        )

    def _eval_binop(self, node: ast.BinOp, element_id: Optional[str]) -> float:
        """Evaluate binary operation"""
        op_type = type(node.op)
        if op_type not in self.SAFE_OPERATORS:
            raise EvaluationError(
                code="unsupported_operator",
                message=f"Unsupported operator: {op_type.__name__}",
                element_id=element_id,
            )

        left = self.eval_node(node.left, element_id)
        right = self.eval_node(node.right, element_id)

        if op_type in (ast.Div, ast.FloorDiv, ast.Mod) and right == 0:
            raise EvaluationError(
                code="division_by_zero",
                message="Division by zero in expression",
                element_id=element_id,
            )

        try:
            result = self.SAFE_OPERATORS[op_type](left, right)
        except Exception as e:
            raise EvaluationError(
                code="arithmetic_error",
                message=f"Arithmetic error: {str(e)}",
                element_id=element_id,
            ) from e

        # Negative base with fractional exponent
        if isinstance(result, complex):
            raise EvaluationError(
                code="arithmetic_error",
                message=f"Arithmetic error: complex result from {left} ** {right}",
                element_id=element_id,
            )
        return result

    def _eval_unaryop(self, node: ast.UnaryOp, element_id: Optional[str]) -> Any:
        """Evaluate unary operation"""
        op_type = type(node.op)
        operand = self.eval_node(node.operand, element_id)

        if op_type == ast.Not:
            return not operand
        elif op_type in self.SAFE_OPERATORS:
            return self.SAFE_OPERATORS[op_type](operand)
        else:
            raise EvaluationError(
                code="unsupported_unary_operator",
                message=f"Unsupported unary operator: {op_type.__name__}",
                element_id=element_id,
            )

    def _eval_call(self, node: ast.Call, element_id: Optional[str]) -> float:
        """Evaluate function call"""
        if not isinstance(node.func, ast.Name):
            raise EvaluationError(
                code="invalid_function_call",
                message="Function call must use a named function",
                element_id=element_id,
            )

        func_name = node.func.id
        if func_name not in self.SAFE_FUNCTIONS:
            raise EvaluationError(
                code="function_not_allowed",
                message=f"Function not allowed: {func_name}. Allowed functions: {', '.join(sorted(self.SAFE_FUNCTIONS.keys()))}",
                element_id=element_id,
            )

        args = [self.eval_node(arg, element_id) for arg in node.args]

        try:
            return self.SAFE_FUNCTIONS[func_name](*args)
        except ValueError as e:
            raise EvaluationError(
                code="math_domain_error",
                message=f"Math domain error in {func_name}: {str(e)}",
                element_id=element_id,
            ) from e
        except Exception as e:
            raise EvaluationError(
                code="function_evaluation_error",
                message=f"Error evaluating function {func_name}: {str(e)}",
                element_id=element_id,
            ) from e

    def _eval_ifexp(self, node: ast.IfExp, element_id: Optional[str]) -> float:
        """Evaluate ternary conditional expression"""
        condition = self.eval_node(node.test, element_id)
        if condition:
            return self.eval_node(node.body, element_id)
        else:
            return self.eval_node(node.orelse, element_id)

    def _eval_compare(self, node: ast.Compare, element_id: Optional[str]) -> bool:
        """Evaluate comparison expression"""
        left = self.eval_node(node.left, element_id)

        for op, comparator in zip(node.ops, node.comparators):
            right = self.eval_node(comparator, element_id)

            if isinstance(op, ast.Lt):
                result = left < right
            elif isinstance(op, ast.LtE):
                result = left <= right
            elif isinstance(op, ast.Gt):
                result = left > right
            elif isinstance(op, ast.GtE):
                result = left >= right
            elif isinstance(op, ast.Eq):
                result = left == right
            elif isinstance(op, ast.NotEq):
                result = left != right
            else:
                raise EvaluationError(
                    code="unsupported_comparison",
                    message=f"Unsupported comparison operator: {type(op).__name__}",
                    element_id=element_id,
                )

            if not result:
                return False
            left = right

        return True

    def _eval_boolop(self, node: ast.BoolOp, element_id: Optional[str]) -> bool:
        """Evaluate boolean operation (and, or)"""
        if isinstance(node.op, ast.And):
            for value in node.values:
                if not self.eval_node(value, element_id):
                    return False
            return True
        elif isinstance(node.op, ast.Or):
            for value in node.values:
                if self.eval_node(value, element_id):
                    return True
            return False
        else:
            raise EvaluationError(
                code="unsupported_bool_op",
                message=f"Unsupported boolean operator: {type(node.op).__name__}",
                element_id=element_id,
            )

    def evaluate(self, equation: str, element_id: Optional[str] = None) -> float:
        """
        Evaluate formula string with current variables

        Args:
            equation: Formula string
            element_id: Optional node id for error reporting

        Returns:
            Evaluated numeric result (boolean comparisons converted to 1.0/0.0)

        Raises:
            EvaluationError: If evaluation fails
        """
        if not equation or equation.strip() == "":
            return 0.0

        try:
            tree = self.parse_equation(equation, element_id)
            result = self.eval_node(tree, element_id)
            if isinstance(result, bool):
                return 1.0 if result else 0.0
            return float(result)
        except EvaluationError:
            raise
        except Exception as e:
            raise EvaluationError(
                code="evaluation_error",
                message=f"Error evaluating '{equation}': {str(e)}",
                element_id=element_id,
                equation=equation,
            ) from e


# ============================================================================
# Reference and Coefficient Extraction
# ============================================================================


def extract_variable_references(node: ast.AST) -> Set[str]:
    """
    Extract all variable names referenced in an AST node

    Names in call position and numeric constants are not references. A
    function name used as a value (``abs + 1``) is, and never resolves.

    Args:
        node: AST node to analyze

    Returns:
        Set of variable names referenced
    """
    callees = {
        id(child.func)
        for child in ast.walk(node)
        if isinstance(child, ast.Call) and isinstance(child.func, ast.Name)
    }
    variables: Set[str] = set()
    for child in ast.walk(node):
        if isinstance(child, ast.Name) and id(child) not in callees:
            variables.add(child.id)
    return variables


def extract_references(formula: Optional[str]) -> Set[str]:
    """
    Parse a formula string and return the names it references

    Unparseable or empty formulas yield an empty set; syntax is reported
    by the validator.
    """
    if not formula or not formula.strip():
        return set()
    try:
        tree = ast.parse(formula.strip(), mode="eval")
    except SyntaxError:
        logger.debug(f"Skipping unparseable formula '{formula}'")
        return set()
    return extract_variable_references(tree)


def formula_coefficients(formula: Optional[str]) -> List[float]:
    """
    Collect the numeric literals of a formula, in source order

    A unary minus applied directly to a literal is folded into it, so
    "-5 * x" yields [-5.0].
    """
    if not formula or not formula.strip():
        return []
    try:
        tree = ast.parse(formula.strip(), mode="eval")
    except SyntaxError:
        return []

    coefficients: List[Tuple[int, int, float]] = []
    negated: Set[int] = set()
    for child in ast.walk(tree):
        if (
            isinstance(child, ast.UnaryOp)
            and isinstance(child.op, ast.USub)
            and _is_number(child.operand)
        ):
            negated.add(id(child.operand))
            coefficients.append(
                (child.lineno, child.col_offset, -float(child.operand.value))
            )
    for child in ast.walk(tree):
        if _is_number(child) and id(child) not in negated:
            coefficients.append((child.lineno, child.col_offset, float(child.value)))

    return [value for _, _, value in sorted(coefficients)]


def _is_number(node: ast.AST) -> bool:
    return (
        isinstance(node, ast.Constant)
        and isinstance(node.value, (int, float))
        and not isinstance(node.value, bool)
    )
