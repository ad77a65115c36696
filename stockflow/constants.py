"""
Shared constants for the stock-and-flow engine
Centralizes vocabulary so the validator, graph and evaluator agree
"""

import ast

# ============================================================================
# Node Kinds
# ============================================================================

KIND_CONSTANT = "constant"
KIND_LEVEL = "level"
KIND_RATE = "rate"
KIND_AUXILIARY = "auxiliary"

NODE_KINDS = (KIND_CONSTANT, KIND_LEVEL, KIND_RATE, KIND_AUXILIARY)

# Kinds whose formulas are evaluated every round
FORMULA_KINDS = {KIND_RATE, KIND_AUXILIARY}

# Kinds a formula may read from
FORMULA_INPUT_KINDS = {KIND_CONSTANT, KIND_LEVEL, KIND_AUXILIARY}

# ============================================================================
# Built-in Variables
# ============================================================================

# Bound to the round index of the snapshot being evaluated
BUILT_IN_VARIABLES = {"t", "time"}

# ============================================================================
# Safe Functions
# ============================================================================

SAFE_FUNCTION_NAMES = {
    # Basic math
    "abs",
    "min",
    "max",
    "pow",
    "round",
    # Exponential and logarithmic
    "exp",
    "log",
    "log10",
    "sqrt",
    # Trigonometric
    "sin",
    "cos",
    "tan",
    "asin",
    "acos",
    "atan",
    "atan2",
    # Hyperbolic
    "sinh",
    "cosh",
    "tanh",
    # Rounding
    "ceil",
    "floor",
}

# Names a node id may not take
RESERVED_NAMES = BUILT_IN_VARIABLES | SAFE_FUNCTION_NAMES

# ============================================================================
# Safe AST Operators
# ============================================================================

SAFE_AST_OPERATORS = {
    # Arithmetic
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.Pow,
    ast.Mod,
    ast.FloorDiv,
    # Unary
    ast.USub,
    ast.UAdd,
    # Comparison
    ast.Lt,
    ast.LtE,
    ast.Gt,
    ast.GtE,
    ast.Eq,
    ast.NotEq,
    # Boolean
    ast.And,
    ast.Or,
    ast.Not,
}

# ============================================================================
# Parameter Limits
# ============================================================================

# Default bounds for constant values, level start values and formula coefficients
DEFAULT_MIN_VALUE = -1_000_000_000.0
DEFAULT_MAX_VALUE = 1_000_000_000.0

MAX_SIMULATION_ROUNDS = 1_000_000
