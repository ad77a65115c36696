"""
Structured exception classes for the stock-and-flow engine
Provides unified error handling with structured error records
"""

from typing import Optional, Dict, Any, List, Sequence
from pydantic import BaseModel


class ValidationError(BaseModel):
    """
    Structured validation error with detailed information

    Attributes:
        code: Error code for programmatic handling
        message: Human-readable error message
        element_id: ID of the node causing the error (if applicable)
        field: Field name within the node (if applicable)
        suggestion: Optional suggestion for fixing the error
        context: Optional additional context information
    """

    code: str
    message: str
    element_id: Optional[str] = None
    field: Optional[str] = None
    suggestion: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        """String representation for logging"""
        parts = [f"[{self.code}] {self.message}"]
        if self.element_id:
            parts.append(f"Element: {self.element_id}")
        if self.field:
            parts.append(f"Field: {self.field}")
        if self.suggestion:
            parts.append(f"Suggestion: {self.suggestion}")
        return " | ".join(parts)


class SimulationError(Exception):
    """
    Base class for every error raised by the engine

    Attributes:
        code: Error code for programmatic handling
        message: Human-readable error message
        details: Additional error details
    """

    def __init__(
        self, code: str, message: str, details: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary"""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        """String representation for logging"""
        return f"[{self.code}] {self.message}"


class EvaluationError(Exception):
    """
    Exception raised during formula evaluation

    Attributes:
        code: Error code for programmatic handling
        message: Human-readable error message
        element_id: ID of the node being evaluated
        equation: The formula that failed
        details: Additional error details
    """

    def __init__(
        self,
        code: str,
        message: str,
        element_id: Optional[str] = None,
        equation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.element_id = element_id
        self.equation = equation
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary with unified format"""
        result = {
            "code": self.code,
            "message": self.message,
            "details": self.details.copy() if self.details else {},
        }
        if self.element_id:
            result["details"]["element_id"] = self.element_id
        if self.equation:
            result["details"]["equation"] = self.equation
        return result

    def __str__(self) -> str:
        """String representation for logging"""
        parts = [f"[{self.code}] {self.message}"]
        if self.element_id:
            parts.append(f"Element: {self.element_id}")
        if self.equation:
            parts.append(f"Equation: {self.equation}")
        return " | ".join(parts)


# ============================================================================
# Structural Errors (detected by the validator)
# ============================================================================


class StructuralError(SimulationError):
    """
    A model violates one of the structural invariants

    Fatal to the model instance: the caller must discard it.

    Attributes:
        node_ids: IDs of the offending node(s)
        field: Node field the violation was found in (if applicable)
        suggestion: Optional hint for fixing the model
    """

    def __init__(
        self,
        code: str,
        message: str,
        node_ids: Sequence[str] = (),
        field: Optional[str] = None,
        suggestion: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.node_ids: List[str] = list(node_ids)
        self.field = field
        self.suggestion = suggestion
        super().__init__(
            code=code,
            message=message,
            details={**(details or {}), "node_ids": self.node_ids},
        )

    @property
    def node_id(self) -> Optional[str]:
        """First offending node id"""
        return self.node_ids[0] if self.node_ids else None

    def to_validation_error(self) -> ValidationError:
        """Convert to a structured validation record"""
        context = {k: v for k, v in self.details.items() if k != "node_ids"}
        if len(self.node_ids) > 1:
            context["node_ids"] = self.node_ids
        return ValidationError(
            code=self.code,
            message=self.message,
            element_id=self.node_id,
            field=self.field,
            suggestion=self.suggestion,
            context=context or None,
        )


class DuplicateNodeError(StructuralError):
    """Two nodes share an id"""

    def __init__(self, node_id: str):
        super().__init__(
            code="duplicate_id",
            message=f"Node ID '{node_id}' is duplicated",
            node_ids=[node_id],
            field="id",
            suggestion="Ensure all node IDs are unique",
        )


class InvalidNodeIdError(StructuralError):
    """A node id cannot be used as a name in formulas"""

    def __init__(self, node_id: str, reason: str):
        super().__init__(
            code="invalid_node_id",
            message=f"Node ID '{node_id}' {reason}",
            node_ids=[node_id],
            field="id",
            suggestion="Use a Python identifier that is not a built-in or function name",
        )


class DanglingReferenceError(StructuralError):
    """A formula or flow list names a node that does not exist"""

    def __init__(self, node_id: str, reference: str, field: str):
        self.reference = reference
        super().__init__(
            code="dangling_reference",
            message=f"Node '{node_id}' references undefined node '{reference}'",
            node_ids=[node_id],
            field=field,
            suggestion=f"Create a node with ID '{reference}' or remove the reference",
            details={"reference": reference},
        )


class InvalidReferenceError(StructuralError):
    """A reference resolves to a node of a kind that cannot be used there"""

    def __init__(self, node_id: str, reference: str, field: str, expected: Sequence[str]):
        self.reference = reference
        super().__init__(
            code="invalid_reference_kind",
            message=(
                f"Node '{node_id}' references '{reference}' in {field}, "
                f"which must be one of: {', '.join(expected)}"
            ),
            node_ids=[node_id],
            field=field,
            details={"reference": reference, "expected_kinds": list(expected)},
        )


class MissingFormulaError(StructuralError):
    """A rate or auxiliary node has no formula"""

    def __init__(self, node_id: str, kind: str):
        super().__init__(
            code="missing_formula",
            message=f"{kind.capitalize()} node '{node_id}' requires a formula",
            node_ids=[node_id],
            field="formula",
            suggestion="Provide a formula (e.g. formula='10' or formula='k * stock')",
        )


class InvalidFormulaError(StructuralError):
    """A formula cannot be parsed or uses an operation outside the safe subset"""

    def __init__(self, node_id: str, formula: str, reason: str, code: str = "invalid_formula"):
        super().__init__(
            code=code,
            message=f"Invalid formula '{formula}' in node '{node_id}': {reason}",
            node_ids=[node_id],
            field="formula",
            suggestion="Use only arithmetic, comparisons and the allowed functions",
            details={"formula": formula},
        )


class CircularDependencyError(StructuralError):
    """
    Auxiliary nodes depend on each other in a cycle

    Attributes:
        cycle: Node IDs forming the cycle, starting at the re-entered node
    """

    def __init__(
        self,
        message: str,
        cycle: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.cycle = cycle or []
        super().__init__(
            code="circular_dependency",
            message=message,
            node_ids=self.cycle[:1],
            field="formula",
            suggestion="Break the cycle by modifying one of the auxiliary formulas",
            details={**(details or {}), "cycle": self.cycle},
        )


class RateNodeFlowError(StructuralError):
    """A rate node is not attached to any level node"""

    def __init__(self, node_id: str):
        super().__init__(
            code="rate_without_flow",
            message=f"Rate node '{node_id}' is not an inflow or outflow of any level node",
            node_ids=[node_id],
            suggestion="Add the rate to a level node's inflows or outflows",
        )


class NoLevelNodeError(StructuralError):
    """The model has no level node at all"""

    def __init__(self):
        super().__init__(
            code="no_level_node",
            message="Model must contain at least one level node",
            suggestion="Add a level node holding the model state",
        )


class UselessNodeError(StructuralError):
    """A node does not influence any level node"""

    def __init__(self, node_id: str, kind: str):
        super().__init__(
            code="useless_node",
            message=f"{kind.capitalize()} node '{node_id}' does not influence any level node",
            node_ids=[node_id],
            suggestion="Reference the node from a rate or auxiliary formula, or remove it",
        )


class ParameterOutOfRangeError(StructuralError):
    """A declared numeric parameter lies outside its valid range"""

    def __init__(
        self, node_id: str, field: str, value: float, min_value: float, max_value: float
    ):
        self.value = value
        self.min_value = min_value
        self.max_value = max_value
        super().__init__(
            code="parameter_out_of_range",
            message=(
                f"Node '{node_id}' has {field} {value} outside the valid range "
                f"[{min_value}, {max_value}]"
            ),
            node_ids=[node_id],
            field=field,
            details={"value": value, "min_value": min_value, "max_value": max_value},
        )


# ============================================================================
# Lifecycle Errors (programmer/integration errors)
# ============================================================================


class LifecycleError(SimulationError):
    """An operation was attempted in the wrong phase of the model lifecycle"""


class ModelNotChangeableError(LifecycleError):
    """The model structure was modified after validation"""

    def __init__(self, operation: str):
        super().__init__(
            code="model_not_changeable",
            message=f"Cannot {operation}: model structure is frozen after validation",
            details={"operation": operation},
        )


class ModelNotValidatedError(LifecycleError):
    """Simulation was requested for a model that has not been validated"""

    def __init__(self):
        super().__init__(
            code="model_not_validated",
            message="Model must be validated before it can be simulated",
        )


class ValidationAlreadyRunError(LifecycleError):
    """Validation runs exactly once per model instance"""

    def __init__(self, succeeded: bool):
        state = "validated" if succeeded else "discarded after a failed validation"
        super().__init__(
            code="validation_already_run",
            message=f"Model was already {state}",
            details={"succeeded": succeeded},
        )


class FormulaDependencyError(LifecycleError):
    """A node cannot be removed because another node's formula still uses it"""

    def __init__(self, node_id: str, dependent_id: str):
        self.node_id = node_id
        self.dependent_id = dependent_id
        super().__init__(
            code="formula_dependency",
            message=f"Node '{node_id}' is still used in the formula of '{dependent_id}'",
            details={"node_id": node_id, "dependent_id": dependent_id},
        )


# ============================================================================
# Computation Errors (raised while running rounds)
# ============================================================================


class ComputationError(SimulationError):
    """
    A formula produced an invalid numeric result during a round

    Attributes:
        node_id: Node whose value could not be computed
        round_index: Round that was being computed
    """

    def __init__(
        self,
        message: str,
        node_id: str,
        round_index: int,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.node_id = node_id
        self.round_index = round_index
        super().__init__(
            code="computation_error",
            message=message,
            details={**(details or {}), "node_id": node_id, "round": round_index},
        )
