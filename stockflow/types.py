"""
Type definitions for the stock-and-flow engine
Provides TypedDict and other type hints for structured data
"""

from typing import TypedDict, List, Dict


class SimulationResultDict(TypedDict):
    """
    Typed dictionary for simulation results

    One entry per emitted round; `results` maps each level column
    to its time series.
    """
    rounds: List[int]
    columns: List[str]
    results: Dict[str, List[float]]


class ValidationSummaryDict(TypedDict, total=False):
    """
    Typed dictionary for validation summary

    All fields are optional to match the actual validation response structure.
    """
    valid: bool
    error_count: int
    errors_by_code: Dict[str, int]
    errors_by_element: Dict[str, int]
