"""
Simulation clock for stock-and-flow models
Advances a validated model in discrete rounds using explicit Euler integration
with an implicit step size of one round
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
import logging
import math

from stockflow.builder import ModelBuilder, RunnableModel
from stockflow.config import Settings, get_settings
from stockflow.constants import KIND_CONSTANT, KIND_LEVEL
from stockflow.evaluator import SafeEquationEvaluator
from stockflow.exceptions import ComputationError, EvaluationError, ModelNotValidatedError
from stockflow.models import LevelNode, ModelDefinition
from stockflow.sink import ResultSink, TimeSeriesRecorder
from stockflow.types import SimulationResultDict
from stockflow.utils.logging_config import get_run_id, reset_run_id, set_run_id
from stockflow.validation import validate_model

logger = logging.getLogger(__name__)


class SimulationClock:
    """
    Round-by-round executor for a validated model

    Each round follows a strict order, reading only the round-start
    snapshot of level values:
    1. Constants keep their value
    2. Auxiliaries are evaluated in the cached dependency order
    3. Rates are evaluated from constants, this round's auxiliaries and levels
    4. Every level computes next = current + sum(inflows) - sum(outflows)
    5. All level values are committed together

    A round is atomic: if any evaluation fails, nothing is committed and
    the model stays at its pre-round state.
    """

    def __init__(
        self,
        model: RunnableModel,
        verbose: bool = False,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the clock at round 0

        Args:
            model: Validated model
            verbose: Enable detailed logging
            settings: Optional settings (defaults to get_settings())

        Raises:
            ModelNotValidatedError: If model is not a RunnableModel
        """
        if not isinstance(model, RunnableModel):
            raise ModelNotValidatedError()

        self.model = model
        self.verbose = verbose
        self.settings = settings or get_settings()
        self.evaluator = SafeEquationEvaluator()
        self._round_index = 0

        if self.verbose:
            self._log_model_structure()

        self.reset()

    def _log_model_structure(self) -> None:
        """Log model structure for debugging"""
        model = self.model
        logger.info("=" * 60)
        logger.info(f"MODEL '{model.name}'")
        logger.info("=" * 60)

        logger.info(f"Levels: {len(model.level_order)}")
        for level_id in model.level_order:
            level = model.node(level_id)
            logger.info(f"  - {level.name} (ID: {level_id})")
            logger.info(f"    Initial: {level.initial}")
            logger.info(f"    Inflows: {list(level.inflows)}, Outflows: {list(level.outflows)}")

        logger.info(f"Rates: {len(model.rate_order)}")
        for rate_id in model.rate_order:
            rate = model.node(rate_id)
            logger.info(f"  - {rate.name} (ID: {rate_id})")
            logger.info(f"    Formula: '{rate.formula}'")

        constants = [n for n in model.nodes.values() if n.kind == KIND_CONSTANT]
        logger.info(f"Constants: {len(constants)}")
        for constant in constants:
            logger.info(f"  - {constant.name} (ID: {constant.id})")
            logger.info(f"    Value: {constant.current_value()}")

        logger.info(f"Auxiliaries: {len(model.evaluation_order)}")
        for aux_id in model.evaluation_order:
            aux = model.node(aux_id)
            logger.info(f"  - {aux.name} (ID: {aux_id})")
            logger.info(f"    Formula: '{aux.formula}'")

        logger.info(f"Evaluation order: {list(model.evaluation_order)}")
        logger.info("=" * 60)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def round_index(self) -> int:
        """Index of the round whose values the model currently holds"""
        return self._round_index

    def snapshot(self) -> List[float]:
        """Current level values in column order"""
        return self.model.level_values()

    def reset(self) -> None:
        """Restore initial level values and return to round 0"""
        for node in self.model.nodes.values():
            if isinstance(node, LevelNode):
                node._assign_value(node.initial)
            elif node.kind != KIND_CONSTANT:
                node._assign_value(0.0)
        self._round_index = 0
        self.evaluator.clear_cache()

    def _round_start_state(self) -> Dict[str, float]:
        """Constants, round-start level values and the built-in round variables"""
        state: Dict[str, float] = {
            "t": float(self._round_index),
            "time": float(self._round_index),
        }
        for node_id, node in self.model.nodes.items():
            if node.kind in (KIND_CONSTANT, KIND_LEVEL):
                state[node_id] = node.current_value()
        return state

    def _evaluate(self, node_id: str, round_index: int) -> float:
        """
        Evaluate one formula node against the evaluator's current variables

        Raises:
            ComputationError: If evaluation fails or the result is not finite
        """
        node = self.model.node(node_id)
        try:
            value = self.evaluator.evaluate(node.formula, node_id)
        except EvaluationError as e:
            raise ComputationError(
                message=f"Error computing {node.kind} '{node.name}' in round {round_index}: {e.message}",
                node_id=node_id,
                round_index=round_index,
                details={"evaluation_code": e.code, "formula": node.formula},
            ) from e

        if not math.isfinite(value):
            raise ComputationError(
                message=f"{node.kind.capitalize()} '{node.name}' evaluated to {value} in round {round_index}",
                node_id=node_id,
                round_index=round_index,
                details={"value": str(value), "formula": node.formula},
            )
        return value

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    def step(self) -> List[float]:
        """
        Advance the model by exactly one round

        Returns:
            Level values after the round, in column order

        Raises:
            ComputationError: If any value of the round cannot be computed;
                the model keeps its pre-round state
        """
        model = self.model
        target_round = self._round_index + 1

        state = self._round_start_state()
        self.evaluator.set_variables(state)

        # Auxiliaries in dependency order; each sees the ones before it
        auxiliary_values: Dict[str, float] = {}
        for aux_id in model.evaluation_order:
            value = self._evaluate(aux_id, target_round)
            auxiliary_values[aux_id] = value
            state[aux_id] = value

        rate_values: Dict[str, float] = {
            rate_id: self._evaluate(rate_id, target_round) for rate_id in model.rate_order
        }

        # Euler update: next = current + sum(inflows) - sum(outflows)
        next_levels: Dict[str, float] = {}
        for level_id in model.level_order:
            level = model.node(level_id)
            net_flow = sum(rate_values[r] for r in level.inflows) - sum(
                rate_values[r] for r in level.outflows
            )
            value = state[level_id] + net_flow
            if not math.isfinite(value):
                raise ComputationError(
                    message=f"Level '{level.name}' became {value} in round {target_round}",
                    node_id=level_id,
                    round_index=target_round,
                    details={"value": str(value), "net_flow": str(net_flow)},
                )
            next_levels[level_id] = value

        # Commit
        for node_id, value in auxiliary_values.items():
            model.node(node_id)._assign_value(value)
        for node_id, value in rate_values.items():
            model.node(node_id)._assign_value(value)
        for node_id, value in next_levels.items():
            model.node(node_id)._assign_value(value)
        self._round_index = target_round

        if self.verbose and logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                f"Round {target_round}: "
                + ", ".join(f"{model.node(i).name}={v:.4f}" for i, v in next_levels.items())
            )

        return self.snapshot()

    def run(self, rounds: int, sink: ResultSink) -> ResultSink:
        """
        Run the model from its initial state

        Emits round 0 (the initial state) and then one row per round,
        rounds + 1 rows in total.

        Args:
            rounds: Number of rounds to compute (positive)
            sink: Receiver of the emitted rows

        Returns:
            The sink

        Raises:
            ValueError: If rounds is not a positive integer within max_rounds
            ComputationError: If a round fails; rows already emitted stay valid
        """
        if isinstance(rounds, bool) or not isinstance(rounds, int) or rounds <= 0:
            raise ValueError(f"Round count must be a positive integer, got {rounds!r}")
        if rounds > self.settings.max_rounds:
            raise ValueError(
                f"Round count {rounds:,} exceeds maximum of {self.settings.max_rounds:,}"
            )

        self.reset()

        if self.verbose:
            logger.info("=" * 60)
            logger.info("SIMULATION START")
            logger.info(f"Rounds: {rounds}")
            logger.info("Initial conditions:")
            for name, value in zip(self.model.column_names, self.snapshot()):
                logger.info(f"  {name}: {value:.4f}")
            logger.info("=" * 60)

        sink.append_row(0, self.snapshot())
        for _ in range(rounds):
            row = self.step()
            sink.append_row(self._round_index, row)

        if self.verbose:
            logger.info("=" * 60)
            logger.info("SIMULATION COMPLETE")
            logger.info("Final values:")
            for name, value in zip(self.model.column_names, self.snapshot()):
                logger.info(f"  {name}: {value:.4f}")
            logger.info("=" * 60)

        return sink


class _ForwardingRecorder(TimeSeriesRecorder):
    """Recorder that also hands every row to a caller-supplied sink"""

    def __init__(self, columns: Sequence[str], sink: ResultSink):
        super().__init__(columns)
        self._sink = sink

    def append_row(self, round_index: int, row: Sequence[float]) -> None:
        super().append_row(round_index, row)
        self._sink.append_row(round_index, row)


def _as_runnable(
    model: Union[RunnableModel, ModelBuilder, ModelDefinition, Mapping[str, Any]],
    settings: Optional[Settings],
) -> RunnableModel:
    if isinstance(model, RunnableModel):
        return model
    if isinstance(model, ModelBuilder):
        return validate_model(model, settings)
    if isinstance(model, ModelDefinition):
        return validate_model(ModelBuilder.from_definition(model), settings)
    if isinstance(model, Mapping):
        return validate_model(ModelBuilder.from_dict(model), settings)
    raise TypeError(f"Cannot simulate object of type {type(model).__name__}")


def run_simulation(
    model: Union[RunnableModel, ModelBuilder, ModelDefinition, Mapping[str, Any]],
    rounds: int,
    sink: Optional[ResultSink] = None,
    verbose: bool = False,
    settings: Optional[Settings] = None,
) -> SimulationResultDict:
    """
    Convenience function to run a simulation

    Validates the model if needed, runs it and records the results. Log
    records emitted during the run carry a fresh run ID.

    Args:
        model: Runnable model, builder, model definition or raw model dict
        rounds: Number of rounds to compute
        sink: Optional additional receiver of every emitted row
        verbose: Enable detailed logging
        settings: Optional settings (defaults to get_settings())

    Returns:
        Dictionary with 'rounds', 'columns' and 'results' keys

    Raises:
        StructuralError: If the model fails validation
        ComputationError: If a round fails
    """
    token = set_run_id()
    try:
        runnable = _as_runnable(model, settings)
        clock = SimulationClock(runnable, verbose=verbose, settings=settings)
        if sink is None:
            recorder = TimeSeriesRecorder(runnable.column_names)
        else:
            recorder = _ForwardingRecorder(runnable.column_names, sink)

        logger.info(f"Run {get_run_id()}: simulating '{runnable.name}' for {rounds} rounds")
        clock.run(rounds, recorder)
        logger.info(f"Run {get_run_id()}: completed {len(recorder)} rows")
        return recorder.to_dict()
    finally:
        reset_run_id(token)
