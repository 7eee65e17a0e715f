import logging
import uuid
from collections import OrderedDict
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from app.config.settings import settings
from app.models.flow import FlowData
from app.models.simulation import MockApiResponse
from app.utils.metrics import active_runs_gauge
from app.workflows.engine import FlowSimulator, SimulationError

logger = logging.getLogger(__name__)


class RunNotFoundError(SimulationError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Simulation run '{run_id}' not found")


class SimulationService:
    """
    Process-local registry of live simulation runs.

    Runs are never persisted; when more than `max_active_runs` are held the
    least recently used one is discarded.
    """

    def __init__(self, max_active_runs: Optional[int] = None):
        self._runs: "OrderedDict[str, FlowSimulator]" = OrderedDict()
        self.max_active_runs = settings.max_active_runs if max_active_runs is None else max_active_runs
        logger.info("SimulationService initialized.")

    def create_run(
        self,
        flow: Union[FlowData, Dict[str, Any]],
        auto_advance: Optional[bool] = None,
        retry_exhausted_policy: Optional[str] = None,
        api_mocks: Optional[Iterable[MockApiResponse]] = None,
    ) -> Tuple[str, FlowSimulator]:
        run_id = uuid.uuid4().hex
        simulator = FlowSimulator(
            flow,
            run_id=run_id,
            auto_advance=auto_advance,
            retry_exhausted_policy=retry_exhausted_policy,
            api_mocks=api_mocks,
        )
        self._runs[run_id] = simulator
        self._evict()
        active_runs_gauge.set(len(self._runs))
        logger.info(f"Created simulation run {run_id} for flow '{simulator.flow.name}' ({len(simulator.flow.steps)} steps).")
        return run_id, simulator

    def get_run(self, run_id: str) -> FlowSimulator:
        simulator = self._runs.get(run_id)
        if simulator is None:
            raise RunNotFoundError(run_id)
        self._runs.move_to_end(run_id)
        return simulator

    def delete_run(self, run_id: str) -> None:
        if self._runs.pop(run_id, None) is None:
            raise RunNotFoundError(run_id)
        active_runs_gauge.set(len(self._runs))
        logger.info(f"Deleted simulation run {run_id}.")

    def clear(self) -> int:
        count = len(self._runs)
        self._runs.clear()
        active_runs_gauge.set(0)
        return count

    def __len__(self) -> int:
        return len(self._runs)

    def _evict(self):
        while self.max_active_runs and len(self._runs) > self.max_active_runs:
            run_id, _ = self._runs.popitem(last=False)
            logger.warning(f"Evicted simulation run {run_id}: more than {self.max_active_runs} active runs.")


# Globally accessible instance
simulation_service = SimulationService()
