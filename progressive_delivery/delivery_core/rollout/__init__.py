from .catalog import Stage, StageCatalog, Threshold
from .gates import ThresholdEvaluator
from .models import ALLOWED_TRANSITIONS, ROLLOUT_STATES, TERMINAL_STATES, Rollout
from .orchestrator import Orchestrator, TickResult
from .rollback import RollbackExecutor, RollbackResult
from .state_machine import RolloutStateMachine

__all__ = [
    "ALLOWED_TRANSITIONS",
    "Orchestrator",
    "ROLLOUT_STATES",
    "RollbackExecutor",
    "RollbackResult",
    "Rollout",
    "RolloutStateMachine",
    "Stage",
    "StageCatalog",
    "TERMINAL_STATES",
    "Threshold",
    "ThresholdEvaluator",
    "TickResult",
]
