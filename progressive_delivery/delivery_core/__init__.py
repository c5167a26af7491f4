"""Progressive delivery controller: staged traffic shifting with automated rollback."""

from .config import ControllerConfig, load_config
from .factory import build_orchestrator

__all__ = ["ControllerConfig", "build_orchestrator", "load_config"]
