from __future__ import annotations


class DeliveryError(Exception):
    """Base class for controller errors."""


class InvalidCatalog(DeliveryError, ValueError):
    """Stage plan rejected at rollout start; the rollout is never created."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__(f"Invalid stage catalog: {'; '.join(self.problems)}")


class InvalidState(DeliveryError):
    """Operation not allowed for the rollout's current status."""


class StageOutOfRange(DeliveryError, IndexError):
    pass


class Unavailable(DeliveryError):
    """Metric backend could not be reached."""


class RouterError(DeliveryError):
    """Traffic router rejected or failed a weight update. Always retryable."""


class StoreConflict(DeliveryError):
    """Compare-and-swap write lost against a concurrent writer."""


class RolloutNotFound(DeliveryError, KeyError):
    pass
