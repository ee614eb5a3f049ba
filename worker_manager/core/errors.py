from __future__ import annotations


class WorkerManagerError(Exception):
    """Base class for errors raised by the worker manager."""


class StoreUnavailable(WorkerManagerError):
    """The worker record store cannot be opened or is not open."""


class InvalidRequestError(WorkerManagerError):
    pass


class InvalidWorkerId(InvalidRequestError):
    pass


class InvalidDesiredCount(InvalidRequestError):
    pass


class InvalidSignal(InvalidRequestError):
    pass


class CapacityExceeded(InvalidRequestError):
    def __init__(self, desired_count: int, capacity: int):
        super().__init__(f"desiredCount={desired_count} exceeds worker port range capacity {capacity}")
        self.desired_count = desired_count
        self.capacity = capacity


class PortRangeExhausted(WorkerManagerError):
    def __init__(self, start: int, end: int):
        super().__init__(f"No worker ports available in range {start}-{end}")
        self.start = start
        self.end = end


class SupervisorShuttingDown(WorkerManagerError):
    pass
