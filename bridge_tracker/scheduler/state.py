from enum import Enum
import logging

log = logging.getLogger(__name__)


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    ABORTING = "aborting"


class SchedulerState:
    """In-process run flag for one controller: Idle -> Running -> (Aborting) -> Idle.

    Guards against overlapping runs inside this process only; it is not a
    cross-process lock.
    """

    def __init__(self, name: str):
        self.name = name
        self.state = RunState.IDLE

    def try_start(self) -> bool:
        if self.state is not RunState.IDLE:
            return False
        self.state = RunState.RUNNING
        return True

    def request_stop(self) -> bool:
        if self.state is RunState.RUNNING:
            log.info(f"[{self.name}] abort requested")
            self.state = RunState.ABORTING
            return True
        return False

    def finish(self) -> None:
        self.state = RunState.IDLE

    @property
    def is_running(self) -> bool:
        return self.state is not RunState.IDLE

    @property
    def should_stop(self) -> bool:
        return self.state is RunState.ABORTING
