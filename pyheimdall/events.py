"""
Progress and status events delivered to the presentation layer
"""

from dataclasses import dataclass


class StatusLevel:
    """Status message levels"""
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class ProgressEvent:
    """Snapshot of transfer progress"""
    fraction: float
    phase: str

    def __post_init__(self):
        if not 0.0 <= self.fraction <= 1.0:
            raise ValueError(f"Progress fraction out of range: {self.fraction}")

    @property
    def percentage(self) -> float:
        return self.fraction * 100.0


@dataclass(frozen=True)
class StatusEvent:
    """Short human-readable status line"""
    message: str
    level: str = StatusLevel.INFO


class EventConsumer:
    """
    Receiver for engine events

    Subclass and override the hooks you need. Hooks are called in-line
    from the protocol loop and should return quickly.
    """

    def on_progress(self, event: ProgressEvent):
        pass

    def on_status(self, event: StatusEvent):
        pass


class RecordingConsumer(EventConsumer):
    """Consumer that keeps every event it receives"""

    def __init__(self):
        self.progress = []
        self.status = []

    def on_progress(self, event: ProgressEvent):
        self.progress.append(event)

    def on_status(self, event: StatusEvent):
        self.status.append(event)
