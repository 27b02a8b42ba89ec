from __future__ import annotations


class PanelError(Exception):
    pass


class SpawnError(PanelError):
    """The OS process could not be created (missing binary, permission denied)."""

    def __init__(self, command: str, reason: str):
        super().__init__(f"failed to spawn {command}: {reason}")
        self.command = command
        self.reason = reason


class ClosedError(PanelError):
    pass


class SlowConsumerError(PanelError):
    pass


class NotFound(PanelError, LookupError):
    pass


class SessionNotFound(NotFound):
    pass


class JobNotFound(NotFound):
    pass


class KeyNotFound(NotFound):
    pass
