from __future__ import annotations


class PipelineCancelled(Exception):
    """A run was stopped between steps (shutdown); it is safe to re-run from Queued."""


class InvalidTransition(Exception):
    def __init__(self, from_state: str, to_state: str) -> None:
        super().__init__(f"invalid pipeline transition {from_state} -> {to_state}")
        self.from_state = from_state
        self.to_state = to_state


class QueueFull(Exception):
    """The inbound queue is at its configured depth; the producer must back off."""


class PoolClosed(Exception):
    """The worker pool is not accepting messages (not started or shutting down)."""
