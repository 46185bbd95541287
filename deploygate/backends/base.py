"""
DeploymentBackend - interface to the execution backend
"""

from abc import ABC, abstractmethod

from deploygate.models import BackendStatus, ChangeDescriptor


class DeploymentBackend(ABC):
    """
    Execution backend that runs the deployed workload.

    All operations must tolerate concurrent calls for distinct attempt ids
    and handles.
    """

    name = "backend"

    @abstractmethod
    async def create(self, attempt_id: str, change: ChangeDescriptor) -> str:
        """
        Create the workload for an attempt and return its handle.

        Idempotent: a second call with the same attempt id returns the same
        handle without creating another resource. Raises BackendCreateFailed.
        """
        pass

    @abstractmethod
    async def start(self, handle: str) -> None:
        """Bring the workload to running. Raises BackendStartFailed."""
        pass

    @abstractmethod
    async def stop(self, handle: str) -> None:
        """
        Stop the workload.

        Stopping a resource that never started, or only partially started,
        succeeds as a no-op. Raises BackendStopFailed otherwise.
        """
        pass

    @abstractmethod
    async def status(self, handle: str) -> BackendStatus:
        pass
