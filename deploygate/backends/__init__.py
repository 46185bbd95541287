"""
Backends Module
===============
Execution backends that create, start, stop and inspect deployed workloads.
"""

from .base import DeploymentBackend
from .docker_backend import DockerBackend
from .dry_run import DryRunBackend

__all__ = [
    "DeploymentBackend",
    "DockerBackend",
    "DryRunBackend",
]
