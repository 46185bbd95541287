"""
Feeds Module
============
CI build status sources polled while a deployment is monitored.
"""

from .base import StatusFeed
from .jenkins import JenkinsStatusFeed
from .scripted import ScriptedStatusFeed

__all__ = [
    "StatusFeed",
    "JenkinsStatusFeed",
    "ScriptedStatusFeed",
]
