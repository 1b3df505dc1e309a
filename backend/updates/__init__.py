"""
Updates Module

Container update pipeline.

Architecture:
- UpdateChecker: scans containers and selects update candidates
- FreshnessCache: rate-limited registry lookups backed by the remote_images table
- DependencyResolver: stops and restarts compose depends_on dependents
- UpdateExecutor: recreates candidates one at a time
- ImageCleanup: removes images no container references anymore
"""

from updates.types import BatchResult, ContainerRecord, ImageRecord, ImageSet, UpdateCandidate

__all__ = [
    'BatchResult',
    'ContainerRecord',
    'ImageRecord',
    'ImageSet',
    'UpdateCandidate',
]
