"""In-memory remote API mock for lifecycle tests.

Provides fake implementations of the RemoteClient and AssociationClient
protocols plus a fake clock, so retry windows and convergence waits run
instantly.

Key Features:
- In-memory resources with scripted status progressions
- Relationship sets with delayed visibility of new members
- Error injection per method (queued or permanent)
- Call and mutation logs for ordering assertions

Usage:
    from remote_mock import FakeClock, MockAssociationClient

    clock = FakeClock()
    associations = MockAssociationClient(
        members={"vpce-1": ["sg-default"]},
        defaults={"vpce-1": "sg-default"},
    )

    # Your test code here

    assert associations.mutations == [("add", "vpce-1", "sg-2")]
"""

from .associations import MockAssociationClient
from .clock import FakeClock
from .remote import ErrorInjector, MockRecord, MockRemoteClient

__all__ = [
    "ErrorInjector",
    "FakeClock",
    "MockAssociationClient",
    "MockRecord",
    "MockRemoteClient",
]
