"""
The store module provides the object store the controllers read from and
write to.

- Uses NamedResource as the key for all objects.
- Stores values as plain kubernetes style documents.
- Every object carries a resourceVersion used for optimistic concurrency.

This abstract interface allows for various implementations (in-memory, a live
cluster client, etc.).
"""

from .store import Store, StoreEvent, PropagationPolicy, STATUS_SUBRESOURCE
from .in_memory import InMemoryStore

__all__ = [
    "Store",
    "StoreEvent",
    "PropagationPolicy",
    "STATUS_SUBRESOURCE",
    "InMemoryStore",
]
