"""Network side of the shared table: the store relay and the device session."""

from .client import RelayConnection, RemoteRegistry, RemoteStore, TableSession
from .server import RelayServer

__all__ = ["RelayConnection", "RemoteRegistry", "RemoteStore", "RelayServer", "TableSession"]
