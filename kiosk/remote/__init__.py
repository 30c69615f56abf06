"""Remote execution on fleet hosts over SSH."""

from kiosk.remote.executor import HostResult, RemoteExecutor
from kiosk.remote.scripts import Credentials, RemoteJob

__all__ = ["Credentials", "HostResult", "RemoteExecutor", "RemoteJob"]
