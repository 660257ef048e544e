# Models package
from .device import Device
from .runtime_state import DeviceRuntime
from .runtime_session import RuntimeSession
from .emitted_state import LastEmittedState

__all__ = ['Device', 'DeviceRuntime', 'RuntimeSession', 'LastEmittedState']
