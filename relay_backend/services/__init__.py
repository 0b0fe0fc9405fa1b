from .command_router import CommandRouter
from .device_session import DeviceSession
from .dispatch_bridge import QueueDispatchBridge, TaskDispatchBridge
from .recurring_scheduler import RecurringTaskScheduler, is_due
from .relay_registry import RegistryEvent, RelayRegistry

__all__ = [
    "CommandRouter",
    "DeviceSession",
    "QueueDispatchBridge",
    "TaskDispatchBridge",
    "RecurringTaskScheduler",
    "is_due",
    "RegistryEvent",
    "RelayRegistry",
]
