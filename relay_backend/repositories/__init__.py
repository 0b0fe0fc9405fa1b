from .connected_relay_repository import ConnectedRelayRepository
from .dispatch_record_repository import DispatchRecordRepository
from .recurring_task_repository import RecurringTaskRepository
from .relay_config_repository import RelayConfigRepository
from .task_repositories import TaskQueueRepository, TemplateRepository

__all__ = [
    "ConnectedRelayRepository",
    "DispatchRecordRepository",
    "RecurringTaskRepository",
    "RelayConfigRepository",
    "TaskQueueRepository",
    "TemplateRepository",
]
