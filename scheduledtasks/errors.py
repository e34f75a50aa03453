"""Exception hierarchy for the task scheduler."""


class SchedulerError(Exception):
    """Base class for every error raised by scheduledtasks."""


class ConfigurationError(SchedulerError):
    """The task group configuration is unreadable or malformed."""


class ModuleContractError(SchedulerError):
    """A task module is missing or does not export a usable MonitoredTask."""


class TaskStateError(SchedulerError):
    """A lifecycle transition was attempted from a state that does not allow it."""


class UnknownGroupError(SchedulerError, KeyError):
    """No configured task group has the requested name."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class UnknownTaskError(SchedulerError, KeyError):
    """The task group has no task with the requested name."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""
