from __future__ import annotations

from enum import Enum, IntEnum


class JobOperation(str, Enum):
    BACKUP = "backup"
    RESTORE = "restore"


class JobState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"


class Stage(str, Enum):
    TARGET = "target"
    STORE = "store"


class PluginOperation(str, Enum):
    META = "meta"
    VALIDATE = "validate"
    BACKUP = "backup"
    RESTORE = "restore"
    STORE = "store"
    RETRIEVE = "retrieve"
    PURGE = "purge"


class InvocationOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    UNIMPLEMENTED = "unimplemented"


class ExitCode(IntEnum):
    """Exit statuses of the plugin process contract."""

    SUCCESS = 0
    USAGE = 1
    UNSUPPORTED_ACTION = 10
    EXEC_FAILURE = 3
    PLUGIN_FAILURE = 4
    JSON_FAILURE = 5
    ENDPOINT_MISSING_KEY = 6
    RESTORE_KEY_REQUIRED = 7
