"""shield-agent: remote job execution for SHIELD backup/restore pipelines."""

__version__ = "0.1.0"
