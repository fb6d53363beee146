"""Shell supervisor: owns the worker process lifecycle from a parent process."""

from convpipe.shell.supervisor import ShellSupervisor, StopOutcome, WorkerState, run_shell

__all__ = ["ShellSupervisor", "StopOutcome", "WorkerState", "run_shell"]
