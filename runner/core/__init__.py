from runner.core.fio import FioExecutor, build_fio_args, check_installation
from runner.core.hostinfo import collect_host_info
from runner.core.parser import FioOutputParser
from runner.core.process import OutcomeKind, ProcessHandle, ProcessOutcome, ProcessRunner

__all__ = [
    "FioExecutor",
    "build_fio_args",
    "check_installation",
    "collect_host_info",
    "FioOutputParser",
    "OutcomeKind",
    "ProcessHandle",
    "ProcessOutcome",
    "ProcessRunner",
]
