"""On-demand launching and supervision of driver processes."""

from .descriptor import LaunchDescriptor, resolve_descriptor
from .health import build_probe, http_probe, poll_health, process_probe, tcp_probe
from .launcher import ContainerLauncher, SubprocessLauncher
from .supervisor import AutoStarter, SupervisedProcess, SupervisorState

__all__ = [
    "AutoStarter",
    "ContainerLauncher",
    "LaunchDescriptor",
    "SubprocessLauncher",
    "SupervisedProcess",
    "SupervisorState",
    "build_probe",
    "http_probe",
    "poll_health",
    "process_probe",
    "resolve_descriptor",
    "tcp_probe",
]
