"""
sockswarm - Concurrent Socket.IO session load tester.

Opens many simulated client sessions, drives a scripted send/acknowledge
workload over each, and reports connection, latency and throughput figures.
"""

from .exceptions import SwarmConfigError, SwarmCredentialError, SwarmError, SwarmRunnerError

__all__ = [
    "__version__",
    "SwarmConfigError",
    "SwarmCredentialError",
    "SwarmError",
    "SwarmRunnerError",
]

__version__ = "1.0.0"
