from ralph.hosts.base import LoggingNotifier, Notifier, SessionHost, Severity, notify_safely
from ralph.hosts.resilient import BestEffortSessionHost, RetryPolicy

__all__ = [
    "BestEffortSessionHost",
    "LoggingNotifier",
    "Notifier",
    "RetryPolicy",
    "SessionHost",
    "Severity",
    "notify_safely",
]
