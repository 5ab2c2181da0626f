"""
Cooperative cancellation for long-running backup steps.

A single threading.Event is shared by the scheduler and every component that
waits: setting it makes poll loops and subprocess waits give up early.
"""

import threading
import time
from typing import Optional


class OperationCancelled(Exception):
    """Raised when an operation stops because shutdown was requested."""
    pass


def check_cancelled(cancel_event: Optional[threading.Event], what: str):
    """
    Raise OperationCancelled if the event has been set.

    Args:
        cancel_event: Shared cancellation event (None means never cancelled)
        what: Description of the interrupted operation, for the message
    """
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled(f"Cancelled while {what}")


def wait(cancel_event: Optional[threading.Event], seconds: float) -> bool:
    """
    Sleep for up to `seconds`, waking early on cancellation.

    Returns:
        True if cancellation was requested during the wait
    """
    if cancel_event is None:
        time.sleep(seconds)
        return False
    return cancel_event.wait(seconds)
