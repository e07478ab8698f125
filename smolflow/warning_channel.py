import os
import sys
import warnings
from contextlib import contextmanager
from typing import Callable, List, Iterator, Optional, Iterable

from .errors import InvalidArgument

WarningHandler = Callable[[str], None]

_PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))

class FlowWarning(UserWarning):
    """Category for non-fatal structural warnings (overwritten successors, unmatched actions, ...)."""

def _user_frame():
    frame = sys._getframe(1)
    while frame is not None and os.path.dirname(os.path.abspath(frame.f_code.co_filename)) == _PACKAGE_DIR:
        frame = frame.f_back
    return frame

def stderr_handler(message: str):
    """Default handler: routes through the warnings module, which prints to stderr.

    The warning is attributed to the first frame outside smolflow and is not
    recorded in a once-per-location registry, so a repeated problem is
    reported every time it happens.
    """
    frame = _user_frame()
    if frame is None:
        warnings.warn(message, FlowWarning, stacklevel=2)
        return
    warnings.warn_explicit(message, FlowWarning, frame.f_code.co_filename, frame.f_lineno,
                           module=frame.f_globals.get('__name__'), registry=None,
                           module_globals=frame.f_globals)

class WarningChannel:
    """Process-scoped list of warning handlers.

    Nodes and flows report structural problems here instead of raising.
    A fresh channel carries the stderr handler; clear_handlers() silences it.

    Usage:
        channel = WarningChannel(handlers=[])
        channel.add_handler(my_log.append)
        flow = Flow(start=node, channel=channel)

        with channel.capture() as messages:
            flow.run(shared)
    """
    def __init__(self, handlers: Optional[Iterable[WarningHandler]] = None):
        self.handlers: List[WarningHandler] = []
        for h in ([stderr_handler] if handlers is None else handlers): self.add_handler(h)

    def warn(self, message: str):
        for handler in list(self.handlers): handler(message)

    emit = warn

    def add_handler(self, handler: WarningHandler) -> WarningHandler:
        if not callable(handler): raise InvalidArgument("Warning handler must be callable")
        self.handlers.append(handler)
        return handler

    def remove_handler(self, handler: WarningHandler):
        if handler in self.handlers: self.handlers.remove(handler)

    def clear_handlers(self): self.handlers = []

    def reset(self): self.handlers = [stderr_handler]

    @contextmanager
    def capture(self) -> Iterator[List[str]]:
        """Temporarily replace all handlers with one that records messages."""
        saved, messages = self.handlers, []
        self.handlers = [messages.append]
        try: yield messages
        finally: self.handlers = saved

    def __repr__(self): return f"WarningChannel(handlers={len(self.handlers)})"

default_channel = WarningChannel()

def get_default_channel() -> WarningChannel: return default_channel

def add_warning_handler(handler: WarningHandler) -> WarningHandler: return default_channel.add_handler(handler)

def clear_warning_handlers(): default_channel.clear_handlers()
