class InvalidArgument(TypeError, ValueError):
    """Raised by setup calls (set_params, next, start, constructors) on malformed input."""
