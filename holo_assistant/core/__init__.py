"""Process configuration, errors, logging and tracing."""
