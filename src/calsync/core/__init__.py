"""Process-wide infrastructure: structured logging, tracing and metrics."""
