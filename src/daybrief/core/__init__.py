"""Cross-cutting infrastructure: structured logging, tracing and metrics."""
