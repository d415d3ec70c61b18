"""Cross-cutting concerns: logging, errors, HTTP middleware."""
