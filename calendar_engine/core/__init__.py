"""Core infrastructure: configuration, errors, logging, time, HTTP client and health."""
