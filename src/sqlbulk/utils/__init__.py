"""Ambient support: logging, tracing, metrics and SQL identifier safety."""
