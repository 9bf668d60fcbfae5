"""Shared cross-cutting concerns: config, errors, models, security, audit."""

__all__ = [
    "audit_log",
    "config",
    "constants",
    "crypto",
    "errors",
    "interfaces",
    "models",
    "schemas",
    "security",
]
