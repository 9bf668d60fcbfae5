"""Request mediation core: secrets, sessions, policy, signing and dispatch."""

__all__ = [
    "dispatcher",
    "policy",
    "secret_store",
    "sessions",
    "signing",
    "tool_schemas",
    "tools",
    "upstream",
]
