"""
Pydantic models for tool argument schemas - single source of truth.

Tool definitions and argument validation both derive from these models:
  - get_tool_definitions() publishes `pydantic_to_input_schema(model)`
  - BrokerToolExecutor validates args with `model.model_validate(args)`
"""

import json
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from capbroker.shared.security import has_forbidden_header_chars


class ListServicesArgs(BaseModel):
    """Arguments for list_services tool (none)."""
    model_config = ConfigDict(extra="forbid")


class ExecuteArgs(BaseModel):
    """Arguments for execute tool."""
    model_config = ConfigDict(extra="forbid")

    capability: str = Field(min_length=1, description="Capability name from list_services")
    method: str = Field(min_length=1, description="HTTP method (GET, POST, PUT, DELETE, PATCH)")
    path: str = Field(min_length=1, description="API path relative to the service base URL, may include a query string")
    body: Optional[Union[str, dict, list]] = Field(
        default=None,
        description="Request body; objects and arrays are sent as compact JSON",
    )
    headers: Optional[dict[str, str]] = Field(default=None, description="Extra request headers")
    reason: Optional[str] = Field(default=None, description="Why access is needed (required by some capabilities)")

    @field_validator("body", mode="after")
    @classmethod
    def _serialize_body(cls, v: Any) -> Optional[str]:
        if v is None or isinstance(v, str):
            return v
        return json.dumps(v, separators=(",", ":"))

    @field_validator("headers", mode="after")
    @classmethod
    def _reject_control_chars(cls, v: Optional[dict[str, str]]) -> Optional[dict[str, str]]:
        for name, value in (v or {}).items():
            if has_forbidden_header_chars(name) or has_forbidden_header_chars(value):
                raise ValueError(f"header {name!r} contains CR, LF or NUL")
        return v


class GetHttpAccessArgs(BaseModel):
    """Arguments for get_http_access tool."""
    model_config = ConfigDict(extra="forbid")

    capability: str = Field(min_length=1, description="Capability name from list_services")
    reason: Optional[str] = Field(default=None, description="Why access is needed (required by some capabilities)")


def pydantic_to_input_schema(model: type[BaseModel]) -> dict:
    """
    Convert a Pydantic model to a JSON-schema `input_schema`.

    Strips Pydantic-specific keys (like 'title') that tool consumers
    don't need.
    """
    schema = model.model_json_schema()
    schema.pop("title", None)
    schema.setdefault("type", "object")
    return schema


# Map tool names to their arg models for runtime validation
TOOL_ARG_MODELS: dict[str, type[BaseModel]] = {
    "list_services": ListServicesArgs,
    "execute": ExecuteArgs,
    "get_http_access": GetHttpAccessArgs,
}

TOOL_DESCRIPTIONS: dict[str, str] = {
    "list_services": "List the capabilities this agent may request, with their service and TTL.",
    "execute": "Make an API request through a capability. The broker signs it; the secret is never returned.",
    "get_http_access": "Get a short-lived proxy URL and bearer session for direct HTTP use of a capability.",
}
