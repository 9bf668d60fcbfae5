"""
Tool executor - routes agent tool calls to the Dispatcher.

Every outcome is a ToolResult: successes carry the payload, failures carry
the sanitized `BrokerError.as_dict()` (stable code, message, no stack trace,
no secret material).
"""

import logging

from pydantic import ValidationError

from capbroker.shared.errors import E_BAD_REQUEST, E_INTERNAL, BrokerError, PolicyDeniedError
from capbroker.shared.models import ToolCall, ToolResult

from .dispatcher import Dispatcher
from .tool_schemas import TOOL_ARG_MODELS, TOOL_DESCRIPTIONS, pydantic_to_input_schema

logger = logging.getLogger(__name__)


class BrokerToolExecutor:
    """Validates tool arguments and invokes the matching Dispatcher operation."""

    def __init__(self, dispatcher: Dispatcher):
        self._dispatcher = dispatcher
        self._handlers = {
            "list_services": self._list_services,
            "execute": self._execute,
            "get_http_access": self._get_http_access,
        }

    async def execute(self, tool_call: ToolCall) -> ToolResult:
        handler = self._handlers.get(tool_call.tool_name)
        if handler is None:
            return ToolResult(
                tool_name=tool_call.tool_name,
                success=False,
                error={"code": E_BAD_REQUEST, "message": f"Unknown tool: {tool_call.tool_name}", "retryable": False},
            )

        try:
            args = TOOL_ARG_MODELS[tool_call.tool_name].model_validate(tool_call.arguments or {})
        except ValidationError as e:
            logger.warning(f"Arg validation failed for {tool_call.tool_name}: {e.error_count()} error(s)")
            return ToolResult(
                tool_name=tool_call.tool_name,
                success=False,
                error={
                    "code": E_BAD_REQUEST,
                    "message": "Invalid arguments",
                    "retryable": False,
                    "details": {
                        "errors": [
                            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                            for err in e.errors(include_url=False, include_input=False)
                        ]
                    },
                },
            )

        try:
            data = await handler(args)
        except PolicyDeniedError as e:
            # Expected outcome; already audited and logged by the dispatcher.
            return ToolResult(tool_name=tool_call.tool_name, success=False, error=e.as_dict())
        except BrokerError as e:
            logger.error(f"Tool {tool_call.tool_name} failed: {e.code}")
            return ToolResult(tool_name=tool_call.tool_name, success=False, error=e.as_dict())
        except Exception as e:
            logger.error(f"Tool {tool_call.tool_name} failed: {type(e).__name__}")
            return ToolResult(
                tool_name=tool_call.tool_name,
                success=False,
                error={"code": E_INTERNAL, "message": "Internal error", "retryable": False},
            )
        return ToolResult(tool_name=tool_call.tool_name, success=True, data=data)

    async def _list_services(self, args) -> list[dict]:
        return self._dispatcher.list_services()

    async def _execute(self, args) -> dict:
        response = await self._dispatcher.execute(
            capability=args.capability,
            method=args.method,
            path=args.path,
            body=args.body,
            headers=args.headers,
            reason=args.reason,
        )
        return response.to_dict()

    async def _get_http_access(self, args) -> dict:
        return await self._dispatcher.issue_http_access(args.capability, reason=args.reason)

    def get_tool_definitions(self) -> list[dict]:
        return [
            {
                "name": name,
                "description": TOOL_DESCRIPTIONS[name],
                "input_schema": pydantic_to_input_schema(model),
            }
            for name, model in TOOL_ARG_MODELS.items()
        ]
