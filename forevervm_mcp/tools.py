"""MCP tool definitions for foreverVM REPLs."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from mcp import types
from mcp.shared.exceptions import McpError
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from forevervm_mcp.executor import ExecResponse, execute

if TYPE_CHECKING:
    from mcp.server.lowlevel import Server

    from forevervm_mcp.client import ForeverVMClient
    from forevervm_mcp.server import AppContext

log = logging.getLogger(__name__)

RUN_REPL_TOOL_NAME = "run-python-in-repl"
CREATE_REPL_MACHINE_TOOL_NAME = "create-python-repl"

TOOLS: tuple[types.Tool, ...] = (
    types.Tool(
        name=RUN_REPL_TOOL_NAME,
        description=(
            "Run Python code in a given REPL. Common libraries including numpy, "
            "pandas, and requests are available to be imported. External API "
            "requests are allowed."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "pythonCode": {
                    "type": "string",
                    "description": "Python code to execute in the REPL.",
                },
                "replId": {
                    "type": "string",
                    "description": (
                        "The ID corresponding with the REPL to run the Python code on. "
                        "REPLs persist global state across runs. Create a REPL once per "
                        f"session with the {CREATE_REPL_MACHINE_TOOL_NAME} tool."
                    ),
                },
            },
            "required": ["pythonCode", "replId"],
        },
    ),
    types.Tool(
        name=CREATE_REPL_MACHINE_TOOL_NAME,
        description=(
            "Create a Python REPL. Global variables, imports, and function "
            "definitions are preserved between runs."
        ),
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
)


class InvalidArgumentsError(ValueError):
    """Tool arguments failed validation. ``errors`` holds (path, message) pairs."""

    def __init__(self, errors: list[tuple[str, str]]):
        self.errors = errors
        detail = ", ".join(f"{path}: {msg}" for path, msg in errors)
        super().__init__(f"Invalid arguments: {detail}")


class RunCodeArguments(BaseModel):
    model_config = ConfigDict(frozen=True)

    pythonCode: str = Field(min_length=1)
    replId: str = Field(min_length=1)


def parse_run_arguments(arguments: Any) -> RunCodeArguments:
    try:
        return RunCodeArguments.model_validate(arguments if arguments is not None else {})
    except ValidationError as exc:
        errors = [
            (".".join(str(part) for part in err["loc"]) or "arguments", err["msg"])
            for err in exc.errors()
        ]
        raise InvalidArgumentsError(errors) from None


def _text_result(text: str, is_error: bool = False) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)], isError=is_error
    )


def render_exec_response(response: ExecResponse) -> types.CallToolResult:
    """An image wins over text; otherwise the whole record goes out as JSON."""
    if response.image:
        return types.CallToolResult(
            content=[
                types.ImageContent(type="image", data=response.image, mimeType="image/png")
            ],
            isError=response.is_error,
        )
    return _text_result(json.dumps(response.to_dict()), is_error=response.is_error)


class ToolDispatcher:
    """Routes tool calls by name. Stateless apart from the shared client."""

    def __init__(self, client: ForeverVMClient, exec_timeout: float | None = None):
        self._client = client
        self._exec_timeout = exec_timeout

    def list_tools(self) -> list[types.Tool]:
        return list(TOOLS)

    async def call_tool(
        self, name: str, arguments: Mapping[str, Any] | None
    ) -> types.CallToolResult:
        """Handle one tool call.

        Raises InvalidArgumentsError before anything runs remotely; every
        other failure is returned as a result with ``isError`` set.
        """
        if name == RUN_REPL_TOOL_NAME:
            args = parse_run_arguments(arguments)
            response = await execute(
                self._client, args.pythonCode, args.replId, timeout=self._exec_timeout
            )
            return render_exec_response(response)

        if name == CREATE_REPL_MACHINE_TOOL_NAME:
            try:
                repl_id = await self._client.create_machine()
            except Exception as exc:
                log.warning("Failed to create machine: %s", exc)
                return _text_result(f"Failed to create machine: {exc}", is_error=True)
            return _text_result(repl_id)

        log.warning("Unknown tool requested: %s", name)
        return _text_result(f"Unknown tool: {name}", is_error=True)


def _ctx(server: Server) -> AppContext:
    return server.request_context.lifespan_context


def register_tools(server: Server) -> None:
    """Register the tool list and call handlers on the MCP server."""

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return _ctx(server).dispatcher.list_tools()

    async def call_tool(req: types.CallToolRequest) -> types.ServerResult:
        dispatcher = _ctx(server).dispatcher
        try:
            result = await dispatcher.call_tool(req.params.name, req.params.arguments)
        except InvalidArgumentsError as exc:
            raise McpError(
                types.ErrorData(code=types.INVALID_PARAMS, message=str(exc))
            ) from exc
        return types.ServerResult(result)

    # registered directly so isError and argument errors are ours, not the
    # decorator's schema validation
    server.request_handlers[types.CallToolRequest] = call_tool
