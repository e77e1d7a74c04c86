"""Runs code on a foreverVM REPL and folds the stream into one response."""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

import anyio

if TYPE_CHECKING:
    from forevervm_mcp.client import ForeverVMClient

log = logging.getLogger(__name__)

NO_VALUE_RESULT = "the code did not return a value"
NO_RESULT_OR_ERROR = "no result or error returned"


class ResultKind(enum.Enum):
    VALUE = "value"
    NO_VALUE = "no_value"
    ERROR = "error"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class ExecResponse:
    output: str
    result: str
    replId: str
    error: str | None = None
    image: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, str]:
        """Flat record with unset optional fields left out."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def failure(cls, repl_id: str, error: str) -> ExecResponse:
        return cls(output="", result="", replId=repl_id, error=error)


def classify_result(result: Mapping[str, Any]) -> ResultKind:
    if "value" in result:
        value = result["value"]
        if isinstance(value, str):
            return ResultKind.VALUE
        if value is None:
            return ResultKind.NO_VALUE
    if result.get("error"):
        return ResultKind.ERROR
    return ResultKind.UNRECOGNIZED


def extract_image(result: Mapping[str, Any]) -> str | None:
    data = result.get("data")
    if not isinstance(data, Mapping):
        return None
    png = data.get("png")
    return png if isinstance(png, str) else None


def build_response(
    output: list[str], result: Mapping[str, Any], repl_id: str
) -> ExecResponse:
    joined = "\n".join(output)
    image = extract_image(result)
    kind = classify_result(result)

    if kind is ResultKind.VALUE:
        return ExecResponse(joined, result["value"], repl_id, image=image)
    if kind is ResultKind.NO_VALUE:
        return ExecResponse(joined, NO_VALUE_RESULT, repl_id, image=image)
    if kind is ResultKind.ERROR:
        return ExecResponse(
            joined, "", repl_id, error=f"Error: {result['error']}", image=image
        )
    log.warning("Unexpected result shape from REPL %s: %r", repl_id, sorted(result))
    return ExecResponse(joined, NO_RESULT_OR_ERROR, repl_id, image=image)


async def _run(client: ForeverVMClient, code: str, repl_id: str) -> ExecResponse:
    async with client.repl(repl_id) as repl:
        execution = await repl.exec(code)
        output = [chunk.data async for chunk in execution.output]
        result = await execution.result
    return build_response(output, result, repl_id)


async def execute(
    client: ForeverVMClient,
    code: str,
    repl_id: str,
    timeout: float | None = None,
) -> ExecResponse:
    """Execute ``code`` on REPL ``repl_id``.

    Never raises for transport or remote failures; they come back in
    ``ExecResponse.error`` with empty output. Output gathered before a
    failure is dropped. Cancellation still propagates after the REPL socket
    is closed.
    """
    log.debug("Executing %d chars on REPL %s", len(code), repl_id)
    try:
        if timeout is None:
            response = await _run(client, code, repl_id)
        else:
            with anyio.move_on_after(timeout) as scope:
                response = await _run(client, code, repl_id)
            if scope.cancelled_caught:
                log.warning("Execution on REPL %s timed out after %ss", repl_id, timeout)
                return ExecResponse.failure(
                    repl_id,
                    f"failed to execute code: execution timed out after {timeout:g}s",
                )
    except Exception as exc:
        log.warning("Execution on REPL %s failed: %s", repl_id, exc)
        return ExecResponse.failure(repl_id, f"failed to execute code: {exc}")

    log.debug("Execution on REPL %s finished (error=%s)", repl_id, response.is_error)
    return response
