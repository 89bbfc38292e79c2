"""Chat command: one conversational turn with the virtual CEO."""

import json
import sys
from pathlib import Path
from typing import List, Optional

import click

from virtual_csuite.cli.config import CLIContext
from virtual_csuite.cli.logging import cli_command, get_request_id
from virtual_csuite.cli.output import emit_error, emit_response, emit_sse, emit_success
from virtual_csuite.cli.registry import get_context
from virtual_csuite.cli.resilience import handle_keyboard_interrupt, run_async
from virtual_csuite.core.errors import ConfigurationError
from virtual_csuite.core.llm_provider import ChatMessage
from virtual_csuite.core.orchestration import ChatResult
from virtual_csuite.core.responses import ErrorCode, ErrorType, error_for_exception, error_response
from virtual_csuite.core.stream_relay import END_OF_STREAM, EventType

HISTORY_ROLES = frozenset({"user", "assistant"})


def load_history(path: Optional[Path]) -> List[ChatMessage]:
    """Read prior turns from a JSON list of ``{"role", "content"}`` objects.

    Raises:
        ValueError: If the file is not a list of user/assistant messages
    """
    if path is None:
        return []
    entries = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(entries, list):
        raise ValueError("history must be a JSON list")
    history = []
    for entry in entries:
        if not isinstance(entry, dict) or entry.get("role") not in HISTORY_ROLES:
            raise ValueError(f"invalid history entry: {entry!r}")
        history.append(ChatMessage(role=entry["role"], content=str(entry.get("content", ""))))
    return history


async def _run_chat(
    cli_ctx: CLIContext, message: str, history: List[ChatMessage], requester: str
) -> ChatResult:
    async with cli_ctx.open_service() as service:
        return await service.chat(
            message,
            history,
            requester_id=requester,
            correlation_id=get_request_id(),
        )


async def _stream_chat(
    cli_ctx: CLIContext, message: str, history: List[ChatMessage], requester: str
) -> bool:
    """Write every event as an SSE frame. Returns False if the turn ended in error."""
    ok = True
    async with cli_ctx.open_service() as service:
        async for event in service.stream_chat(
            message,
            history,
            requester_id=requester,
            correlation_id=get_request_id(),
        ):
            if event.type == EventType.ERROR:
                ok = False
            emit_sse(event.to_sse())
    emit_sse(END_OF_STREAM)
    return ok


@click.command("chat")
@click.argument("message")
@click.option("--stream", is_flag=True, help="Stream the reply as SSE frames.")
@click.option("--requester", default="anonymous", help="Requester ID for telemetry.")
@click.option(
    "--history",
    "history_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file with earlier turns of the conversation.",
)
@click.pass_context
@cli_command("chat")
@handle_keyboard_interrupt()
def chat_cmd(
    ctx: click.Context,
    message: str,
    stream: bool,
    requester: str,
    history_file: Optional[Path],
) -> None:
    """Ask the virtual CEO MESSAGE, consulting executives as needed."""
    if not message.strip():
        emit_error(
            "Message is empty",
            code="MISSING_REQUIRED",
            error_type="validation",
            remediation="Provide a non-empty message.",
        )
    try:
        history = load_history(history_file)
    except ValueError as exc:
        emit_error(
            f"Invalid history file: {exc}",
            code="VALIDATION_ERROR",
            error_type="validation",
        )

    cli_ctx = get_context(ctx)
    try:
        if stream:
            if not run_async(_stream_chat(cli_ctx, message, history, requester)):
                sys.exit(1)
            return
        result = run_async(_run_chat(cli_ctx, message, history, requester))
    except ConfigurationError as exc:
        emit_response(error_for_exception(exc))
        return

    telemetry = {"duration_ms": result.total_duration_ms, "attempts": result.attempts}
    if not result.success:
        emit_response(
            error_response(
                result.reply,
                error_code=ErrorCode.AI_PROVIDER_ERROR,
                error_type=ErrorType.AI_PROVIDER,
                data=result.to_dict(),
                telemetry=telemetry,
            )
        )
        return
    emit_success(result.to_dict(), telemetry=telemetry)
