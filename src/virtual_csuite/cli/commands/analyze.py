"""Board analysis command.

Runs the CFO, CMO and COO analyses of a document followed by the CEO
synthesis, and emits the result envelope.
"""

from pathlib import Path
from typing import Optional

import click

from virtual_csuite.cli.config import CLIContext
from virtual_csuite.cli.logging import cli_command, get_cli_logger, get_request_id
from virtual_csuite.cli.output import emit_error, emit_response, emit_success
from virtual_csuite.cli.registry import get_context
from virtual_csuite.cli.resilience import handle_keyboard_interrupt, run_async
from virtual_csuite.core.errors import ConfigurationError
from virtual_csuite.core.orchestration import OrchestrationResult
from virtual_csuite.core.responses import analysis_failed_error, error_for_exception
from virtual_csuite.core.scatter_gather import AnalysisRequest

logger = get_cli_logger()


async def _run_analysis(cli_ctx: CLIContext, request: AnalysisRequest) -> OrchestrationResult:
    async with cli_ctx.open_service() as service:
        return await service.orchestrate_analysis(request)


@click.command("analyze")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--requester", default="anonymous", help="Requester ID for telemetry.")
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False),
    help="Write the board report under this directory.",
)
@click.pass_context
@cli_command("analyze")
@handle_keyboard_interrupt()
def analyze_cmd(
    ctx: click.Context,
    file: Path,
    requester: str,
    output_dir: Optional[str],
) -> None:
    """Analyse FILE with the virtual board and emit the report."""
    content = file.read_text(encoding="utf-8")
    if not content.strip():
        emit_error(
            f"Document is empty: {file}",
            code="VALIDATION_ERROR",
            error_type="validation",
            remediation="Provide a document with content to analyse.",
        )

    cli_ctx = get_context(ctx).with_reports_dir(output_dir)
    request = AnalysisRequest(
        content=content,
        correlation_id=get_request_id(),
        requester_id=requester,
    )
    logger.info("Starting board analysis", document=str(file), chars=len(content))

    try:
        result = run_async(_run_analysis(cli_ctx, request))
    except ConfigurationError as exc:
        emit_response(error_for_exception(exc))
        return

    telemetry = {"duration_ms": result.total_duration_ms}
    if not result.success:
        emit_response(
            analysis_failed_error(
                result.error or "analysis failed",
                result.failed_labels,
                telemetry=telemetry,
            )
        )
        return

    data = result.to_dict()
    if cli_ctx.reports_dir is not None and result.report_key:
        data["reportPath"] = str(cli_ctx.reports_dir / result.report_key)
    else:
        data["report"] = result.report
    emit_success(data, telemetry=telemetry)
