# src/main.py — v1
"""CLI entry point: create, analyze, run-step, approve, continue, rollback, restart, status, worker.

Usage:
    stagegate create <image> --owner <owner> [options]
    stagegate analyze <pipeline_id> --owner <owner>
    stagegate run-step <pipeline_id> <step> --owner <owner> [options]
    stagegate approve <pipeline_id> <step> --owner <owner> [--artifact ID]
    stagegate continue <pipeline_id> --owner <owner>
    stagegate rollback <pipeline_id> --owner <owner> [--step N]
    stagegate restart <pipeline_id> --owner <owner> [--step N]
    stagegate status <pipeline_id> --owner <owner>
    stagegate worker [--once] [--interval S]

Results are printed to stdout as JSON; logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import mimetypes
import sys
from pathlib import Path

from pydantic import BaseModel

from stagegate.version import __version__

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    from stagegate.config.settings import load_settings
    from stagegate.logging.logger import setup_logging

    settings = load_settings()
    setup_logging(
        level="DEBUG" if args.verbose else settings.log_level,
        log_format=settings.log_format,
        log_file=settings.log_file,
        rotation=settings.log_rotation,
        retention=settings.log_retention,
        stream=sys.stderr,
    )

    try:
        return asyncio.run(args.func(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stagegate",
        description=f"stagegate v{__version__}: quality-gated image pipeline engine",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- create ---
    p_create = subparsers.add_parser("create", help="Create a pipeline from a floor plan image")
    p_create.add_argument("image", type=Path, help="Path to the source image")
    p_create.add_argument("--owner", required=True)
    p_create.add_argument("--quality-tier", choices=["1K", "2K", "4K"], default=None)
    p_create.add_argument("--aspect-ratio", choices=["1:1", "4:3", "16:9", "2:1"], default=None)
    p_create.add_argument(
        "--no-auto-retry", action="store_true",
        help="Disable automatic retries for this pipeline",
    )
    p_create.set_defaults(func=_cmd_create)

    # --- analyze ---
    p_analyze = subparsers.add_parser("analyze", help="Run step 0 space analysis")
    p_analyze.add_argument("pipeline_id")
    p_analyze.add_argument("--owner", required=True)
    p_analyze.set_defaults(func=_cmd_analyze)

    # --- run-step ---
    p_run = subparsers.add_parser("run-step", help="Run one step (1-7)")
    p_run.add_argument("pipeline_id")
    p_run.add_argument("step", type=int)
    p_run.add_argument("--owner", required=True)
    p_run.add_argument("-n", "--count", type=int, default=1, help="Candidates to generate")
    p_run.add_argument("--prompt", default=None, help="Override the step's base prompt")
    p_run.add_argument("--camera-position", default=None)
    p_run.add_argument("--forward-direction", default=None)
    p_run.add_argument("--camera-angle", default=None)
    p_run.add_argument("--space-id", default=None)
    p_run.add_argument(
        "--wait", action="store_true",
        help="Wait for queued auto-retries to finish before exiting",
    )
    p_run.set_defaults(func=_cmd_run_step)

    # --- approve ---
    p_approve = subparsers.add_parser("approve", help="Manually approve a step")
    p_approve.add_argument("pipeline_id")
    p_approve.add_argument("step", type=int)
    p_approve.add_argument("--owner", required=True)
    p_approve.add_argument("--artifact", default=None, help="Candidate artifact to select")
    p_approve.add_argument("--notes", default="")
    p_approve.set_defaults(func=_cmd_approve)

    # --- continue ---
    p_continue = subparsers.add_parser("continue", help="Advance an approved step")
    p_continue.add_argument("pipeline_id")
    p_continue.add_argument("--owner", required=True)
    p_continue.add_argument("--from-step", type=int, default=None)
    p_continue.set_defaults(func=_cmd_continue)

    # --- rollback ---
    p_rollback = subparsers.add_parser("rollback", help="Roll back one step")
    p_rollback.add_argument("pipeline_id")
    p_rollback.add_argument("--owner", required=True)
    p_rollback.add_argument(
        "--step", type=int, default=None,
        help="Expected current step (rejected if the pipeline is elsewhere)",
    )
    p_rollback.set_defaults(func=_cmd_rollback)

    # --- restart ---
    p_restart = subparsers.add_parser(
        "restart", help="Move a step left running by a crash back to pending"
    )
    p_restart.add_argument("pipeline_id")
    p_restart.add_argument("--owner", required=True)
    p_restart.add_argument(
        "--step", type=int, default=None,
        help="Expected current step (rejected if the pipeline is elsewhere)",
    )
    p_restart.set_defaults(func=_cmd_restart)

    # --- status ---
    p_status = subparsers.add_parser("status", help="Show pipeline status")
    p_status.add_argument("pipeline_id")
    p_status.add_argument("--owner", required=True)
    p_status.set_defaults(func=_cmd_status)

    # --- worker ---
    p_worker = subparsers.add_parser("worker", help="Process queued auto-retries")
    p_worker.add_argument("--once", action="store_true", help="Drain once and exit")
    p_worker.add_argument(
        "--interval", type=float, default=5.0,
        help="Polling interval in seconds (default: 5)",
    )
    p_worker.set_defaults(func=_cmd_worker)

    return parser


def _orchestrator(settings, autostart_retries: bool = True):
    from stagegate.api.facade import build_orchestrator

    return build_orchestrator(settings, autostart_retries=autostart_retries)


def _emit(result: BaseModel) -> int:
    """Print ``result`` as JSON; exit code 2 for error results."""
    print(result.model_dump_json(indent=2))
    return 2 if getattr(result, "kind", None) == "error" else 0


async def _cmd_create(args: argparse.Namespace, settings) -> int:
    from stagegate.api.models import CreatePipelineRequest, SourceImage

    image: Path = args.image
    if not image.is_file():
        logger.error("File not found: %s", image)
        return 1

    orchestrator = _orchestrator(settings)
    try:
        pipeline = await orchestrator.create_pipeline(
            CreatePipelineRequest(
                owner=args.owner,
                source=SourceImage(
                    content=image,
                    filename=image.name,
                    mime_type=mimetypes.guess_type(image.name)[0] or "image/png",
                ),
                quality_tier=args.quality_tier,
                aspect_ratio=args.aspect_ratio,
                auto_retry_enabled=False if args.no_auto_retry else None,
            )
        )
        return _emit(pipeline)
    finally:
        orchestrator.close()


async def _cmd_analyze(args: argparse.Namespace, settings) -> int:
    orchestrator = _orchestrator(settings)
    try:
        return _emit(await orchestrator.run_space_analysis(args.pipeline_id, args.owner))
    finally:
        orchestrator.close()


async def _cmd_run_step(args: argparse.Namespace, settings) -> int:
    from stagegate.core.models import StepParams

    orchestrator = _orchestrator(settings)
    try:
        result = await orchestrator.run_step(
            args.pipeline_id,
            args.step,
            args.owner,
            StepParams(
                output_count=args.count,
                prompt=args.prompt,
                camera_position=args.camera_position,
                forward_direction=args.forward_direction,
                camera_angle=args.camera_angle,
                space_id=args.space_id,
            ),
        )
        code = _emit(result)
        if args.wait:
            await orchestrator.wait_for_retries()
            from stagegate.api.models import PipelineStatus
            from stagegate.core.models import ErrorResult

            pipeline = await orchestrator.get_pipeline(args.pipeline_id, args.owner)
            if not isinstance(pipeline, ErrorResult):
                _emit(PipelineStatus.from_pipeline(pipeline))
        return code
    finally:
        orchestrator.close()


async def _cmd_approve(args: argparse.Namespace, settings) -> int:
    orchestrator = _orchestrator(settings)
    try:
        return _emit(
            await orchestrator.approve_step(
                args.pipeline_id, args.owner, args.step, args.artifact, args.notes
            )
        )
    finally:
        orchestrator.close()


async def _cmd_continue(args: argparse.Namespace, settings) -> int:
    orchestrator = _orchestrator(settings)
    try:
        return _emit(await orchestrator.continue_step(args.pipeline_id, args.owner, args.from_step))
    finally:
        orchestrator.close()


async def _cmd_rollback(args: argparse.Namespace, settings) -> int:
    orchestrator = _orchestrator(settings)
    try:
        return _emit(await orchestrator.rollback_one_step(args.pipeline_id, args.owner, args.step))
    finally:
        orchestrator.close()


async def _cmd_restart(args: argparse.Namespace, settings) -> int:
    orchestrator = _orchestrator(settings)
    try:
        return _emit(await orchestrator.restart_step(args.pipeline_id, args.owner, args.step))
    finally:
        orchestrator.close()


async def _cmd_status(args: argparse.Namespace, settings) -> int:
    from stagegate.api.models import PipelineStatus
    from stagegate.core.models import ErrorResult

    orchestrator = _orchestrator(settings)
    try:
        pipeline = await orchestrator.get_pipeline(args.pipeline_id, args.owner)
        if isinstance(pipeline, ErrorResult):
            return _emit(pipeline)
        return _emit(PipelineStatus.from_pipeline(pipeline))
    finally:
        orchestrator.close()


async def _cmd_worker(args: argparse.Namespace, settings) -> int:
    orchestrator = _orchestrator(settings, autostart_retries=False)
    try:
        while True:
            results = await orchestrator.drain_retries()
            for result in results:
                logger.info("Retry finished: %s", result.kind)
            if args.once:
                return 0
            await asyncio.sleep(args.interval)
    finally:
        orchestrator.close()


if __name__ == "__main__":
    sys.exit(main())
