"""
Typebeat CLI - thin entrypoint for rendering and serving.

Commands:
- render: Render audio/image pairs to MP4 files in an output directory
- serve: Run the HTTP service

Exit Codes:
===========
- 0: Success (every job completed)
- 1: Validation error (nothing was rendered)
- 2: One or more jobs failed
- 3: One or more jobs were cancelled
- 4: Engine could not be loaded
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import List, NoReturn, Optional, Tuple

from .config import RenderConfig
from .execution.errors import EngineInitError
from .jobs.errors import ValidationError
from .jobs.models import BackgroundMode, FileMediaRef, JobStatus, PairInput, VideoSettings
from .service import BatchResult, RenderService

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_VALIDATION = 1
EXIT_FAILED = 2
EXIT_CANCELLED = 3
EXIT_ENGINE = 4


def _build_service(config: RenderConfig) -> RenderService:
    return RenderService(config)


def _media_ref(path: Optional[str]) -> Optional[FileMediaRef]:
    if path is None or not Path(path).is_file():
        return None
    return FileMediaRef(path)


def _unique_path(out_dir: Path, filename: str, job_short_id: str) -> Path:
    target = out_dir / filename
    if target.exists():
        target = out_dir / f"{target.stem}_{job_short_id}{target.suffix}"
    return target


async def _render(
    service: RenderService,
    pairs: List[PairInput],
    settings: VideoSettings,
    out_dir: Path,
) -> Tuple[BatchResult, List[dict]]:
    loop = asyncio.get_running_loop()
    interrupts: List[asyncio.Future] = []
    handler_installed = False

    def _progress(percent: int) -> None:
        print(f"[{percent:3d}%] batch progress", file=sys.stderr)

    def _interrupt() -> None:
        print("\nInterrupted, cancelling batch...", file=sys.stderr)
        interrupts.append(asyncio.ensure_future(service.cancel_batch("Interrupted by user")))

    try:
        handle = await service.submit_batch(pairs, settings, on_progress=_progress)
        try:
            loop.add_signal_handler(signal.SIGINT, _interrupt)
            handler_installed = True
        except NotImplementedError:
            # No loop signal support (Windows): Ctrl-C raises KeyboardInterrupt
            logger.debug("Signal handlers unavailable, Ctrl-C will abort the render")
        result = await handle.wait()

        written = []
        for job in service.list_jobs():
            summary = job.to_summary()
            if job.status == JobStatus.COMPLETED and job.output is not None:
                found = service.get_video(service.output_store.video_id(job.output.url))
                if found is not None:
                    target = _unique_path(out_dir, job.output.filename, job.short_id)
                    target.write_bytes(found[0])
                    summary["path"] = str(target)
            written.append(summary)
        return result, written
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
        if interrupts:
            await asyncio.gather(*interrupts)
        await service.shutdown()


def cmd_render(args: argparse.Namespace) -> NoReturn:
    """
    Render pairs into --out.

    Prints a JSON summary of every job to stdout.
    """
    try:
        config = RenderConfig.from_env()
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(EXIT_VALIDATION)

    out_dir = Path(args.out).resolve()
    out_dir.mkdir(parents=True, exist_ok=True)

    pairs = [
        PairInput(id=f"pair-{index + 1}", audio=_media_ref(audio), image=_media_ref(image))
        for index, (audio, image) in enumerate(args.pair)
    ]
    settings = VideoSettings(
        background=BackgroundMode(args.background),
        custom_background=_media_ref(args.background_image),
        use_logo=args.logo is not None,
        logo=_media_ref(args.logo),
    )

    service = _build_service(config)
    try:
        result, jobs = asyncio.run(_render(service, pairs, settings, out_dir))
    except ValidationError as e:
        missing = f" ({', '.join(e.pair_ids)})" if e.pair_ids else ""
        print(f"✗ Batch rejected: {e}{missing}", file=sys.stderr)
        sys.exit(EXIT_VALIDATION)
    except EngineInitError as e:
        print(f"FATAL: {e}", file=sys.stderr)
        sys.exit(EXIT_ENGINE)
    except KeyboardInterrupt:
        print("\nRender stopped by user.", file=sys.stderr)
        sys.exit(EXIT_CANCELLED)

    print(json.dumps({"batch": result.model_dump(), "jobs": jobs}, indent=2, default=str))

    if result.failed:
        sys.exit(EXIT_FAILED)
    if result.cancelled:
        sys.exit(EXIT_CANCELLED)
    sys.exit(EXIT_OK)


def cmd_serve(args: argparse.Namespace) -> NoReturn:
    """Run the HTTP service until interrupted."""
    from .main import run

    run(host=args.host, port=args.port, log_level=args.log_level)
    sys.exit(EXIT_OK)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="typebeat",
        description="Typebeat - render audio + cover image pairs into MP4 videos",
    )
    parser.add_argument(
        "--log-level",
        default="warning",
        choices=["debug", "info", "warning", "error"],
        help="Logging verbosity (default: warning)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to execute")

    # Render command
    parser_render = subparsers.add_parser("render", help="Render pairs to MP4 files")
    parser_render.add_argument(
        "--pair",
        nargs=2,
        action="append",
        required=True,
        metavar=("AUDIO", "IMAGE"),
        help="Audio file and cover image; repeat for more pairs",
    )
    parser_render.add_argument("--out", required=True, help="Output directory")
    parser_render.add_argument(
        "--background",
        default=BackgroundMode.BLACK.value,
        choices=[mode.value for mode in BackgroundMode],
        help="Canvas fill behind the image (default: black)",
    )
    parser_render.add_argument(
        "--background-image",
        default=None,
        help="Background image used with --background custom",
    )
    parser_render.add_argument("--logo", default=None, help="Logo image for the top-right corner")
    parser_render.set_defaults(func=cmd_render)

    # Serve command
    parser_serve = subparsers.add_parser("serve", help="Run the HTTP service")
    parser_serve.add_argument("--host", default="127.0.0.1")
    parser_serve.add_argument("--port", type=int, default=8085)
    parser_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """
    Main CLI entrypoint.

    Parses arguments and dispatches to subcommands.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command != "serve":
        logging.basicConfig(
            level=getattr(logging, args.log_level.upper()),
            format="%(levelname)s %(name)s: %(message)s",
        )
    args.func(args)


if __name__ == "__main__":
    main()
