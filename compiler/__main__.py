from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from .command import DEFAULT_MODE_ARGS, QUALITIES
from .errors import CompilerError
from .events import StandardError, StandardOutput
from .orchestrator import ENGINES, Compiler, CompilerConfig, PreviewOptions


def _image_size(value: str) -> tuple[int, int]:
    try:
        width, height = (int(part) for part in value.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected W,H (e.g. 800,600), got '{value}'") from None
    if width <= 0 or height <= 0:
        raise argparse.ArgumentTypeError(f"image size must be positive, got '{value}'")
    return width, height


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Compile an OpenSCAD file through one of the available engines."
    )
    parser.add_argument(
        "source",
        type=Path,
        nargs="?",
        help="OpenSCAD source file. Not needed with --version.",
    )
    parser.add_argument(
        "--engine",
        type=str,
        choices=ENGINES,
        default=None,
        help="Backend running the engine (default: $OPENSCAD_ENGINE or subprocess).",
    )
    parser.add_argument(
        "--executable",
        type=str,
        default=None,
        help="Path to the openscad executable (default: $OPENSCAD_PATH or openscad on PATH).",
    )
    parser.add_argument(
        "--engine-module",
        type=str,
        default=None,
        help="Importable module exposing create_engine() for the embedded and worker engines.",
    )
    parser.add_argument("--format", type=str, default="stl", help="Output format (stl, 3mf, png, csg...).")
    parser.add_argument("--quality", type=str, choices=QUALITIES, default="render")
    parser.add_argument(
        "--mode",
        type=str,
        choices=tuple(DEFAULT_MODE_ARGS),
        default="fast",
        help="Which set of acceleration flags to pass to the engine.",
    )
    parser.add_argument(
        "--engine-version",
        type=str,
        default="",
        help="Engine version used to pick flag spellings (e.g. 2021.01).",
    )
    parser.add_argument("--output", type=Path, default=None, help="Where to write the artifact.")
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--version", action="store_true", help="Print the engine version and exit.")
    action.add_argument("--dimensions", action="store_true", help="Print mesh dimensions as JSON.")
    action.add_argument("--preview", action="store_true", help="Render a PNG preview.")
    action.add_argument("--scene-graph", action="store_true", help="Dump the CSG scene graph.")
    parser.add_argument(
        "--imgsize", type=_image_size, default=(800, 600), help="Preview size as W,H."
    )
    parser.add_argument("--camera", type=str, default=None, help="Explicit preview camera (translate and rotate, or eye and center).")
    return parser


def _config_from_args(args: argparse.Namespace) -> CompilerConfig:
    overrides = {
        "output_format": args.format,
        "quality": args.quality,
        "args": {mode: list(flags) for mode, flags in DEFAULT_MODE_ARGS.items()},
    }
    if args.engine:
        overrides["engine"] = args.engine
    if args.executable:
        overrides["executable_path"] = args.executable
    if args.engine_module:
        overrides["engine_module"] = args.engine_module
    if args.engine_version:
        overrides["engine_version"] = args.engine_version
    return CompilerConfig.from_env(**overrides)


def _write_artifact(payload: bytes, output: Optional[Path]) -> None:
    if output is None:
        sys.stdout.buffer.write(payload)
        sys.stdout.buffer.flush()
    else:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(payload)


def _echo(event) -> None:
    if isinstance(event, (StandardOutput, StandardError)):
        sys.stderr.write(event.text)


async def _run(args: argparse.Namespace) -> int:
    async with Compiler(_config_from_args(args)) as compiler:
        if args.version:
            version = await compiler.get_version()
            print(version or "unknown")
            return 0 if version else 1

        source = args.source.read_text(encoding="utf-8")
        if args.dimensions:
            report = await compiler.get_dimensions(source)
            print(json.dumps(report.as_dict(), indent=2))
            return 0
        if args.preview:
            width, height = args.imgsize
            image = await compiler.get_preview(
                source, PreviewOptions(width=width, height=height, camera=args.camera)
            )
            _write_artifact(image, args.output)
            return 0
        if args.scene_graph:
            _write_artifact(await compiler.get_scene_graph(source), args.output)
            return 0

        result = await compiler.compile_result(source, args.mode, on_event=_echo)
        if not result.success:
            raise result.error
        _write_artifact(result.artifact, args.output)
        return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    if not args.version and args.source is None:
        parser.error("a source file is required unless --version is given")

    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    try:
        return asyncio.run(_run(args))
    except CompilerError as exc:
        logging.getLogger("compiler").error("%s", exc)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
