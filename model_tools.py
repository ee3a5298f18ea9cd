#!/usr/bin/env python3
"""Maintenance commands for the model cache: collect, download, convert, render."""

import argparse
import asyncio
import logging
import subprocess
import sys
import time
from pathlib import Path
from typing import List, Optional, Sequence
from urllib.parse import urljoin

import httpx

from asset_resolver import AssetResolver
from compositor import ensure_folder
from render_pipeline import RenderPipeline, RenderRequest, SceneOptions, open_gpu_context
from render_scheduler import GpuWorker
from service_config import ServiceConfig, load_config

logger = logging.getLogger("preview_renderer.tools")

DOWNLOAD_CONCURRENCY = 10
DEFAULT_CONVERTER = "./fbx2gltf-bin"
DEFAULT_TEST_TEXTURE = (
    "https://www.shutterstock.com/shutterstock/photos/72627163/display_1500/"
    "stock-vector-color-test-for-television-for-checking-quality-also-available-as-jpeg-72627163.jpg"
)
OFFLINE_WIDTH = 2222
OFFLINE_HEIGHT = 2000
OFFLINE_FACTOR = 2


def collect_models(input_dir: str) -> List[str]:
    """Basenames of the ``.glb`` files directly inside ``input_dir``, sorted."""
    folder = Path(input_dir)
    if not folder.is_dir():
        raise FileNotFoundError(f"Input folder '{input_dir}' not found")
    return sorted(path.name for path in folder.iterdir() if path.is_file() and path.suffix == ".glb")


def write_manifest(models: Sequence[str], output: str) -> None:
    Path(output).write_text("\n".join(models), encoding="utf-8")


async def _download_one(
    client: httpx.AsyncClient,
    gate: asyncio.Semaphore,
    url: str,
    destination: Path,
) -> None:
    async with gate:
        start = time.perf_counter()
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            with open(destination, "wb") as handle:
                async for chunk in response.aiter_bytes():
                    handle.write(chunk)
        logger.info("Downloaded %s in %.0fms", destination, (time.perf_counter() - start) * 1000)


async def download_models(
    base_url: str,
    models: Sequence[str],
    output_dir: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
    concurrency: int = DOWNLOAD_CONCURRENCY,
) -> List[Path]:
    """Fetch every model name from ``base_url`` into ``output_dir``, a few at a time."""
    if not base_url:
        raise ValueError("models_base_url is not configured.")
    base = base_url if base_url.endswith("/") else f"{base_url}/"
    output = Path(output_dir)
    output.mkdir(parents=True, exist_ok=True)

    gate = asyncio.Semaphore(concurrency)
    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(follow_redirects=True, timeout=None)
    try:
        destinations = [output / model for model in models]
        await asyncio.gather(
            *(
                _download_one(client, gate, urljoin(base, model), destination)
                for model, destination in zip(models, destinations)
            )
        )
    finally:
        if own_client:
            await client.aclose()
    return destinations


def converter_command(input_path: Path, output_dir: Optional[Path], binary: bool, converter: str) -> List[str]:
    cmd = [converter, str(input_path)]
    if binary:
        cmd.append("-b")
    if output_dir is not None:
        cmd.extend(["-o", str(output_dir / input_path.stem)])
    return cmd


def convert_file(input_path: Path, output_dir: Optional[Path], binary: bool, converter: str) -> None:
    cmd = converter_command(input_path, output_dir, binary, converter)
    logger.info("Running converter: %s", " ".join(cmd))
    try:
        proc = subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        if proc.stdout:
            logger.info("Converter stdout:\n%s", proc.stdout.decode("utf-8", errors="ignore"))
    except subprocess.CalledProcessError as exc:
        logger.error("Converter failed (returncode=%s): %s", exc.returncode, exc.stderr.decode("utf-8", errors="ignore"))
        raise RuntimeError(f"failed to convert file {input_path}: {exc}") from exc


def convert(input_path: str, output_dir: str, binary: bool, converter: str = DEFAULT_CONVERTER) -> int:
    """Convert one FBX file, or every file of a directory. Returns the number of files converted."""
    source = Path(input_path)
    if not source.exists():
        raise FileNotFoundError(f"input {input_path} does not exist")
    output = Path(output_dir)
    output.mkdir(parents=True, exist_ok=True)

    files = sorted(path for path in source.iterdir() if path.is_file()) if source.is_dir() else [source]
    for path in files:
        convert_file(path, output, binary, converter)
    return len(files)


async def render_models(
    inputs: Sequence[Path],
    results_dir: str,
    texture: str,
    config: ServiceConfig,
    *,
    width: int = OFFLINE_WIDTH,
    height: int = OFFLINE_HEIGHT,
    factor: int = OFFLINE_FACTOR,
    gpu: Optional[GpuWorker] = None,
) -> List[Path]:
    """Render each model to ``results_dir/<stem>.webp``; failures are logged and skipped."""
    results = Path(results_dir)
    results.mkdir(parents=True, exist_ok=True)
    own_gpu = gpu is None
    if own_gpu:
        gpu = GpuWorker(lambda: open_gpu_context(config))

    written = []
    try:
        async with httpx.AsyncClient(timeout=config.download_timeout_seconds, follow_redirects=True) as client:
            resolver = AssetResolver(
                config.models.local_model_dir,
                client=client,
                models_base_url=config.models.models_base_url,
                s3_endpoint_url=config.models.s3_endpoint_url,
            )
            pipeline = RenderPipeline(
                resolver,
                gpu,
                upscale_factor=factor,
                options=SceneOptions(clear_color=config.clear_color, flat_shading=config.flat_shading),
            )
            for model_path in inputs:
                start = time.perf_counter()
                logger.info("Running: %s", model_path)
                request = RenderRequest(model=str(model_path), textures=[texture], width=width, height=height)
                try:
                    image = await pipeline(request)
                except Exception as exc:
                    logger.error("Failed to render %s: %s", model_path, exc)
                    continue
                destination = results / f"{model_path.stem}.webp"
                image.save(destination, format="WEBP")
                written.append(destination)
                logger.info("Wrote %s in %.2fs", destination, time.perf_counter() - start)
    finally:
        if own_gpu:
            gpu.shutdown()
    return written


def model_inputs(path: str) -> List[Path]:
    source = Path(path)
    if source.is_dir():
        return sorted(entry for entry in source.iterdir() if entry.is_file())
    if not source.exists():
        raise FileNotFoundError(f"input {path} does not exist")
    return [source]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Model cache maintenance for the preview renderer.")
    subcommands = parser.add_subparsers(dest="command", required=True)

    collect = subcommands.add_parser(
        "collect", help="Collect .glb names from a local directory into a manifest for config.toml."
    )
    collect.add_argument("input_dir")
    collect.add_argument("--output", default="models.txt")

    download = subcommands.add_parser("download", help="Download the configured models into the local cache.")
    download.add_argument("--config", help="Path to config.toml.")

    convert_cmd = subcommands.add_parser("convert", help="Convert fbx files into glb/gltf.")
    convert_cmd.add_argument("-i", "--input", required=True, help="input file or directory")
    convert_cmd.add_argument("-o", "--output", default="output", help="output directory")
    convert_cmd.add_argument("-b", "--binary", action="store_true", help="output binary gltf")
    convert_cmd.add_argument("--converter", default=DEFAULT_CONVERTER, help="path to the FBX2glTF binary")

    render = subcommands.add_parser("render", help="Render a model or a directory of models to WebP.")
    render.add_argument("input", help="model file or directory")
    render.add_argument("-o", "--results", default="results", help="output directory")
    render.add_argument("--texture", default=DEFAULT_TEST_TEXTURE, help="texture URL or path")
    render.add_argument("--width", type=int, default=OFFLINE_WIDTH)
    render.add_argument("--height", type=int, default=OFFLINE_HEIGHT)
    render.add_argument("--factor", type=int, default=OFFLINE_FACTOR)
    render.add_argument("--config", help="Path to config.toml.")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")

    if args.command == "collect":
        models = collect_models(args.input_dir)
        ensure_folder(args.output)
        write_manifest(models, args.output)
        print(f"wrote models to {args.output}")
    elif args.command == "download":
        config = load_config(args.config)
        asyncio.run(
            download_models(config.models.models_base_url, config.models.models, config.models.local_model_dir)
        )
        print(f"downloaded {len(config.models.models)} models to {config.models.local_model_dir}")
    elif args.command == "convert":
        count = convert(args.input, args.output, args.binary, args.converter)
        print(f"converted {count} files into {args.output}")
    elif args.command == "render":
        config = load_config(args.config)
        written = asyncio.run(
            render_models(
                model_inputs(args.input),
                args.results,
                args.texture,
                config,
                width=args.width,
                height=args.height,
                factor=args.factor,
            )
        )
        print(f"rendered {len(written)} images into {args.results}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
