import argparse
import io
import logging
import os
import sys
import time
from contextlib import asynccontextmanager
from typing import List, Optional, Tuple

import httpx
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import HTMLResponse, PlainTextResponse, StreamingResponse
from PIL import Image
from pydantic import Base64Bytes, BaseModel, Field, field_validator, model_validator

from asset_resolver import Reference
from compositor import WEBP_MEDIA_TYPE, decode_image, encode_image
from render_errors import MissingField, NoTextures, RenderServiceError
from render_pipeline import RenderRequest, build_scheduler
from service_config import ServiceConfig, load_config

repo_dir = os.path.dirname(os.path.abspath(__file__))
load_dotenv(dotenv_path=os.path.join(repo_dir, ".env"), override=False)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("preview_renderer")


def configure_logging(config: ServiceConfig) -> None:
    """Attach stdout (and optionally file) handlers to the ``preview_renderer`` logger tree."""
    logger.setLevel(config.log_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)
    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(formatter)
    logger.addHandler(stream)
    if config.log_file:
        file_handler = logging.FileHandler(config.log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    logger.propagate = False


CONFIG = load_config()
configure_logging(CONFIG)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config: ServiceConfig = app.state.config
    async with httpx.AsyncClient(timeout=config.download_timeout_seconds, follow_redirects=True) as client:
        scheduler = build_scheduler(config, client)
        await scheduler.start()
        app.state.scheduler = scheduler
        try:
            yield
        finally:
            await scheduler.stop()


app = FastAPI(title="Product Preview Render Service", lifespan=lifespan)
app.state.config = CONFIG


class RenderPayload(BaseModel):
    model: Optional[Base64Bytes] = None
    model_url: Optional[str] = None
    textures: List[Base64Bytes] = Field(default_factory=list)
    texture_urls: List[str] = Field(default_factory=list)
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)

    @field_validator("model_url", mode="before")
    @classmethod
    def _blank_url_is_none(cls, value):
        if value in (None, "", "null"):
            return None
        return value

    @model_validator(mode="after")
    def _exactly_one_model(self):
        if (self.model is None) == (self.model_url is None):
            raise ValueError("Provide exactly one of model or model_url.")
        return self

    def texture_references(self) -> List[Reference]:
        if self.textures:
            return list(self.textures)
        return list(self.texture_urls)


def _error_response(exc: RenderServiceError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


async def _run_job(request: Request, job: RenderRequest) -> Tuple[Image.Image, float]:
    scheduler = request.app.state.scheduler
    start = time.perf_counter()
    try:
        image = await scheduler.submit(job)
    except RenderServiceError as exc:
        logger.warning("Render failed with %s: %s", type(exc).__name__, exc)
        raise _error_response(exc) from exc
    except Exception as exc:
        logger.exception("Unexpected error while rendering")
        raise HTTPException(
            status_code=500,
            detail={"error": "InternalError", "category": "internal", "message": "Unexpected error processing render request."},
        ) from exc
    return image, time.perf_counter() - start


def _image_response(image: Image.Image, elapsed: float, accept: Optional[str]) -> StreamingResponse:
    data, media_type = encode_image(image, accept)
    headers = {"X-Render-Time": f"{elapsed:.2f}"}
    return StreamingResponse(io.BytesIO(data), media_type=media_type, headers=headers)


def _parse_dimension(name: str, value) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise _error_response(MissingField(name))
    try:
        parsed = int(str(value).strip())
    except ValueError:
        parsed = 0
    if parsed <= 0:
        raise HTTPException(status_code=400, detail=f"{name} must be a positive integer.")
    return parsed


@app.post("/render")
async def render(payload: RenderPayload, request: Request):
    model: Reference = payload.model if payload.model is not None else payload.model_url
    logger.info(
        "Request received for %s (%dx%d)",
        payload.model_url or f"<{len(payload.model)} uploaded bytes>",
        payload.width,
        payload.height,
    )
    job = RenderRequest(
        model=model,
        textures=payload.texture_references(),
        width=payload.width,
        height=payload.height,
    )
    image, elapsed = await _run_job(request, job)
    return _image_response(image, elapsed, request.headers.get("accept"))


@app.post("/render-form")
async def render_form(request: Request):
    form = await request.form()
    model: Optional[Reference] = None
    textures: List[Reference] = []
    width = height = None

    for name, value in form.multi_items():
        if name in ("model", "model_url") and isinstance(value, str):
            if value.strip():
                model = value.strip()
        elif name == "model":
            model = await value.read()
        elif name.startswith("texture"):
            if isinstance(value, str):
                if value.strip():
                    textures.append(value.strip())
            else:
                textures.append(await value.read())
        elif name == "width":
            width = value
        elif name == "height":
            height = value

    if model is None:
        raise _error_response(MissingField("model"))
    job = RenderRequest(
        model=model,
        textures=textures,
        width=_parse_dimension("width", width),
        height=_parse_dimension("height", height),
    )
    logger.info("Form request received (%dx%d, %d textures)", job.width, job.height, len(textures))
    image, elapsed = await _run_job(request, job)
    return _image_response(image, elapsed, request.headers.get("accept"))


COMPOSITE_FORM = """<!doctype html>
<html>
  <head><title>Mask composite</title></head>
  <body>
    <h1>Render a model over a mask</h1>
    <form action="/composite" method="post" enctype="multipart/form-data">
      <p><label>Mask image <input type="file" name="mask" accept="image/*" required></label></p>
      <p><label>Model (.glb) <input type="file" name="model" accept=".glb,.gltf" required></label></p>
      <p><label>Texture (optional) <input type="file" name="texture" accept="image/*"></label></p>
      <p><button type="submit">Render</button></p>
    </form>
  </body>
</html>
"""


@app.get("/composite", response_class=HTMLResponse)
async def composite_form():
    return COMPOSITE_FORM


@app.post("/composite")
async def composite(
    request: Request,
    mask: UploadFile = File(...),
    model: UploadFile = File(...),
    texture: Optional[UploadFile] = File(None),
):
    try:
        mask_image = decode_image(await mask.read())
    except RenderServiceError as exc:
        raise _error_response(exc) from exc

    texture_data = await texture.read() if texture is not None else b""
    if texture_data:
        textures: List[Reference] = [texture_data]
    elif request.app.state.config.default_texture:
        textures = [request.app.state.config.default_texture]
    else:
        raise _error_response(NoTextures())

    width, height = mask_image.size
    logger.info("Composite request received for %s over a %dx%d mask", model.filename, width, height)
    job = RenderRequest(
        model=await model.read(),
        textures=textures,
        width=width,
        height=height,
        mask=mask_image,
    )
    image, elapsed = await _run_job(request, job)
    return _image_response(image, elapsed, WEBP_MEDIA_TYPE)


@app.get("/health", response_class=PlainTextResponse)
async def health():
    return "ok"


@app.get("/")
async def root():
    return {
        "message": "Product preview render API",
        "submit_endpoint": "/render",
        "form_endpoint": "/render-form",
        "composite_endpoint": "/composite",
        "docs": "/docs",
        "example_json": (
            'curl -H "Content-Type: application/json" -H "Accept: image/webp" '
            '-d \'{"model_url": "shirt.glb", "texture_urls": ["https://example.com/print.png"], '
            '"width": 800, "height": 800}\' http://localhost:3030/render --output preview.webp'
        ),
        "example_form": (
            'curl -F "model=@shirt.glb" -F "texture=@print.png" -F "width=800" -F "height=800" '
            "http://localhost:3030/render-form --output preview.png"
        ),
    }


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve product preview renders over HTTP.")
    parser.add_argument("--config", help="Path to the TOML config (default: $PREVIEW_CONFIG or config.toml).")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, help="Override the configured port.")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    config = load_config(args.config) if args.config else CONFIG
    if args.port:
        config = config.model_copy(update={"port": args.port})
    configure_logging(config)
    app.state.config = config
    logger.info("Starting render service on %s:%d", args.host, config.port)
    uvicorn.run(app, host=args.host, port=config.port, log_config=None)


if __name__ == "__main__":
    main()
