from fastapi import Depends, FastAPI, UploadFile, File, Form, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from functools import lru_cache
import asyncio
import json
import logging
from pydantic import ValidationError

from printprep.cancellation import CancellationToken
from printprep.canvas import RasterBuffer
from printprep.config import Settings, load_settings
from printprep.errors import (
    InvalidParametersError,
    ProcessingError,
    SourceConversionError,
)
from printprep.inpainting import build_inpainting_client
from printprep.margins import extract_margin_areas
from printprep.mask_helpers import prepare_area_image_and_mask, preview_image_and_mask
from printprep.models import CanvasGeometry, ProcessingParameters, WorkflowState
from printprep.positioning import position_content
from printprep.source import SourceFile, convert_source, render_pdf_page
from printprep.utils import encode_image
from printprep.validation import ValidationReport, validate_request
from printprep.workflow import ProcessingWorkflow, WorkflowOutcome

# Configure logging early
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("print-prep")

# Non-standard "client closed request" status, as used by nginx.
STATUS_CLIENT_CLOSED = 499
DISCONNECT_POLL_SECONDS = 0.5

app = FastAPI(title="Print Prep API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Debug-Info"],
)

prefix = "/api"


@lru_cache
def get_settings() -> Settings:
    return load_settings()


def parameters_form(
    final_width_mm: float = Form(...),
    final_height_mm: float = Form(...),
    bleed_margin_mm: float = Form(3.0),
    dpi: int = Form(300),
    cut_line_type: str = Form("rectangle"),
    fill_prompt: str | None = Form(None),
    use_external_outpaint: bool = Form(False),
) -> ProcessingParameters:
    """Collect the print parameters from the multipart form."""
    try:
        return ProcessingParameters(
            final_width_mm=final_width_mm,
            final_height_mm=final_height_mm,
            bleed_margin_mm=bleed_margin_mm,
            dpi=dpi,
            cut_line_type=cut_line_type,
            fill_prompt=fill_prompt or None,
            use_external_outpaint=use_external_outpaint,
        )
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        )
        error = InvalidParametersError(f"Invalid parameters: {details}",
                                       stage="validating parameters")
        raise HTTPException(400, error.user_message()) from exc


async def read_source(file: UploadFile, settings: Settings) -> SourceFile:
    raw = await file.read()
    if len(raw) > settings.max_upload_mb * 1024 * 1024:
        error = InvalidParametersError(
            f"File size exceeds {settings.max_upload_mb}MB limit",
            stage="uploading",
        )
        raise HTTPException(400, error.user_message())
    return SourceFile(data=raw, filename=file.filename,
                      content_type=file.content_type)


def raise_for_outcome(outcome: WorkflowOutcome) -> None:
    """Map a non-successful run to the matching HTTP error."""
    if outcome.state is WorkflowState.CANCELLED:
        raise HTTPException(
            STATUS_CLIENT_CLOSED,
            f"Processing cancelled: {outcome.cancel_reason or 'no reason given'}",
        )
    if outcome.state is WorkflowState.FAILED:
        error = outcome.error
        if isinstance(error, InvalidParametersError):
            status = 400
        elif isinstance(error, SourceConversionError):
            status = 422
        else:
            status = 500
        raise HTTPException(status, error.user_message())


async def watch_disconnect(request: Request, token: CancellationToken) -> None:
    """Cancel the run's token once the client goes away."""
    while not token.cancelled:
        if await request.is_disconnected():
            token.cancel("client disconnected")
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def run_workflow(
    request: Request,
    source: SourceFile,
    params: ProcessingParameters,
    settings: Settings
) -> WorkflowOutcome:
    token = CancellationToken()
    workflow = ProcessingWorkflow(settings, token=token)
    watcher = asyncio.create_task(watch_disconnect(request, token))
    try:
        outcome = await workflow.run(source, params)
    finally:
        watcher.cancel()
    raise_for_outcome(outcome)
    return outcome


def debug_header(outcome: WorkflowOutcome) -> str:
    result = outcome.result
    debug_info = {
        "states": [state.value for state in outcome.states],
        "original_px": [result.original_dimensions.width,
                        result.original_dimensions.height],
        "final_px_including_bleed": [
            result.final_dimensions_including_bleed.width,
            result.final_dimensions_including_bleed.height,
        ],
        "applied_bleed_mm": result.applied_bleed_mm,
        **result.debug,
    }
    logger.info(f"Debug info: {json.dumps(debug_info, indent=2)}")
    return json.dumps(debug_info)


@app.get(f"{prefix}/health")
def health_check(settings: Settings = Depends(get_settings)):
    return {
        "status": "healthy",
        "ai_configured": settings.ai_configured,
        "outpaint_configured": settings.outpaint_configured,
    }


@app.post(f"{prefix}/validate", response_model=ValidationReport)
async def validate_endpoint(
    file: UploadFile = File(...),
    params: ProcessingParameters = Depends(parameters_form),
    settings: Settings = Depends(get_settings),
):
    """Pre-flight report: blocking errors plus warnings about the run."""
    raw = await file.read()
    source = SourceFile(data=raw, filename=file.filename,
                        content_type=file.content_type)
    return validate_request(
        source_size=source.size_bytes,
        source_kind=source.kind,
        params=params,
        ai_configured=settings.ai_configured,
        max_upload_mb=settings.max_upload_mb,
    )


@app.post(f"{prefix}/process_for_print")
async def process_for_print_endpoint(
    request: Request,
    file: UploadFile = File(...),
    params: ProcessingParameters = Depends(parameters_form),
    settings: Settings = Depends(get_settings),
):
    """
    Complete print preparation run.

    Converts the upload (image or first PDF page), positions it on a canvas
    of final size plus bleed, fills the bleed (AI providers when configured,
    then the nearest-content fill), draws the cut line and exports a
    single-page PDF. Debug information travels in the X-Debug-Info header.
    """
    source = await read_source(file, settings)
    outcome = await run_workflow(request, source, params, settings)
    return Response(
        content=outcome.document,
        media_type="application/pdf",
        headers={
            "Content-Disposition": 'attachment; filename="print_ready.pdf"',
            "X-Debug-Info": debug_header(outcome),
        },
    )


@app.post(f"{prefix}/preview")
async def preview_endpoint(
    request: Request,
    file: UploadFile = File(...),
    params: ProcessingParameters = Depends(parameters_form),
    settings: Settings = Depends(get_settings),
):
    """Run the full pipeline and return the processed raster instead of the PDF."""
    source = await read_source(file, settings)
    outcome = await run_workflow(request, source, params, settings)
    result = outcome.result
    return Response(
        content=result.raster,
        media_type=f"image/{result.raster_format.lower()}",
        headers={"X-Debug-Info": debug_header(outcome)},
    )


@app.post(f"{prefix}/pdf_to_image")
async def pdf_to_image_endpoint(
    file: UploadFile = File(...),
    settings: Settings = Depends(get_settings),
):
    """Convert the first page of a PDF to a PNG image and return it."""
    if file.content_type != "application/pdf":
        raise HTTPException(
            status_code=400,
            detail="Unsupported file type; expected application/pdf",
        )

    raw = await file.read()
    try:
        pil_image = render_pdf_page(raw, settings.pdf_render_scale)
    except SourceConversionError as exc:
        raise HTTPException(status_code=422, detail=exc.user_message())
    except (RuntimeError, ValueError) as exc:
        logger.exception("pdf_to_image failed: %s", exc)
        error = SourceConversionError(str(exc), stage="converting source")
        raise HTTPException(status_code=422, detail=error.user_message())
    return Response(content=encode_image(pil_image.convert("RGB"), "PNG"),
                    media_type="image/png")


@app.post(f"{prefix}/mask_preview")
async def mask_preview_endpoint(
    file: UploadFile = File(...),
    side: str = Form("top"),
    params: ProcessingParameters = Depends(parameters_form),
    settings: Settings = Depends(get_settings),
):
    """Show the AI fill request for one bleed side as a red mask overlay."""
    source = await read_source(file, settings)
    try:
        image = convert_source(source, settings.pdf_render_scale)
    except SourceConversionError as exc:
        raise HTTPException(status_code=422,
                            detail=exc.with_stage("converting source").user_message())

    geometry = CanvasGeometry.from_parameters(params)
    areas = {
        area.side: area
        for area in extract_margin_areas(geometry.bleed_px,
                                         geometry.final_width_px,
                                         geometry.final_height_px)
    }
    if side not in areas:
        raise HTTPException(400, f"Side must be one of {', '.join(areas)}")
    if areas[side].target_rect.is_empty():
        raise HTTPException(400, "Bleed margin is zero; there is nothing to fill")

    try:
        buffer = RasterBuffer.allocate(geometry.width, geometry.height)
    except ProcessingError as exc:
        raise HTTPException(500, exc.with_stage("positioning content").user_message())
    try:
        position_content(buffer, image, geometry.final_width_px,
                         geometry.final_height_px, geometry.bleed_px)
        area_request = prepare_area_image_and_mask(buffer, areas[side])
    finally:
        buffer.release()

    preview = preview_image_and_mask(area_request.image, area_request.mask)
    client = build_inpainting_client(settings)
    return Response(
        content=encode_image(preview, "PNG"),
        media_type="image/png",
        headers={
            "X-Fill-Box": json.dumps(list(area_request.fill_box)),
            "X-AI-Providers": ",".join(p.name for p in client.providers) or "none",
        },
    )
