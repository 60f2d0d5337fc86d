"""
Staged print preparation pipeline.

    idle -> converting_source -> positioning_content -> filling_bleed
         -> rendering_cut_lines -> exporting -> completed

`cancelled` and `failed` are terminal alternates reachable from every
non-terminal state. The token is polled before each stage; a cancelled
token ends the run as `cancelled` and no later stage runs. The canvas is
owned by the run and released whatever the outcome.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import numpy as np
from PIL import Image

from printprep.canvas import RasterBuffer
from printprep.cancellation import CancellationToken, Checkpoint
from printprep.config import Settings
from printprep.cutline import render_cut_line
from printprep.errors import ProcessingError
from printprep.exporter import DocumentExporter
from printprep.fallback_fill import (
    BleedFallbackFiller,
    FillReport,
    count_unfilled_bleed_pixels,
    ring_mask,
)
from printprep.inpainting import AIInpaintingClient, build_inpainting_client
from printprep.margins import extract_margin_areas
from printprep.mask_helpers import apply_filled_area, prepare_area_image_and_mask
from printprep.models import (
    CanvasGeometry,
    Dimensions,
    Placement,
    ProcessingParameters,
    ProcessingProgress,
    ProcessingResult,
    WorkflowState,
)
from printprep.positioning import position_content
from printprep.source import SourceFile, convert_source

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float], None]

# Percent reported when each stage starts.
STAGE_PROGRESS = {
    WorkflowState.CONVERTING_SOURCE: ("Converting source", 10),
    WorkflowState.POSITIONING_CONTENT: (
        "Setting up canvas and positioning content", 20
    ),
    WorkflowState.FILLING_BLEED: ("Filling bleed areas", 40),
    WorkflowState.RENDERING_CUT_LINES: ("Adding cut lines", 80),
    WorkflowState.EXPORTING: ("Exporting print document", 90),
}
AI_FILL_END = 50
FALLBACK_FILL_END = 80


class ProgressReporter:
    """Forwards progress to a callback, clamped to [0, 100] and never decreasing."""

    def __init__(self, callback: ProgressCallback | None = None):
        self._callback = callback
        self.percent = 0.0

    def report(self, step_label: str, percent: float) -> ProcessingProgress:
        percent = max(self.percent, min(100.0, max(0.0, float(percent))))
        self.percent = percent
        progress = ProcessingProgress(step_label=step_label, percent=percent)
        logger.info(f"{step_label} ({percent:.1f}%)")
        if self._callback is not None:
            self._callback(step_label, percent)
        return progress


@dataclass
class WorkflowOutcome:
    """The single terminal outcome of a run."""

    state: WorkflowState
    result: ProcessingResult | None = None
    document: bytes | None = None
    error: ProcessingError | None = None
    cancel_reason: str | None = None
    states: list[WorkflowState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is WorkflowState.COMPLETED


@dataclass
class _RunContext:
    source: SourceFile
    params: ProcessingParameters
    source_image: Image.Image | None = None
    geometry: CanvasGeometry | None = None
    buffer: RasterBuffer | None = None
    placement: Placement | None = None
    fill_report: FillReport | None = None
    result: ProcessingResult | None = None
    document: bytes | None = None
    debug: dict = field(default_factory=dict)


class ProcessingWorkflow:
    """
    Drives one run of the pipeline.

    Collaborators are passed in explicitly; anything omitted is built from
    `settings`. A workflow instance runs exactly once.
    """

    def __init__(
        self,
        settings: Settings,
        client: AIInpaintingClient | None = None,
        filler: BleedFallbackFiller | None = None,
        exporter: DocumentExporter | None = None,
        token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None
    ):
        self.settings = settings
        self.client = client if client is not None else build_inpainting_client(settings)
        self.filler = filler if filler is not None else BleedFallbackFiller(
            settings.chunk_pixels
        )
        self.exporter = exporter if exporter is not None else DocumentExporter()
        self.token = token if token is not None else CancellationToken()
        self.progress = ProgressReporter(on_progress)
        self.state = WorkflowState.IDLE
        self.states = [WorkflowState.IDLE]

    def _enter(self, state: WorkflowState) -> None:
        logger.info(f"Workflow state: {self.state.value} -> {state.value}")
        self.state = state
        self.states.append(state)

    def _stages(self) -> list[tuple[WorkflowState,
                                    Callable[[_RunContext], Awaitable[None]]]]:
        return [
            (WorkflowState.CONVERTING_SOURCE, self._convert_source),
            (WorkflowState.POSITIONING_CONTENT, self._position_content),
            (WorkflowState.FILLING_BLEED, self._fill_bleed),
            (WorkflowState.RENDERING_CUT_LINES, self._render_cut_lines),
            (WorkflowState.EXPORTING, self._export),
        ]

    async def run(
        self,
        source: SourceFile,
        params: ProcessingParameters
    ) -> WorkflowOutcome:
        if self.state is not WorkflowState.IDLE:
            raise RuntimeError("A ProcessingWorkflow can only run once")

        ctx = _RunContext(source=source, params=params)
        try:
            for state, stage in self._stages():
                if self.token.check() is Checkpoint.CANCELLED:
                    return self._finish_cancelled(state)

                self._enter(state)
                label, percent = STAGE_PROGRESS[state]
                self.progress.report(label, percent)
                try:
                    await stage(ctx)
                except ProcessingError as exc:
                    return self._finish_failed(exc.with_stage(state.value))
                except Exception as exc:
                    logger.exception(f"Unexpected error in {state.value}: {exc}")
                    return self._finish_failed(
                        ProcessingError(f"Unexpected error: {exc}",
                                        stage=state.value)
                    )

            self._enter(WorkflowState.COMPLETED)
            self.progress.report("Complete", 100)
            return WorkflowOutcome(
                state=self.state,
                result=ctx.result,
                document=ctx.document,
                states=list(self.states),
            )
        finally:
            if ctx.buffer is not None:
                ctx.buffer.release()

    def _finish_cancelled(self, next_state: WorkflowState) -> WorkflowOutcome:
        logger.info(
            f"Run cancelled before {next_state.value}: "
            f"{self.token.reason or 'no reason given'}"
        )
        self._enter(WorkflowState.CANCELLED)
        return WorkflowOutcome(
            state=self.state,
            cancel_reason=self.token.reason,
            states=list(self.states),
        )

    def _finish_failed(self, error: ProcessingError) -> WorkflowOutcome:
        logger.error(f"Run failed: {error.user_message()}")
        self._enter(WorkflowState.FAILED)
        return WorkflowOutcome(state=self.state, error=error,
                               states=list(self.states))

    async def _convert_source(self, ctx: _RunContext) -> None:
        ctx.source_image = await asyncio.to_thread(
            convert_source, ctx.source, self.settings.pdf_render_scale
        )

    async def _position_content(self, ctx: _RunContext) -> None:
        geometry = CanvasGeometry.from_parameters(ctx.params)
        logger.info(
            f"Target {geometry.final_width_px}x{geometry.final_height_px}px "
            f"({ctx.params.final_width_mm}x{ctx.params.final_height_mm}mm at "
            f"{ctx.params.dpi} DPI), canvas {geometry.width}x{geometry.height}px "
            f"with {geometry.bleed_px}px bleed"
        )
        ctx.geometry = geometry
        ctx.buffer = RasterBuffer.allocate(geometry.width, geometry.height)
        ctx.placement = position_content(
            ctx.buffer, ctx.source_image,
            geometry.final_width_px, geometry.final_height_px, geometry.bleed_px,
        )
        ctx.debug["geometry"] = {
            "canvas_px": [geometry.width, geometry.height],
            "final_px": [geometry.final_width_px, geometry.final_height_px],
            "bleed_px": geometry.bleed_px,
        }
        ctx.debug["placement"] = {
            "rect": list(ctx.placement.rect.to_box()),
            "scale": round(ctx.placement.scale, 4),
        }

    async def _fill_bleed(self, ctx: _RunContext) -> None:
        ai_debug = {"mode": "none"}
        try:
            if ctx.params.use_external_outpaint and self.client.outpaint_configured:
                ai_debug = await self._outpaint(ctx)
            elif self.client.configured:
                ai_debug = await self._inpaint_areas(ctx)
            else:
                logger.info("No AI fill provider configured, using fallback fill only")
        except Exception as exc:
            # AI problems never abort the run; the fallback fill follows.
            logger.warning(f"AI fill stage failed, continuing with fallback: {exc}")
            ai_debug["error"] = str(exc)
        ctx.debug["ai"] = ai_debug

        self.progress.report("Filling bleed from nearest content", AI_FILL_END)
        span = FALLBACK_FILL_END - AI_FILL_END

        def on_chunk(done: int, total: int) -> None:
            self.progress.report("Filling bleed from nearest content",
                                 AI_FILL_END + span * done / total)

        ctx.fill_report = await self.filler.fill(
            ctx.buffer, ctx.geometry, self.token, on_chunk
        )
        ctx.debug["fallback_fill"] = {
            "candidates": ctx.fill_report.candidates,
            "copied": ctx.fill_report.copied,
            "cancelled": ctx.fill_report.cancelled,
        }
        if not ctx.fill_report.cancelled:
            remaining = count_unfilled_bleed_pixels(ctx.buffer, ctx.geometry)
            ctx.debug["unfilled_bleed_pixels"] = remaining
            if any(remaining.values()):
                logger.warning(f"Bleed pixels still unfilled: {remaining}")

    async def _outpaint(self, ctx: _RunContext) -> dict:
        geometry = ctx.geometry
        logger.info("Extending canvas with external outpaint")
        extended = await self.client.request_outpaint(
            ctx.buffer.read_region(geometry.final_rect),
            geometry.width, geometry.height,
            ctx.params.fill_prompt, self.token,
        )
        if extended is None:
            return {"mode": "outpaint", "applied": False}

        # Only the bleed ring is taken over; the final area stays untouched.
        ring = ring_mask(geometry)
        ctx.buffer.pixels[ring] = np.asarray(extended.convert("RGBA"),
                                             dtype=np.uint8)[ring]
        return {"mode": "outpaint", "applied": True}

    async def _inpaint_areas(self, ctx: _RunContext) -> dict:
        geometry = ctx.geometry
        areas = extract_margin_areas(geometry.bleed_px, geometry.final_width_px,
                                     geometry.final_height_px)
        start = STAGE_PROGRESS[WorkflowState.FILLING_BLEED][1]
        filled_sides = []
        for index, area in enumerate(areas):
            if area.target_rect.is_empty():
                continue
            if self.token.check() is Checkpoint.CANCELLED:
                break
            request = prepare_area_image_and_mask(ctx.buffer, area)
            filled = await self.client.request_fill(
                request.image, request.mask, ctx.params.fill_prompt, self.token
            )
            if filled is not None:
                apply_filled_area(ctx.buffer, filled, request)
                filled_sides.append(area.side)
            self.progress.report(
                f"AI fill: {area.side} bleed",
                start + (AI_FILL_END - start) * (index + 1) / len(areas),
            )
        logger.info(f"AI filled bleed areas: {filled_sides or 'none'}")
        return {"mode": "inpaint", "filled_sides": filled_sides}

    async def _render_cut_lines(self, ctx: _RunContext) -> None:
        stroked = render_cut_line(ctx.buffer, ctx.params.cut_line_type,
                                  ctx.geometry.final_rect)
        ctx.debug["cut_line"] = {
            "type": ctx.params.cut_line_type,
            "final_rect": list(ctx.geometry.final_rect.to_box()),
            "stroked_pixels": stroked,
        }

    async def _export(self, ctx: _RunContext) -> None:
        # The result raster stays lossless; only the PDF embed may be JPEG.
        raster = ctx.buffer.encode("PNG")
        export_format = self.settings.export_format
        if export_format == "JPEG":
            embedded = ctx.buffer.encode("JPEG", quality=95)
        else:
            embedded = raster
        ctx.document = self.exporter.export(embedded, ctx.buffer.size, ctx.params)
        ctx.debug["document_bytes"] = len(ctx.document)

        ctx.result = ProcessingResult(
            raster=raster,
            raster_format="PNG",
            original_dimensions=Dimensions(*ctx.source_image.size),
            final_dimensions_including_bleed=Dimensions(*ctx.buffer.size),
            applied_bleed_mm=ctx.params.bleed_margin_mm,
            debug=ctx.debug,
        )
