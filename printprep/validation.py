"""Pre-flight checks run before a file is processed."""
from typing import Literal

from pydantic import BaseModel, Field

from printprep.models import ProcessingParameters

HIGH_RESOLUTION_PIXELS = 5000
MIN_RECOMMENDED_BLEED_MM = 2.0


class ValidationIssue(BaseModel):
    type: Literal["error", "warning", "info"]
    message: str
    category: Literal["format", "pdf", "dpi", "bleed", "ai"]


class ValidationReport(BaseModel):
    is_valid: bool
    warnings: list[ValidationIssue] = Field(default_factory=list)
    errors: list[ValidationIssue] = Field(default_factory=list)


def validate_request(
    source_size: int,
    source_kind: str,
    params: ProcessingParameters,
    ai_configured: bool,
    max_upload_mb: int = 100
) -> ValidationReport:
    errors = []
    warnings = []

    if source_size > max_upload_mb * 1024 * 1024:
        errors.append(ValidationIssue(
            type="error",
            message=f"File size exceeds {max_upload_mb}MB limit",
            category="format",
        ))

    if source_kind == "pdf":
        warnings.append(ValidationIssue(
            type="warning",
            message="PDF will be rasterized (first page only) for processing.",
            category="pdf",
        ))

    pixel_width = params.final_width_mm * params.dpi / 25.4
    pixel_height = params.final_height_mm * params.dpi / 25.4
    if pixel_width > HIGH_RESOLUTION_PIXELS or pixel_height > HIGH_RESOLUTION_PIXELS:
        warnings.append(ValidationIssue(
            type="warning",
            message=(
                f"Very high resolution output ({round(pixel_width)}x"
                f"{round(pixel_height)}px) will take longer to process"
            ),
            category="dpi",
        ))

    if params.bleed_margin_mm < MIN_RECOMMENDED_BLEED_MM:
        warnings.append(ValidationIssue(
            type="warning",
            message="Bleed margin less than 2mm may cause printing issues",
            category="bleed",
        ))

    if ai_configured:
        warnings.append(ValidationIssue(
            type="info",
            message="AI fill will be used to extend content into the bleed.",
            category="ai",
        ))
    else:
        warnings.append(ValidationIssue(
            type="warning",
            message=(
                "No AI fill provider configured. The bleed will be filled "
                "by extending the nearest edge pixels."
            ),
            category="ai",
        ))

    return ValidationReport(is_valid=not errors, warnings=warnings,
                            errors=errors)
