import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_OUTPAINT_SPACE = "fffiloni/diffusers-image-outpaint"
DEFAULT_PROVIDER_ORDER = ("http", "openai")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _mask_secret(name: str, value: str | None) -> None:
    if value:
        logger.info(
            "%s detected: length=%s, prefix=%s***", name, len(value), value[:4]
        )


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, read once from the environment."""

    inpaint_url: str | None = None
    inpaint_token: str | None = None
    openai_api_key: str | None = None
    openai_model: str = "dall-e-2"
    outpaint_space: str | None = DEFAULT_OUTPAINT_SPACE
    outpaint_enabled: bool = False
    outpaint_token: str | None = None
    provider_order: tuple[str, ...] = field(default=DEFAULT_PROVIDER_ORDER)
    ai_timeout: float = 15.0
    max_upload_mb: int = 100
    pdf_render_scale: float = 2.0
    export_format: str = "JPEG"
    chunk_pixels: int = 65536

    @property
    def ai_configured(self) -> bool:
        return bool(self.inpaint_url or self.openai_api_key)

    @property
    def outpaint_configured(self) -> bool:
        return bool(self.outpaint_enabled and self.outpaint_space)


def load_dotenv_files() -> str | None:
    """Load `.env.local` (searched upwards) or the `.env` beside the package."""
    resolved = find_dotenv(".env.local")
    if not resolved:
        fallback = Path(__file__).resolve().parent.parent / ".env"
        if fallback.exists():
            resolved = str(fallback)

    if resolved:
        # Use utf-8-sig to tolerate BOM in files saved with a BOM on Windows
        load_dotenv(resolved, override=True, encoding="utf-8-sig")
    logger.info(f"dotenv loaded from: {resolved or 'not found'}")
    return resolved


def load_settings(read_dotenv: bool = True) -> Settings:
    """Build `Settings` from the process environment."""
    if read_dotenv:
        load_dotenv_files()

    order = os.getenv("PRINTPREP_PROVIDER_ORDER")
    provider_order = (
        tuple(p.strip().lower() for p in order.split(",") if p.strip())
        if order else DEFAULT_PROVIDER_ORDER
    )
    export_format = os.getenv("PRINTPREP_EXPORT_FORMAT", "JPEG").upper()
    if export_format not in ("JPEG", "PNG"):
        raise ValueError(
            f"PRINTPREP_EXPORT_FORMAT must be JPEG or PNG, got {export_format}"
        )

    settings = Settings(
        inpaint_url=os.getenv("PRINTPREP_INPAINT_URL") or None,
        inpaint_token=os.getenv("PRINTPREP_INPAINT_TOKEN") or None,
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_model=os.getenv("PRINTPREP_OPENAI_MODEL", "dall-e-2"),
        outpaint_space=os.getenv("PRINTPREP_OUTPAINT_SPACE",
                                 DEFAULT_OUTPAINT_SPACE) or None,
        outpaint_enabled=_env_bool("PRINTPREP_OUTPAINT_ENABLED", False),
        outpaint_token=os.getenv("HF_TOKEN") or None,
        provider_order=provider_order,
        ai_timeout=_env_float("PRINTPREP_AI_TIMEOUT", 15.0),
        max_upload_mb=_env_int("PRINTPREP_MAX_UPLOAD_MB", 100),
        pdf_render_scale=_env_float("PRINTPREP_PDF_RENDER_SCALE", 2.0),
        export_format=export_format,
        chunk_pixels=_env_int("PRINTPREP_CHUNK_PIXELS", 65536),
    )

    _mask_secret("PRINTPREP_INPAINT_TOKEN", settings.inpaint_token)
    _mask_secret("OPENAI_API_KEY", settings.openai_api_key)
    logger.info(
        f"AI fill providers: order={','.join(settings.provider_order)}, "
        f"configured={settings.ai_configured}, "
        f"outpaint={settings.outpaint_configured}, "
        f"timeout={settings.ai_timeout}s"
    )
    return settings
