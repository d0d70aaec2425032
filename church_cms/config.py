import datetime
import logging
import sys
import os
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, ValidationError, ConfigDict
from pydantic_settings import BaseSettings

from .constants import ALLOWED_IMAGE_TYPES, DEFAULT_MAX_UPLOAD_SIZE, DEFAULT_UPLOADS_ROOT, TARGET_FORMATS

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_ignore_empty=False,
        case_sensitive=False  # Make env vars case-insensitive
    )

    logging_level: str = "INFO"
    timezone: str = "UTC"
    database_url: str = "sqlite:///./data/church.db"

    # Security settings
    debug_mode: bool = False  # Include error text in 500 responses
    cors_origins: str = "*"

    # JWT settings for bearer tokens
    jwt_secret: str | None = None
    jwt_algorithm: str = "HS256"
    jwt_expiry_days: int = 7

    # Upload / image pipeline defaults (overridable per call)
    uploads_root: str = DEFAULT_UPLOADS_ROOT
    image_max_width: int = 1200
    image_max_height: int = 800
    image_quality: int = 80
    image_format: str = "webp"
    upload_max_bytes: int = DEFAULT_MAX_UPLOAD_SIZE

    @field_validator("jwt_expiry_days")
    @classmethod
    def validate_jwt_expiry(cls, v):
        if int(v) < 1:
            raise ValueError("jwt_expiry_days must be >= 1")
        if int(v) > 365:
            raise ValueError("jwt_expiry_days must be <= 365")
        return int(v)

    @field_validator("image_max_width", "image_max_height", "upload_max_bytes")
    @classmethod
    def validate_positive(cls, v, info):
        if int(v) < 1:
            raise ValueError(f"{info.field_name} must be >= 1")
        return int(v)

    @field_validator("image_quality")
    @classmethod
    def validate_quality(cls, v):
        if int(v) < 1 or int(v) > 100:
            raise ValueError("image_quality must be between 1 and 100")
        return int(v)

    @field_validator("image_format")
    @classmethod
    def validate_image_format(cls, v):
        fmt = str(v).strip().lower()
        if fmt == "jpg":
            fmt = "jpeg"
        if fmt not in TARGET_FORMATS:
            raise ValueError(f"image_format must be one of {sorted(TARGET_FORMATS)}")
        return fmt

    @field_validator("uploads_root", "database_url")
    @classmethod
    def validate_not_blank(cls, v, info):
        if v is None or (isinstance(v, str) and v.strip() == ""):
            raise ValueError(f"{info.field_name} cannot be None or empty string")
        return v

    def model_post_init(self, __context):
        if not self.jwt_secret:
            logger.warning("JWT_SECRET is not set; every bearer token will be rejected")

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _prefer_docker_secret(cls, v, info):
        """
        Prefer Docker secrets mounted at /run/secrets/<NAME> over environment variables.
        Tries secret files with the field name upper-cased and as-is.
        """
        secret = None
        try:
            candidates = [info.field_name.upper(), info.field_name]
            for name in candidates:
                path = f"/run/secrets/{name}"
                if os.path.isfile(path):
                    with open(path, "r", encoding="utf-8") as f:
                        data = f.read().strip()
                    if data:
                        secret = data
                        break
        except OSError:
            secret = None
        if secret:
            logger.debug("Using docker secret for %s", info.field_name)
            return secret
        return v

    def upload_options(self, **overrides):
        """Build the default `UploadOptions` for this deployment, with per-call overrides."""
        from .uploads import UploadOptions

        values = {
            'allowed_types': list(ALLOWED_IMAGE_TYPES),
            'max_size': self.upload_max_bytes,
            'width': self.image_max_width,
            'height': self.image_max_height,
            'quality': self.image_quality,
            'format': self.image_format,
        }
        values.update(overrides)
        return UploadOptions(**values)

    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(',') if o.strip()] or ["*"]


def load_settings() -> Settings:
    try:
        settings = Settings()
        return settings
    except ValidationError as e:
        logger.error("Configuration error:")
        for err in e.errors():
            logger.error(" - %s: %s", err.get('loc'), err.get('msg'))
        sys.exit(1)


class LocalISOFormatter(logging.Formatter):
    def __init__(self, fmt=None, datefmt=None, tz_name: str | None = None):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._tz = None
        self._tz_name = tz_name
        if tz_name:
            try:
                self._tz = ZoneInfo(tz_name)
            except ZoneInfoNotFoundError:
                self._tz = None

    def formatTime(self, record, datefmt=None):
        if self._tz is not None:
            dt = datetime.datetime.fromtimestamp(record.created, tz=self._tz)
        else:
            dt = datetime.datetime.fromtimestamp(record.created).astimezone()
        return dt.isoformat(timespec='milliseconds')


def configure_logging(settings: Settings | None = None):
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        tzname = getattr(settings, 'timezone', None) if settings is not None else None
        formatter = LocalISOFormatter('%(asctime)s %(levelname)s %(name)s %(message)s', tz_name=tzname)
        handler.setFormatter(formatter)
        root.addHandler(handler)
    if settings is not None:
        lvl = str(getattr(settings, 'logging_level', 'INFO')).strip().upper()
        numeric = getattr(logging, lvl, None)
        if not isinstance(numeric, int):
            root.setLevel(logging.INFO)
        else:
            root.setLevel(numeric)
    else:
        root.setLevel(logging.INFO)

    logger.info("Logging configured; root level=%s", logging.getLevelName(root.level))

    noisy = ['httpx', 'httpcore', 'multipart', 'PIL']
    for n in noisy:
        logging.getLogger(n).setLevel(logging.WARNING)

    for logger_name in ['uvicorn', 'uvicorn.error']:
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True

    if root.level <= logging.DEBUG:
        logging.getLogger('sqlalchemy.engine').setLevel(logging.INFO)
    else:
        logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
