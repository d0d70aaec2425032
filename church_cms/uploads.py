"""Upload / image pipeline.

An incoming multipart file is spooled to a temp file (`UploadedAsset`),
validated against an allow-list and size limit, then either moved as-is
(animated GIF) or transcoded with Pillow into a bounding box and target
format, and written under ``<uploads_root>/<folder>/``. The temp file is
removed on every exit path.
"""
import asyncio
import logging
import os
import secrets
import shutil
import tempfile
import time
from contextlib import contextmanager
from io import BytesIO
from typing import Iterator, Optional

from fastapi import Request
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, field_validator
from starlette.datastructures import UploadFile

from .constants import (
    ALLOWED_IMAGE_TYPES,
    ANIMATED_TYPES,
    DEFAULT_IMAGE_FORMAT,
    DEFAULT_IMAGE_HEIGHT,
    DEFAULT_IMAGE_QUALITY,
    DEFAULT_IMAGE_WIDTH,
    DEFAULT_MAX_UPLOAD_SIZE,
    DEFAULT_UPLOADS_ROOT,
    TARGET_FORMATS,
    UPLOAD_CHUNK_SIZE,
    UPLOADS_URL_PREFIX,
    get_extension,
    sanitize_folder,
)
from .errors import ProcessingError, UploadError

logger = logging.getLogger(__name__)


class UploadOptions(BaseModel):
    """Per-call upload settings; defaults come from `Settings.upload_options()`."""
    field_name: str = "file"
    required: bool = False
    allowed_types: list[str] = list(ALLOWED_IMAGE_TYPES)
    max_size: int = DEFAULT_MAX_UPLOAD_SIZE
    width: int = DEFAULT_IMAGE_WIDTH
    height: int = DEFAULT_IMAGE_HEIGHT
    quality: int = DEFAULT_IMAGE_QUALITY
    format: str = DEFAULT_IMAGE_FORMAT

    @field_validator("format")
    @classmethod
    def _normalize_format(cls, v):
        fmt = str(v).strip().lower()
        if fmt == "jpg":
            fmt = "jpeg"
        if fmt not in TARGET_FORMATS:
            raise ValueError(f"format must be one of {sorted(TARGET_FORMATS)}")
        return fmt

    @field_validator("width", "height", "max_size")
    @classmethod
    def _positive(cls, v, info):
        if int(v) < 1:
            raise ValueError(f"{info.field_name} must be >= 1")
        return int(v)

    @field_validator("quality")
    @classmethod
    def _quality_range(cls, v):
        if int(v) < 1 or int(v) > 100:
            raise ValueError("quality must be between 1 and 100")
        return int(v)


class UploadedAsset(BaseModel):
    """Incoming file spooled to disk; consumed once by the pipeline."""
    temp_path: str
    content_type: str
    size: int
    filename: str

    @classmethod
    async def from_upload(cls, upload: UploadFile, tmp_dir: Optional[str] = None) -> "UploadedAsset":
        ext = get_extension(upload.filename or '')
        fd, temp_path = tempfile.mkstemp(prefix="upload-", suffix=f".{ext}" if ext else "", dir=tmp_dir)
        written = 0
        try:
            with os.fdopen(fd, 'wb') as out:
                while True:
                    chunk = await upload.read(UPLOAD_CHUNK_SIZE)
                    if not chunk:
                        break
                    out.write(chunk)
                    written += len(chunk)
        except BaseException:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise
        declared = upload.size if getattr(upload, 'size', None) is not None else written
        return cls(
            temp_path=temp_path,
            content_type=(upload.content_type or 'application/octet-stream').lower(),
            size=declared,
            filename=upload.filename or '',
        )

    def cleanup(self) -> bool:
        """Remove the temp file if it still exists."""
        try:
            if os.path.exists(self.temp_path):
                os.remove(self.temp_path)
                logger.debug("Removed temp upload %s", self.temp_path)
                return True
        except OSError:
            logger.exception("Failed to remove temp upload %s", self.temp_path)
        return False


class ProcessedFile(BaseModel):
    folder: str
    filename: str
    path: str
    url: str
    mimetype: str
    size: int


@contextmanager
def released(asset: UploadedAsset) -> Iterator[UploadedAsset]:
    """Guarantee the asset's temp file is gone when the block exits."""
    try:
        yield asset
    finally:
        asset.cleanup()


def validate_file(asset: Optional[UploadedAsset], allowed_types=ALLOWED_IMAGE_TYPES, max_size: int = DEFAULT_MAX_UPLOAD_SIZE) -> bool:
    if asset is None:
        raise UploadError("No file uploaded")

    if asset.content_type not in allowed_types:
        raise UploadError(
            f"Invalid file type: {asset.content_type}. Allowed types: {', '.join(allowed_types)}"
        )

    if asset.size > max_size:
        raise UploadError(
            f"File too large. Maximum size is {max_size / 1024 / 1024:g}MB",
            status_code=413,
        )

    return True


def generate_filename(folder: str, ext: str) -> str:
    """``<folder>-<ms timestamp>-<9 digit random>.<ext>``"""
    millis = time.time_ns() // 1_000_000
    suffix = 100_000_000 + secrets.randbelow(900_000_000)
    return f"{folder}-{millis}-{suffix}.{ext.lstrip('.')}"


def get_file_url(folder: str, filename: Optional[str]) -> Optional[str]:
    if not filename:
        return None
    return f"{UPLOADS_URL_PREFIX}/{folder}/{filename}"


def get_file_from_url(url: Optional[str], uploads_root: str = DEFAULT_UPLOADS_ROOT) -> Optional[dict]:
    """Resolve ``/uploads/<folder>/<filename>`` to folder, filename and absolute path.

    Any other shape returns None.
    """
    if not url or not isinstance(url, str):
        return None
    parts = url.split('/')
    if len(parts) != 4 or parts[0] != '' or f"/{parts[1]}" != UPLOADS_URL_PREFIX:
        return None
    folder, filename = parts[2], parts[3]
    if not folder or not filename or folder.startswith('.') or filename.startswith('.') or '\\' in url:
        return None
    return {
        'folder': folder,
        'filename': filename,
        'path': os.path.abspath(os.path.join(uploads_root, folder, filename)),
    }


def delete_uploaded_file(file_path: Optional[str]) -> bool:
    try:
        if file_path and os.path.isfile(file_path):
            os.remove(file_path)
            logger.info("Deleted file: %s", file_path)
            return True
        return False
    except OSError:
        logger.exception("Error deleting file %s", file_path)
        return False


def _transcode(source, options: UploadOptions) -> bytes:
    """Decode, fit inside the bounding box (never upscaled) and re-encode."""
    try:
        with Image.open(source) as img:
            img.load()
            img.thumbnail((options.width, options.height), Image.Resampling.LANCZOS)

            if options.format == 'jpeg' and img.mode != 'RGB':
                if img.mode in ('RGBA', 'LA', 'P'):
                    img = img.convert('RGBA')
                    background = Image.new('RGB', img.size, (255, 255, 255))
                    background.paste(img, mask=img.split()[-1])
                    img = background
                else:
                    img = img.convert('RGB')
            elif img.mode not in ('RGB', 'RGBA'):
                has_alpha = 'A' in img.mode or 'transparency' in img.info
                img = img.convert('RGBA' if has_alpha else 'RGB')

            with BytesIO() as bio:
                img.save(bio, format=options.format.upper(), quality=options.quality)
                return bio.getvalue()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        logger.warning("Image transcoding failed: %s", exc)
        raise ProcessingError(f"Failed to process image: {exc}") from exc


def _check_format(source, expected: str):
    """Make sure a passthrough file really is `expected` before it is served back."""
    try:
        with Image.open(source) as img:
            actual = img.format
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        logger.warning("Passthrough image could not be identified: %s", exc)
        raise ProcessingError(f"Failed to process image: {exc}") from exc
    if actual != expected:
        logger.warning("Passthrough image is %s, expected %s", actual, expected)
        raise ProcessingError(f"Failed to process image: content is not {expected}")


def _write_file(path: str, data: bytes):
    try:
        with open(path, 'wb') as f:
            f.write(data)
    except OSError:
        if os.path.exists(path):
            os.remove(path)
        raise


def _move_file(src: str, dest: str):
    try:
        shutil.move(src, dest)
    except OSError:
        if os.path.exists(dest):
            os.remove(dest)
        raise


def process_and_save_file(
    asset: Optional[UploadedAsset],
    folder: str,
    options: Optional[UploadOptions] = None,
    uploads_root: str = DEFAULT_UPLOADS_ROOT,
) -> ProcessedFile:
    """Validate, transcode (or move) and store one upload."""
    options = options or UploadOptions()
    if asset is None:
        validate_file(None)

    with released(asset):
        try:
            folder = sanitize_folder(folder)
        except ValueError as exc:
            raise UploadError(str(exc)) from exc

        validate_file(asset, options.allowed_types, options.max_size)

        folder_path = os.path.join(uploads_root, folder)
        os.makedirs(folder_path, exist_ok=True)

        try:
            if asset.content_type in ANIMATED_TYPES:
                expected, ext = ANIMATED_TYPES[asset.content_type]
                _check_format(asset.temp_path, expected)
                filename = generate_filename(folder, ext)
                filepath = os.path.join(folder_path, filename)
                _move_file(asset.temp_path, filepath)
                mimetype = asset.content_type
            else:
                data = _transcode(asset.temp_path, options)
                ext, mimetype = TARGET_FORMATS[options.format]
                filename = generate_filename(folder, ext)
                filepath = os.path.join(folder_path, filename)
                _write_file(filepath, data)
        except OSError as exc:
            logger.exception("Error storing upload in %s", folder_path)
            raise ProcessingError(f"Failed to store file: {exc}") from exc

    size = os.stat(filepath).st_size
    logger.info("File uploaded and processed: filename=%s size=%d folder=%s", filename, size, folder)
    return ProcessedFile(
        folder=folder,
        filename=filename,
        path=os.path.abspath(filepath),
        url=get_file_url(folder, filename),
        mimetype=mimetype,
        size=size,
    )


def process_image(input_path: str, output_path: str, options: Optional[UploadOptions] = None) -> str:
    """Transcode an image already on disk into `output_path`."""
    options = options or UploadOptions()
    data = _transcode(input_path, options)
    _write_file(output_path, data)
    return output_path


async def handle_upload(upload: Optional[UploadFile], folder: str, options: UploadOptions, uploads_root: str) -> Optional[ProcessedFile]:
    """Run the pipeline for one form file; None when optional and absent."""
    if upload is None or not getattr(upload, 'filename', None):
        if options.required:
            raise UploadError(f"No file uploaded. Please upload a {options.field_name}.")
        return None

    asset = await UploadedAsset.from_upload(upload)
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        None, lambda: process_and_save_file(asset, folder, options, uploads_root)
    )


def upload_dependency(folder: str, **overrides):
    """Dependency factory: process the optional/required file in `options.field_name`."""
    async def _dependency(request: Request) -> Optional[ProcessedFile]:
        settings = request.app.state.settings
        options = settings.upload_options(**overrides)
        upload = None
        if request.headers.get('content-type', '').startswith('multipart/form-data'):
            form = await request.form()
            candidate = form.get(options.field_name)
            if isinstance(candidate, UploadFile):
                upload = candidate
        processed = await handle_upload(upload, folder, options, settings.uploads_root)
        request.state.processed_file = processed
        return processed
    return _dependency
