import asyncio
import os
import re
from io import BytesIO

import pytest
from PIL import Image
from starlette.datastructures import Headers, UploadFile

from church_cms import uploads
from church_cms.errors import ProcessingError, UploadError
from church_cms.uploads import (
    UploadOptions,
    delete_uploaded_file,
    generate_filename,
    get_file_from_url,
    get_file_url,
    handle_upload,
    process_and_save_file,
    process_image,
    validate_file,
)

from tests._helpers import make_animated_gif_bytes, make_asset, make_image_bytes, make_oversized_png_bytes


FILENAME_RE = re.compile(r"^blog-\d{13}-\d{9}\.webp$")


def test_jpeg_is_resized_into_bounding_box_and_stored_as_webp(tmp_path, uploads_root):
    data = make_image_bytes("JPEG", size=(2000, 1000))
    asset = make_asset(tmp_path, data, "image/jpeg", filename="photo.jpg")

    out = process_and_save_file(asset, "blog", UploadOptions(), str(uploads_root))

    assert FILENAME_RE.match(out.filename)
    assert out.url == f"/uploads/blog/{out.filename}"
    assert out.folder == "blog"
    assert out.path == os.path.abspath(uploads_root / "blog" / out.filename)
    assert out.mimetype == "image/webp"
    assert out.size == os.path.getsize(out.path)

    with Image.open(out.path) as img:
        assert img.format == "WEBP"
        assert img.size == (1200, 600)

    assert not os.path.exists(asset.temp_path)


def test_small_image_is_never_upscaled(tmp_path, uploads_root):
    asset = make_asset(tmp_path, make_image_bytes("PNG", size=(100, 50)), "image/png")

    out = process_and_save_file(asset, "blog", UploadOptions(), str(uploads_root))

    with Image.open(out.path) as img:
        assert img.size == (100, 50)


def test_tall_image_fits_height_and_keeps_aspect(tmp_path, uploads_root):
    asset = make_asset(tmp_path, make_image_bytes("PNG", size=(800, 1600)), "image/png")

    out = process_and_save_file(asset, "ministries", UploadOptions(), str(uploads_root))

    with Image.open(out.path) as img:
        assert img.size == (400, 800)
        assert img.size[0] <= 1200 and img.size[1] <= 800


def test_jpeg_target_flattens_alpha(tmp_path, uploads_root):
    data = make_image_bytes("PNG", size=(64, 64), mode="RGBA", color=(10, 20, 30, 100))
    asset = make_asset(tmp_path, data, "image/png")

    out = process_and_save_file(asset, "blog", UploadOptions(format="jpg", quality=70), str(uploads_root))

    assert out.filename.endswith(".jpg")
    assert out.mimetype == "image/jpeg"
    with Image.open(out.path) as img:
        assert img.format == "JPEG"
        assert img.mode == "RGB"


def test_paletted_png_to_webp(tmp_path, uploads_root):
    data = make_image_bytes("PNG", size=(64, 64), mode="P", color=3)
    asset = make_asset(tmp_path, data, "image/png")

    out = process_and_save_file(asset, "blog", UploadOptions(), str(uploads_root))

    with Image.open(out.path) as img:
        assert img.format == "WEBP"


def test_gif_is_stored_untouched_with_gif_extension(tmp_path, uploads_root):
    data = make_animated_gif_bytes(frames=3)
    asset = make_asset(tmp_path, data, "image/gif", filename="party.GIF")

    out = process_and_save_file(asset, "blog", UploadOptions(), str(uploads_root))

    assert out.filename.endswith(".gif")
    assert out.mimetype == "image/gif"
    with open(out.path, "rb") as f:
        assert f.read() == data
    with Image.open(out.path) as img:
        assert getattr(img, "n_frames", 1) == 3
    assert not os.path.exists(asset.temp_path)


def test_gif_ignores_client_supplied_extension(tmp_path, uploads_root):
    data = make_animated_gif_bytes(frames=2)
    asset = make_asset(tmp_path, data, "image/gif", filename="evil.html")

    out = process_and_save_file(asset, "blog", UploadOptions(), str(uploads_root))

    assert re.match(r"^blog-\d{13}-\d{9}\.gif$", out.filename)
    assert out.url.endswith(".gif")
    assert [p.suffix for p in (uploads_root / "blog").iterdir()] == [".gif"]


def test_non_gif_bytes_declared_as_gif_rejected(tmp_path, uploads_root):
    asset = make_asset(tmp_path, b"<script>alert(1)</script>", "image/gif", filename="evil.html")

    with pytest.raises(ProcessingError) as exc:
        process_and_save_file(asset, "blog", UploadOptions(), str(uploads_root))

    assert exc.value.status_code == 400
    assert list((uploads_root / "blog").iterdir()) == []
    assert not os.path.exists(asset.temp_path)


def test_png_declared_as_gif_rejected(tmp_path, uploads_root):
    asset = make_asset(tmp_path, make_image_bytes("PNG"), "image/gif", filename="party.gif")

    with pytest.raises(ProcessingError, match="not GIF"):
        process_and_save_file(asset, "blog", UploadOptions(), str(uploads_root))


def test_oversized_dimensions_raise_processing_error(tmp_path, uploads_root):
    asset = make_asset(tmp_path, make_oversized_png_bytes(), "image/png")

    with pytest.raises(ProcessingError) as exc:
        process_and_save_file(asset, "blog", UploadOptions(), str(uploads_root))

    assert exc.value.status_code == 400
    assert list((uploads_root / "blog").iterdir()) == []
    assert not os.path.exists(asset.temp_path)


def test_disallowed_type_rejected_and_temp_removed(tmp_path, uploads_root):
    asset = make_asset(tmp_path, b"%PDF-1.4", "application/pdf", filename="doc.pdf")

    with pytest.raises(UploadError) as exc:
        process_and_save_file(asset, "blog", UploadOptions(), str(uploads_root))

    assert exc.value.status_code == 400
    assert "Invalid file type: application/pdf" in exc.value.message
    assert not os.path.exists(asset.temp_path)


def test_oversized_file_rejected_with_413(tmp_path, uploads_root):
    asset = make_asset(tmp_path, b"x", "image/png", size=6 * 1024 * 1024)

    with pytest.raises(UploadError) as exc:
        process_and_save_file(asset, "blog", UploadOptions(max_size=5 * 1024 * 1024), str(uploads_root))

    assert exc.value.status_code == 413
    assert "too large" in exc.value.message
    assert "5MB" in exc.value.message
    assert not os.path.exists(asset.temp_path)


def test_corrupt_image_raises_processing_error_and_leaves_nothing(tmp_path, uploads_root):
    asset = make_asset(tmp_path, b"\x89PNG\r\n\x1a\nnot really", "image/png")

    with pytest.raises(ProcessingError) as exc:
        process_and_save_file(asset, "blog", UploadOptions(), str(uploads_root))

    assert exc.value.status_code == 400
    assert not os.path.exists(asset.temp_path)
    assert list((uploads_root / "blog").iterdir()) == []


def test_failed_write_removes_partial_file(tmp_path, uploads_root, monkeypatch):
    asset = make_asset(tmp_path, make_image_bytes("PNG"), "image/png")

    real_open = open
    opened = []

    class FailingFile:
        def __init__(self, path):
            self._f = real_open(path, "wb")
            opened.append(path)

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            self._f.close()
            return False

        def write(self, data):
            self._f.write(data[:10])
            self._f.flush()
            raise OSError("disk full")

    monkeypatch.setattr(uploads, "open", lambda path, mode="r": FailingFile(path), raising=False)

    with pytest.raises(ProcessingError, match="disk full"):
        process_and_save_file(asset, "blog", UploadOptions(), str(uploads_root))

    assert opened
    assert list((uploads_root / "blog").iterdir()) == []
    assert not os.path.exists(asset.temp_path)


def test_folder_is_created_recursively(tmp_path):
    root = tmp_path / "does" / "not" / "exist"
    asset = make_asset(tmp_path, make_image_bytes("PNG"), "image/png")

    out = process_and_save_file(asset, "events", UploadOptions(), str(root))

    assert os.path.isfile(out.path)
    assert (root / "events").is_dir()


def test_path_traversal_folder_rejected(tmp_path, uploads_root):
    asset = make_asset(tmp_path, make_image_bytes("PNG"), "image/png")

    with pytest.raises(UploadError):
        process_and_save_file(asset, "../../etc", UploadOptions(), str(uploads_root))

    assert not os.path.exists(asset.temp_path)


def test_validate_file_missing():
    with pytest.raises(UploadError, match="No file uploaded"):
        validate_file(None)


def test_generate_filename_shape_and_uniqueness():
    names = {generate_filename("blog", "webp") for _ in range(200)}
    assert len(names) == 200
    for n in names:
        assert FILENAME_RE.match(n)


def test_url_round_trip(uploads_root):
    url = get_file_url("ministries", "ministries-1700000000000-123456789.webp")
    info = get_file_from_url(url, str(uploads_root))

    assert info["folder"] == "ministries"
    assert info["filename"] == "ministries-1700000000000-123456789.webp"
    assert info["path"] == os.path.abspath(uploads_root / "ministries" / info["filename"])


def test_get_file_url_without_filename():
    assert get_file_url("blog", None) is None
    assert get_file_url("blog", "") is None


@pytest.mark.parametrize("url", [
    None,
    "",
    "https://example.com/uploads/blog/a.webp",
    "/uploads/blog",
    "/uploads/blog/nested/a.webp",
    "/static/blog/a.webp",
    "/uploads/../secret.txt",
    "/uploads/blog/..",
    "uploads/blog/a.webp",
])
def test_get_file_from_url_rejects_other_shapes(url):
    assert get_file_from_url(url, "/srv/uploads") is None


def test_delete_uploaded_file(tmp_path):
    f = tmp_path / "x.webp"
    f.write_bytes(b"data")

    assert delete_uploaded_file(str(f)) is True
    assert not f.exists()
    assert delete_uploaded_file(str(f)) is False
    assert delete_uploaded_file(None) is False


def test_process_image_transcodes_existing_file(tmp_path):
    src = tmp_path / "in.png"
    src.write_bytes(make_image_bytes("PNG", size=(3000, 3000)))
    dest = tmp_path / "out.webp"

    result = process_image(str(src), str(dest), UploadOptions(width=300, height=300))

    assert result == str(dest)
    with Image.open(dest) as img:
        assert img.format == "WEBP"
        assert img.size == (300, 300)


def _upload_file(data: bytes, filename: str, content_type: str) -> UploadFile:
    return UploadFile(
        file=BytesIO(data),
        size=len(data),
        filename=filename,
        headers=Headers({"content-type": content_type}),
    )


def test_handle_upload_optional_absent_is_noop(uploads_root):
    result = asyncio.run(handle_upload(None, "blog", UploadOptions(required=False), str(uploads_root)))
    assert result is None


def test_handle_upload_required_absent_rejected(uploads_root):
    with pytest.raises(UploadError, match="Please upload a featured_image"):
        asyncio.run(handle_upload(None, "blog", UploadOptions(required=True, field_name="featured_image"), str(uploads_root)))


def test_handle_upload_spools_and_processes(uploads_root):
    upload = _upload_file(make_image_bytes("JPEG", size=(1600, 1600)), "pic.jpg", "image/jpeg")

    out = asyncio.run(handle_upload(upload, "blog", UploadOptions(), str(uploads_root)))

    assert out is not None
    with Image.open(out.path) as img:
        assert img.size == (800, 800)


def test_uploaded_asset_from_upload_records_declared_metadata(tmp_path):
    data = make_image_bytes("PNG")
    upload = _upload_file(data, "logo.png", "IMAGE/PNG")

    asset = asyncio.run(uploads.UploadedAsset.from_upload(upload, tmp_dir=str(tmp_path)))

    assert asset.content_type == "image/png"
    assert asset.size == len(data)
    assert asset.filename == "logo.png"
    with open(asset.temp_path, "rb") as f:
        assert f.read() == data
    assert asset.cleanup() is True
    assert asset.cleanup() is False


@pytest.mark.parametrize("kwargs", [
    {"format": "bmp"},
    {"quality": 0},
    {"quality": 101},
    {"width": 0},
])
def test_upload_options_rejects_bad_values(kwargs):
    from pydantic import ValidationError
    with pytest.raises(ValidationError):
        UploadOptions(**kwargs)
