import pytest

from church_cms.constants import (
    MAX_FOLDER_LENGTH,
    get_extension,
    sanitize_folder,
    slugify,
)


@pytest.mark.parametrize("fname,ext", [
    ("image.JPG", "jpg"),
    ("photo.png", "png"),
    ("party.GIF", "gif"),
    ("archive.tar.gz", "gz"),
    ("noext", ""),
    ("", ""),
    (None, ""),
])
def test_get_extension(fname, ext):
    assert get_extension(fname) == ext


@pytest.mark.parametrize("folder,expected", [
    ("blogs", "blogs"),
    ("  ministries  ", "ministries"),
    ("/events/", "events"),
    ("my folder!", "myfolder"),
    ("event_2024-spring", "event_2024-spring"),
    ("..hidden", "hidden"),
])
def test_sanitize_folder_keeps_safe_names(folder, expected):
    assert sanitize_folder(folder) == expected


@pytest.mark.parametrize("folder", [
    "../etc",
    "../../etc",
    "a/b",
    "a\\b",
    "a/../b",
    "%2e%2e%2fetc",
    "a%2Fb",
    "",
    None,
    "!!!",
    "x" * (MAX_FOLDER_LENGTH + 1),
])
def test_sanitize_folder_rejects_unsafe(folder):
    with pytest.raises(ValueError):
        sanitize_folder(folder)


@pytest.mark.parametrize("title,slug", [
    ("Grace Abounding", "grace-abounding"),
    ("  What's Next?  ", "what-s-next"),
    ("Psalm 23: The Lord Is My Shepherd", "psalm-23-the-lord-is-my-shepherd"),
    ("---", ""),
    (None, ""),
])
def test_slugify(title, slug):
    assert slugify(title) == slug
