import io

import pytest
from PIL import Image

from app.services.thumbnails import ThumbnailError, render_thumbnails, thumbnails


def _png(width: int = 800, height: int = 400, mode: str = "RGBA") -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color="red").save(buffer, format="PNG")
    return buffer.getvalue()


def test_render_thumbnails_preserves_aspect_ratio():
    with Image.open(io.BytesIO(_png())) as source:
        rendered = render_thumbnails(source)

    assert set(rendered) == {"small", "medium", "large"}
    with Image.open(io.BytesIO(rendered["small"])) as small:
        assert small.format == "JPEG"
        assert small.size == (150, 75)
    with Image.open(io.BytesIO(rendered["large"])) as large:
        assert large.size == (600, 300)


def test_small_images_are_not_upscaled():
    with Image.open(io.BytesIO(_png(100, 50, "RGB"))) as source:
        rendered = render_thumbnails(source)
    with Image.open(io.BytesIO(rendered["large"])) as large:
        assert large.size == (100, 50)


def test_generate_stores_thumbnails_and_records_keys(
    db_session, storage, user, make_file
):
    file = make_file(user, content=_png(), filename="photo.png", mime_type="image/png")

    keys = thumbnails.generate(db_session, file)

    assert keys == {
        "small": f"thumbnails/{file.id}_small.jpg",
        "medium": f"thumbnails/{file.id}_medium.jpg",
        "large": f"thumbnails/{file.id}_large.jpg",
    }
    assert all(storage.exists(key) for key in keys.values())
    db_session.refresh(file)
    assert file.thumbnail_path == keys["medium"]
    assert file.metadata_["thumbnails"] == keys


def test_generate_skips_documents(db_session, storage, user, make_file):
    file = make_file(user)
    assert thumbnails.generate(db_session, file) == {}


def test_generate_rejects_corrupt_images(db_session, storage, user, make_file):
    file = make_file(user, content=b"not an image", filename="photo.png", mime_type="image/png")
    with pytest.raises(ThumbnailError):
        thumbnails.generate(db_session, file)


def test_generate_requires_source_blob(db_session, storage, user, make_file):
    file = make_file(user, content=_png(), filename="photo.png", mime_type="image/png")
    storage.delete(file.file_path)
    with pytest.raises(ThumbnailError):
        thumbnails.generate(db_session, file)
