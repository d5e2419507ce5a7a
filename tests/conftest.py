import io

import pytest
from PIL import Image

from imgcutter_backend.files import FileManager
from imgcutter_backend.sessions import SessionRegistry


@pytest.fixture
def registry(tmp_path):
    reg = SessionRegistry(tmp_path / "temp")
    yield reg
    reg.remove_all()


@pytest.fixture
def files():
    return FileManager()


@pytest.fixture
def image_bytes():
    """Factory: encoded test image of the given size and format."""

    def make(width=320, height=339, fmt="JPEG", mode="RGB"):
        img = Image.linear_gradient("L").resize((width, height))
        if mode != "L":
            img = img.convert(mode)
        buf = io.BytesIO()
        img.save(buf, format=fmt)
        return buf.getvalue()

    return make
