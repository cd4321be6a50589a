import os
import sys
import tempfile

import pytest

# app.py initialises its database at import time; point it somewhere harmless
_BOOT_DIR = tempfile.mkdtemp(prefix="monolog-tests-")
os.environ.setdefault("MONOLOG_DATABASE", os.path.join(_BOOT_DIR, "boot.db"))
os.environ.setdefault("MONOLOG_UPLOAD_FOLDER", os.path.join(_BOOT_DIR, "uploads"))
os.environ.setdefault("MONOLOG_JWT_SECRET", "test-secret-that-is-long-enough-for-hs256")

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import app as monolog  # noqa: E402
import dedupe  # noqa: E402
from cache import api_cache, feed_cache  # noqa: E402
from ratelimit import ALL_LIMITERS  # noqa: E402


@pytest.fixture
def app(tmp_path):
    flask_app = monolog.app
    flask_app.config.update(
        TESTING=True,
        DATABASE=str(tmp_path / "test.db"),
        UPLOAD_FOLDER=str(tmp_path / "uploads"),
        DISABLE_UPLOAD_LIMIT=False,
        BOOTSTRAP_INVITE="EARLYADOPTER",
    )
    os.makedirs(flask_app.config["UPLOAD_FOLDER"], exist_ok=True)
    with flask_app.app_context():
        monolog.init_db()

    api_cache.clear()
    feed_cache.clear()
    dedupe.clear_pending()
    for limiter in ALL_LIMITERS:
        limiter.reset()

    yield flask_app

    api_cache.clear()
    feed_cache.clear()


@pytest.fixture
def client(app):
    with app.test_client() as client:
        yield client


@pytest.fixture
def signup(client):
    """Register a user and return ``(user, headers)``."""

    def _signup(username, email=None, password="password123", invite="EARLYADOPTER"):
        resp = client.post(
            "/api/auth/signup",
            json={
                "email": email or f"{username}@example.com",
                "password": password,
                "username": username,
                "inviteCode": invite,
            },
        )
        assert resp.status_code == 201, resp.get_json()
        body = resp.get_json()
        return body["user"], {"Authorization": f"Bearer {body['token']}"}

    return _signup


@pytest.fixture
def alice(signup):
    return signup("alice")


@pytest.fixture
def bob(signup):
    return signup("bob")


IMAGE_URL = "https://cdn.example.com/photo.jpg"


@pytest.fixture
def make_post(client):
    def _make_post(headers, caption="", public=True, **extra):
        body = {"imageUrls": [IMAGE_URL], "caption": caption, "public": public}
        body.update(extra)
        resp = client.post("/api/posts/create", json=body, headers=headers)
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()["post"]

    return _make_post


@pytest.fixture
def png_data_url():
    import base64
    import io

    from PIL import Image

    buf = io.BytesIO()
    Image.new("RGB", (64, 48), (200, 120, 40)).save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")
