import io
import subprocess
import threading
import time
from pathlib import Path

import cv2
import numpy as np
import pytest

import yolosite.inference as inference
from app import create_app
from yolosite.config import Settings


def _jpeg_bytes(color):
    image = np.full((24, 24, 3), color, dtype=np.uint8)
    ok, encoded = cv2.imencode(".jpg", image)
    assert ok
    return encoded.tobytes()


def _arg(cmd, key):
    prefix = key + "="
    return next(item[len(prefix):] for item in cmd if item.startswith(prefix))


# Pretends to be yolo: "annotates" by copying the source image into <project>/<name>
def _copying_yolo(delay=0.0):
    def fake_run(cmd, **kwargs):
        source = Path(_arg(cmd, "source"))
        out_dir = Path(_arg(cmd, "project")) / _arg(cmd, "name")
        out_dir.mkdir(parents=True, exist_ok=True)
        data = source.read_bytes()
        time.sleep(delay)
        (out_dir / "a.jpg").write_bytes(data)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
    return fake_run


@pytest.fixture
def settings(tmp_path):
    return Settings(uploads_dir=tmp_path / "public" / "uploads", work_dir=tmp_path / "work")


@pytest.fixture
def client(settings):
    app = create_app(settings)
    app.config["TESTING"] = True
    return app.test_client()


def _post(client, data, filename):
    return client.post(
        "/upload",
        data={"file": (io.BytesIO(data), filename)},
        content_type="multipart/form-data",
    )


def test_create_app_creates_upload_store(settings):
    create_app(settings)
    assert settings.uploads_dir.is_dir()


def test_index_renders_form(client):
    response = client.get("/")
    assert response.status_code == 200
    assert b'name="file"' in response.data
    assert b'enctype="multipart/form-data"' in response.data


def test_upload_without_file(client):
    response = client.post("/upload", data={}, content_type="multipart/form-data")
    assert response.status_code == 200
    assert b"No file selected." in response.data


def test_upload_empty_file(client, settings):
    response = _post(client, b"", "photo.png")
    assert b"No file selected." in response.data
    assert not (settings.uploads_dir / "photo.png").exists()


def test_upload_success_shows_both_images(client, settings, monkeypatch):
    monkeypatch.setattr(inference.subprocess, "run", _copying_yolo())
    data = _jpeg_bytes((10, 200, 30))

    response = _post(client, data, "my photo.png")

    assert response.status_code == 200
    assert b"/uploads/my_photo.png" in response.data
    assert b"/uploads/my_photo_annotated.jpg" in response.data
    assert (settings.uploads_dir / "my_photo.png").read_bytes() == data

    image = client.get("/uploads/my_photo_annotated.jpg")
    assert image.status_code == 200
    assert image.mimetype == "image/jpeg"
    assert image.data == data


def test_upload_inference_failure(client, settings, monkeypatch):
    def failing_run(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="model not found")

    monkeypatch.setattr(inference.subprocess, "run", failing_run)

    response = _post(client, b"not really an image", "photo.png")

    assert response.status_code == 200
    assert b"Upload successful but model inference failed." in response.data
    assert (settings.uploads_dir / "photo.png").exists()
    assert not (settings.uploads_dir / "photo_annotated.jpg").exists()
    assert list(settings.work_dir.iterdir()) == []


def test_upload_save_failure(client, monkeypatch):
    def broken_save(self, name, data):
        raise OSError("read-only file system")

    monkeypatch.setattr("yolosite.store.UploadStore.save", broken_save)

    response = _post(client, b"bytes", "photo.png")

    assert b"Upload failed - file not saved." in response.data


def test_upload_traversal_name_falls_back(client, settings, monkeypatch):
    monkeypatch.setattr(inference.subprocess, "run", _copying_yolo())

    response = _post(client, b"\xff\xd8\xffdata", "..")

    assert b"/uploads/upload.jpg" in response.data
    assert (settings.uploads_dir / "upload.jpg").exists()
    assert (settings.uploads_dir / "upload_annotated.jpg").exists()


@pytest.mark.parametrize("name, mimetype", [
    ("a.JPG", "image/jpeg"),
    ("a.jpeg", "image/jpeg"),
    ("a.png", "image/png"),
    ("a.gif", "image/gif"),
])
def test_serve_upload_content_types(client, settings, name, mimetype):
    (settings.uploads_dir / name).write_bytes(b"payload")

    response = client.get(f"/uploads/{name}")

    assert response.status_code == 200
    assert response.mimetype == mimetype
    assert response.data == b"payload"


def test_serve_missing_upload(client):
    response = client.get("/uploads/does-not-exist.png")
    assert response.status_code == 404
    assert response.mimetype == "text/plain"
    assert b"File not found: does-not-exist.png" in response.data


def test_debug_lists_files(client, settings):
    (settings.uploads_dir / "photo.png").write_bytes(b"12345")
    (settings.uploads_dir / "photo_annotated.jpg").write_bytes(b"123")

    response = client.get("/debug")

    assert response.mimetype == "text/plain"
    text = response.get_data(as_text=True)
    assert text.startswith(f"Uploads directory: {settings.uploads_dir}")
    assert "  - photo.png (5 bytes)" in text
    assert "  - photo_annotated.jpg (3 bytes)" in text


def test_concurrent_same_name_uploads_stay_consistent(settings, monkeypatch):
    monkeypatch.setattr(inference.subprocess, "run", _copying_yolo(delay=0.2))
    app = create_app(settings)
    payloads = [_jpeg_bytes((255, 0, 0)), _jpeg_bytes((0, 0, 255))]
    statuses = []

    def worker(data):
        response = _post(app.test_client(), data, "photo.jpg")
        statuses.append(b"photo_annotated.jpg" in response.data)

    threads = [threading.Thread(target=worker, args=(data,)) for data in payloads]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert statuses == [True, True]
    original = (settings.uploads_dir / "photo.jpg").read_bytes()
    annotated = (settings.uploads_dir / "photo_annotated.jpg").read_bytes()
    assert original == annotated
    assert original in payloads


def test_uploads_sharing_an_annotated_name_run_one_at_a_time(settings, monkeypatch):
    copy_yolo = _copying_yolo(delay=0.2)
    active = []
    overlap = []
    finished = []
    guard = threading.Lock()

    def tracking_run(cmd, **kwargs):
        with guard:
            active.append(cmd)
            overlap.append(len(active))
        try:
            return copy_yolo(cmd, **kwargs)
        finally:
            with guard:
                active.remove(cmd)
                finished.append(Path(_arg(cmd, "source")).name)

    monkeypatch.setattr(inference.subprocess, "run", tracking_run)
    app = create_app(settings)
    payloads = {"photo.png": _jpeg_bytes((255, 0, 0)), "photo.jpg": _jpeg_bytes((0, 0, 255))}
    pages = {}

    def worker(name):
        response = _post(app.test_client(), payloads[name], name)
        pages[name] = response.data

    threads = [threading.Thread(target=worker, args=(name,)) for name in payloads]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert max(overlap) == 1
    assert all(b"/uploads/photo_annotated.jpg" in page for page in pages.values())
    annotated = (settings.uploads_dir / "photo_annotated.jpg").read_bytes()
    assert annotated == payloads[finished[-1]]
