"""
Runs the Ultralytics `yolo` command line tool on a saved upload and moves the
annotated image it writes back into the upload store.

Each run gets its own throwaway working directory which is handed to yolo as
`project=`; yolo writes its output to `<project>/<run name>/`. The directory
is removed when the run finishes, whether it succeeded or not.

Nothing here raises to the caller: every failure is logged and reported as
`None` so the web layer can show a single "inference failed" message.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from tempfile import TemporaryDirectory, mkstemp
from typing import List, Optional

import cv2

from yolosite.config import Settings
from yolosite.filenames import annotated_filename
from yolosite.store import UploadStore

logger = logging.getLogger(__name__)

OUTPUT_IMAGE_EXTENSIONS = {'.jpg', '.png', '.jpeg'}
JPEG_EXTENSIONS = {'.jpg', '.jpeg'}
JPEG_QUALITY = 95


def build_command(settings: Settings, source, project) -> List[str]:
    return [
        settings.yolo_bin,
        settings.task,
        'predict',
        f"model={settings.model_path}",
        f"source={source}",
        'save=true',
        f"project={project}",
        f"name={settings.run_name}",
        'exist_ok=true',
        f"conf={settings.confidence}",
    ]


def run_yolo(settings: Settings, source, project) -> bool:
    """Run yolo once and wait for it. True only when it exits with status 0."""
    cmd = build_command(settings, source, project)
    logger.info("Running command: %s", cmd)

    try:
        result = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding='utf-8',
            errors='replace',
            timeout=settings.timeout,
        )
    except subprocess.TimeoutExpired:
        logger.error("yolo did not finish within %s seconds", settings.timeout)
        return False
    except OSError as exc:
        logger.error("Could not start yolo (%s)", exc)
        return False

    logger.info("STDOUT: %s", result.stdout)
    if result.stderr:
        logger.info("STDERR: %s", result.stderr)
    logger.info("EXIT STATUS: %s", result.returncode)

    if result.returncode != 0:
        logger.error("yolo command failed")
        return False
    logger.info("yolo command executed successfully")
    return True


def find_output_images(output_dir: Path) -> List[Path]:
    if not output_dir.is_dir():
        raise FileNotFoundError(f"Output directory not found :- {output_dir}")

    images = [
        path for path in output_dir.iterdir()
        if path.is_file() and path.suffix.lower() in OUTPUT_IMAGE_EXTENSIONS
    ]
    images.sort(key=lambda path: path.name)
    return images


# JPEG output is copied as is; anything else is re-encoded so the bytes match the .jpg name.
# Written beside the destination first so a failed write never leaves a partial file behind.
def _write_as_jpeg(source: Path, destination: Path) -> None:
    fd, partial = mkstemp(prefix='.partial-', suffix='.jpg', dir=destination.parent)
    os.close(fd)
    try:
        if source.suffix.lower() in JPEG_EXTENSIONS:
            shutil.copyfile(source, partial)
        else:
            image = cv2.imread(str(source), cv2.IMREAD_COLOR)
            if image is None:
                raise ValueError(f"Unable to read yolo output image :- {source}")
            if not cv2.imwrite(partial, image, [int(cv2.IMWRITE_JPEG_QUALITY), JPEG_QUALITY]):
                raise OSError(f"Unable to write annotated image :- {destination}")
        os.replace(partial, destination)
    except BaseException:
        try:
            os.unlink(partial)
        except FileNotFoundError:
            pass
        raise


def locate_result(output_dir: Path, store: UploadStore, safe_name: str) -> Optional[str]:
    """Copy the first image yolo produced into the store as `<stem>_annotated.jpg`."""
    try:
        images = find_output_images(output_dir)
    except FileNotFoundError:
        logger.error("Temp directory not found: %s", output_dir)
        return None

    logger.info("Found %d image files: %s", len(images), [path.name for path in images])
    if not images:
        logger.error("No image files found in temp directory")
        return None

    output_name = annotated_filename(safe_name)
    output_path = store.path_for(output_name)
    logger.info("Copying from %s to %s", images[0], output_path)
    _write_as_jpeg(images[0], output_path)

    if not output_path.is_file():
        logger.error("Failed to copy file to %s", output_path)
        return None
    logger.info("Annotated image saved to %s", output_path)
    return output_name


def annotate_upload(settings: Settings, store: UploadStore, input_path: Path, safe_name: str) -> Optional[str]:
    """Full pipeline for one upload. Returns the annotated filename, or None on any failure."""
    logger.info("Running yolo inference on: %s", input_path)
    try:
        with TemporaryDirectory(prefix='yolo-run-', dir=settings.work_dir) as tmpdir:
            project = Path(tmpdir)
            if not run_yolo(settings, input_path, project):
                return None
            return locate_result(project / settings.run_name, store, safe_name)
    except Exception:
        logger.exception("Error during inference on %s", input_path)
        return None
