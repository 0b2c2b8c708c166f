from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_MODEL = 'best.pt'
DEFAULT_YOLO_BIN = 'yolo'
DEFAULT_TASK = 'segment'
# Kept low so the model reports at least something on most images
DEFAULT_CONFIDENCE = 0.01
DEFAULT_RUN_NAME = 'predict'


@dataclass
class Settings:
    """Everything the site needs to know about where files live and how yolo is called."""

    uploads_dir: Path
    model_path: str = DEFAULT_MODEL
    yolo_bin: str = DEFAULT_YOLO_BIN
    task: str = DEFAULT_TASK
    confidence: float = DEFAULT_CONFIDENCE
    run_name: str = DEFAULT_RUN_NAME
    timeout: Optional[float] = None
    work_dir: Optional[Path] = None

    @classmethod
    def from_env(cls, base_dir) -> 'Settings':
        base_dir = Path(base_dir)
        uploads_dir = os.environ.get('YOLOSITE_UPLOADS_DIR') or base_dir / 'public' / 'uploads'
        work_dir = os.environ.get('YOLOSITE_WORK_DIR') or None

        return cls(
            uploads_dir=Path(uploads_dir),
            model_path=os.environ.get('YOLOSITE_MODEL', DEFAULT_MODEL),
            yolo_bin=os.environ.get('YOLOSITE_YOLO_BIN', DEFAULT_YOLO_BIN),
            confidence=_env_float('YOLOSITE_CONF', DEFAULT_CONFIDENCE),
            timeout=_env_float('YOLOSITE_TIMEOUT', None),
            work_dir=Path(work_dir) if work_dir else None,
        )


def _env_float(key: str, default: Optional[float]) -> Optional[float]:
    raw = os.environ.get(key)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be numeric, got {raw!r}")
