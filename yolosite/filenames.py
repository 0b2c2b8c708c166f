from __future__ import annotations

import re

# Anything outside this set becomes an underscore, one for one
_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9_.\-]')
_SAFE_NAME = re.compile(r'[A-Za-z0-9_.\-]+')

ANNOTATED_SUFFIX = '_annotated'
ANNOTATED_EXTENSION = '.jpg'
FALLBACK_FILENAME = 'upload.jpg'


def sanitize_filename(name: str) -> str:
    """Map a user supplied filename to one made only of [A-Za-z0-9_.-].

    Every other character (path separators, spaces, unicode) is replaced by a
    single underscore, so the result has the same length as the input.
    """
    return _UNSAFE_CHARS.sub('_', name or '')


def is_safe_filename(name: str) -> bool:
    # '..' survives sanitizing, so it has to be rejected separately
    if not name or name in {'.', '..'}:
        return False
    return _SAFE_NAME.fullmatch(name) is not None


def annotated_filename(safe_name: str) -> str:
    """Name of the annotated copy for an upload: photo.png -> photo_annotated.jpg."""
    stem, dot, _ = safe_name.rpartition('.')
    if not dot or not stem:
        stem = safe_name
    return f"{stem}{ANNOTATED_SUFFIX}{ANNOTATED_EXTENSION}"
