"""Helpers behind the YOLO upload site: filename handling, the upload store and the yolo CLI pipeline."""
