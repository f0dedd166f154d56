"""Text and digest helpers."""
