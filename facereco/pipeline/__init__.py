"""Per-track orchestration of search and ingestion."""

from facereco.pipeline.recognizer import TrackRecognizer

__all__ = ["TrackRecognizer"]
