"""Service layer wiring the pipeline stages together."""

from .pipeline import DocumentPipeline, PreparedDigest, build_pipeline, get_pipeline

__all__ = ["DocumentPipeline", "PreparedDigest", "build_pipeline", "get_pipeline"]
