"""
llmstash - local content-addressed store for large-model artifacts.

Mirrors model manifests and blobs from an OCI-style registry, verifies
them by SHA256 and keeps searchable metadata in SQLite.
"""

__version__ = "1.0.0"
