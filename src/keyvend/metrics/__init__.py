"""In-process metrics collection and export."""
