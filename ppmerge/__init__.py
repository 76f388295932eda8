"""Merge pprof, goroutine and raw profiles into one compact container and unpack them again."""

__version__ = "0.1.0"

__all__ = ["wire", "profile", "goroutine", "merge", "goroutine_merger", "byte_merger"]