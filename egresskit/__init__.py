"""Control plane for a media egress service: admission control, handler supervision, pipeline messages and metrics."""

__version__ = "1.8.2"

__all__ = ["gstwatch", "metrics", "monitor", "promtext", "service", "types"]