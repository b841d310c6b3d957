"""KrushiMitra context aggregation and resilience layer."""

__version__ = "1.0.0"
