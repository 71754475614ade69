"""robustfetch: resilient outbound HTTP fetching."""

__version__ = "0.1.0"
