"""Heritage desk: review workflow for heritage-site directory records."""

__version__ = "0.1.0"
