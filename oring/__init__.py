"""O-Ring: latest Oura sleep, readiness and activity scores."""

__version__ = "0.1.0"
