"""Scale-to-zero reverse proxy that starts backends on demand and stops them when idle."""

__version__ = "0.1.0"
