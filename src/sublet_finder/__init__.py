"""Match managed UK properties against short-term let listings."""

__version__ = "0.1.0"
