"""Watch-folder driven remote download pipeline."""

__version__ = "0.1.0"
