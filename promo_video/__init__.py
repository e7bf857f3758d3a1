"""Product video worker: turns a listing image plus metadata into a short marketing video."""

__version__ = "0.1.0"
