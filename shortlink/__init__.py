"""URL shortener with click analytics, SVG QR codes and user management."""

__version__ = "0.1.0"
__all__ = ["__version__"]