"""
Pictor - A static site builder with responsive image handling.

Pictor renders Markdown, Nunjucks-style and HTML templates with Jinja2, resizes
the images they reference into AVIF, WebP and fallback variants, and rewrites
<picture> markup so every page only points at variants that actually exist.
"""

__version__ = "1.0.0"

from .core import Pictor
from .picture import PictureRewriter, PictureConfig
from .sizes import generate_sizes_from_tailwind

__all__ = ['Pictor', 'PictureRewriter', 'PictureConfig', 'generate_sizes_from_tailwind']
