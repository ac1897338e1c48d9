"""
Automatic `sizes` attribute generation from Tailwind CSS utility classes.
"""

import re
from typing import Dict, Optional, Union

# Tailwind CSS v4 breakpoints
BREAKPOINTS = {
    'sm': 640,
    'md': 768,
    'lg': 1024,
    'xl': 1280,
    '2xl': 1536,
}

MAX_WIDTH_MAP = {
    'xs': 320,
    'sm': 384,
    'md': 448,
    'lg': 512,
    'xl': 576,
    '2xl': 672,
    '3xl': 768,
    '4xl': 896,
    '5xl': 1024,
    '6xl': 1152,
    '7xl': 1280,
    'full': '100vw',
    'screen': '100vw',
}

DEFAULT_SIZE = '100vw'

SIZE_PATTERN = re.compile(
    r'(?:^|\s)((?:sm|md|lg|xl|2xl):)?(?:w-(\d+)|h-(\d+)|size-(\d+)|max-w-(\w+))'
)


def _format_size(value: Union[int, str]) -> str:
    if isinstance(value, str):
        return value
    return f"{value}px"


def _pixel_value(width, height, size, max_width) -> Optional[Union[int, str]]:
    """Convert one matched utility to pixels (1 unit = 4px) or a viewport keyword."""
    for numeric in (width, height, size):
        if numeric:
            return int(numeric) * 4
    if max_width:
        return MAX_WIDTH_MAP.get(max_width, 320)
    return None


def generate_sizes_from_tailwind(class_list: Optional[str]) -> str:
    """
    Build a `sizes` attribute value from a space-separated class string.

    Breakpoint-prefixed utilities become `(min-width: Npx) Mpx` clauses, sorted
    by descending breakpoint. The unprefixed utility, if any, becomes the
    trailing default clause; otherwise the default is `100vw`. When a prefix
    (or the default) is given more than once, the last occurrence wins.

    Args:
        class_list: Value of an element's class attribute, or None

    Returns:
        Comma-separated sizes string
    """
    if not class_list:
        return DEFAULT_SIZE

    sized_breakpoints: Dict[int, str] = {}
    default_size = None

    for match in SIZE_PATTERN.finditer(class_list):
        prefix, width, height, size, max_width = match.groups()
        pixel_value = _pixel_value(width, height, size, max_width)
        if not pixel_value:
            continue

        if prefix:
            breakpoint = BREAKPOINTS.get(prefix.rstrip(':'))
            if breakpoint:
                sized_breakpoints[breakpoint] = _format_size(pixel_value)
        else:
            default_size = _format_size(pixel_value)

    size_queries = [
        f"(min-width: {breakpoint}px) {sized_breakpoints[breakpoint]}"
        for breakpoint in sorted(sized_breakpoints, reverse=True)
    ]
    size_queries.append(default_size or DEFAULT_SIZE)
    return ', '.join(size_queries)
