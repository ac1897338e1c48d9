"""
Small helpers for locating and rebuilding image markup inside generated HTML.

Blocks are located with regular expressions so the surrounding document stays
byte-for-byte intact; individual tags are parsed with BeautifulSoup.
"""

import html
import re
from typing import Dict, Optional

from bs4 import BeautifulSoup

PICTURE_BLOCK_RE = re.compile(r'<picture(?=[\s>])[^>]*>.*?</picture\s*>', re.IGNORECASE | re.DOTALL)
IMG_TAG_RE = re.compile(r'<img\b[^>]*>', re.IGNORECASE)
TAG_RE = re.compile(r'<(?:"[^"]*"|\'[^\']*\'|[^<>"\'])+>')

# One attribute of a start tag; quoted values are consumed whole
ATTRIBUTE_RE = re.compile(r'\s+([^\s"\'=<>/`]+)(?:\s*=\s*(?:"[^"]*"|\'[^\']*\'|[^\s"\'=<>`]+))?')


def has_attribute(fragment: str, name: str) -> bool:
    """Return True if any tag in the fragment carries the attribute."""
    name = name.lower()
    soup = BeautifulSoup(fragment, 'html.parser')
    return any(name in (key.lower() for key in tag.attrs) for tag in soup.find_all(True))


def strip_attribute(fragment: str, name: str) -> str:
    """Remove an attribute from every tag in the fragment, leaving everything else untouched."""
    name = name.lower()

    def strip_tag(match):
        tag = match.group(0)
        if tag.startswith(('</', '<!')):
            return tag
        return ATTRIBUTE_RE.sub(
            lambda attr: '' if attr.group(1).lower() == name else attr.group(0), tag
        )

    return TAG_RE.sub(strip_tag, fragment)


def parse_img_attributes(fragment: str) -> Optional[Dict[str, str]]:
    """
    Parse the first <img> tag in a fragment.

    Returns:
        Attribute dictionary (multi-valued attributes such as class are joined
        with spaces), or None if the fragment contains no <img>.
    """
    soup = BeautifulSoup(fragment, 'html.parser')
    img = soup.find('img')
    if img is None:
        return None

    attributes = {}
    for key, value in img.attrs.items():
        if isinstance(value, (list, tuple)):
            value = ' '.join(value)
        attributes[key] = value
    return attributes


def render_tag(name: str, attributes: Dict[str, Optional[str]]) -> str:
    """Render a start tag; attributes with a None value are rendered bare."""
    parts = [name]
    for key, value in attributes.items():
        if value is None:
            parts.append(key)
        else:
            parts.append(f'{key}="{html.escape(str(value), quote=True)}"')
    return '<' + ' '.join(parts) + '>'
