"""
Output HTML post-processing: pretty-printing and blank-line removal.
"""

import logging
import re

from bs4 import BeautifulSoup
from bs4.formatter import HTMLFormatter

logger = logging.getLogger('Formatter')

EMPTY_LINE_RE = re.compile(r'^\s*[\r\n]', re.MULTILINE)


def remove_empty_lines(content):
    """Remove whitespace-only lines from generated HTML."""
    return EMPTY_LINE_RE.sub('', content)


def format_html(content, output_path=None, indent=2):
    """
    Pretty-print an HTML document.

    Only files written as .html are formatted. If formatting fails the content
    is returned unchanged.

    Args:
        content: HTML to format
        output_path: Path the content will be written to
        indent: Spaces per indentation level

    Returns:
        Formatted HTML, or the original content
    """
    if not output_path or not output_path.endswith('.html'):
        return content

    try:
        soup = BeautifulSoup(content, 'html.parser')
        formatted = soup.prettify(formatter=HTMLFormatter(indent=indent))
    except Exception as e:
        logger.warning(f"HTML formatting failed for {output_path}: {e}")
        return content

    if not formatted.strip() and content.strip():
        logger.warning(f"HTML formatting produced empty output for {output_path}; keeping original")
        return content
    return formatted
