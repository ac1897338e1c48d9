"""
Responsive <picture> rewriting.

Generated HTML is scanned for <picture> blocks. Each block is rebuilt so that it
only references image variants that exist in the output directory, with one
<source> per breakpoint for each format (AVIF, WebP, then the original raster
format) and a fallback <img> carrying intrinsic dimensions.
"""

import logging
import os
import posixpath
import re
from collections import namedtuple

from .images import is_remote, probe_dimensions
from .markup import PICTURE_BLOCK_RE, has_attribute, parse_img_attributes, render_tag, strip_attribute

Breakpoint = namedtuple('Breakpoint', ['width', 'min_width'])

PictureSource = namedtuple('PictureSource', ['url_dir', 'relative_dir', 'base', 'extension', 'fallback_format'])

# (image width, minimum viewport width); the entry without a minimum is the default
DEFAULT_BREAKPOINTS = (
    (2560, 1920),
    (1920, 1366),
    (1366, 1024),
    (1024, 480),
    (480, None),
)

FALLBACK_FORMATS = {
    'png': 'png',
    'jpg': 'jpeg',
    'jpeg': 'jpeg',
    'gif': 'gif',
}

# Extensions an unsuffixed original may carry for each fallback format
SOURCE_EXTENSIONS = {
    'png': ('.png',),
    'jpeg': ('.jpg', '.jpeg'),
    'gif': ('.gif',),
}

PRESERVED_IMG_ATTRIBUTES = ('class', 'loading', 'decoding', 'fetchpriority')

WIDTH_SUFFIX_RE = re.compile(r'[_-]\d+$')
PICTURE_OPEN_RE = re.compile(r'^<picture(?=[\s>])[^>]*>', re.IGNORECASE)


class PictureConfig:
    """Width ladder, format priority and escape-hatch marker used by the rewriter."""

    def __init__(self, breakpoints=None, formats=('avif', 'webp'), separators=('_', '-'),
                 ignore_attribute='data-pictor-ignore'):
        if breakpoints is None:
            breakpoints = DEFAULT_BREAKPOINTS
        if isinstance(breakpoints, dict):
            breakpoints = breakpoints.items()

        self.min_widths = {}
        for width, min_width in breakpoints:
            self.min_widths[int(width)] = int(min_width) if min_width is not None else None

        if list(self.min_widths.values()).count(None) > 1:
            raise ValueError("At most one breakpoint may omit its minimum viewport width")

        self.formats = tuple(formats)
        self.separators = tuple(separators)
        self.ignore_attribute = ignore_attribute

    @property
    def widths(self):
        return sorted(self.min_widths)


def build_breakpoint_table(widths, config=None):
    """
    Build the breakpoint table for the widths that survived probing.

    Ladder widths take their configured minimum viewport width. Widths outside
    the ladder, and any entry that would break the ordering, take the next
    smaller surviving width as their minimum; the smallest width may have none.

    Returns:
        List of Breakpoint tuples, largest width first. Minimum widths are
        strictly descending and at most one entry has no minimum.
    """
    config = config or PictureConfig()
    table = []
    previous_width = None
    previous_min = None

    for width in sorted(set(widths)):
        min_width = config.min_widths.get(width, previous_width)
        if previous_width is not None:
            if min_width is None or (previous_min is not None and min_width <= previous_min):
                min_width = previous_width
        table.append(Breakpoint(width, min_width))
        previous_width, previous_min = width, min_width

    table.reverse()
    return table


class PictureRewriter:
    def __init__(self, output_dir, config=None, source_dir=None, manifest=None, path_prefix='/'):
        self.output_dir = output_dir
        self.config = config or PictureConfig()
        self.source_dir = source_dir
        self.manifest = manifest
        self.path_prefix = path_prefix or '/'
        self.pictures_rewritten = 0
        self.logger = logging.getLogger('PictureRewriter')

    def _exists(self, relative_path):
        if self.manifest is not None:
            return relative_path in self.manifest
        return os.path.isfile(os.path.join(self.output_dir, relative_path))

    def _listdir(self, relative_dir):
        if self.manifest is not None:
            return self.manifest.listdir(relative_dir)
        try:
            return sorted(os.listdir(os.path.join(self.output_dir, relative_dir)))
        except OSError as e:
            self.logger.debug(f"Cannot list {relative_dir or '.'} in {self.output_dir}: {e}")
            return []

    def _relative_dir(self, url_dir, document_path):
        """Translate the directory part of an image URL into a path relative to the output directory."""
        if url_dir.startswith('/'):
            path = url_dir.lstrip('/')
            prefix = self.path_prefix.strip('/')
            if prefix and (path == prefix or path.startswith(prefix + '/')):
                path = path[len(prefix):].lstrip('/')
            relative = posixpath.normpath(path) if path else ''
        elif document_path:
            document_dir = os.path.relpath(os.path.dirname(os.path.abspath(document_path)),
                                           os.path.abspath(self.output_dir))
            relative = posixpath.normpath(posixpath.join(document_dir.replace(os.sep, '/'), url_dir))
        else:
            relative = posixpath.normpath(url_dir) if url_dir else ''

        if relative == '.':
            relative = ''
        if relative == '..' or relative.startswith('../'):
            return None
        return relative

    def locate(self, src, document_path=None):
        """
        Work out where the variants of an image live.

        Returns:
            PictureSource, or None if the image is remote, outside the output
            directory, or not in a supported raster format.
        """
        if is_remote(src):
            self.logger.debug(f"Skipping remote image {src}")
            return None

        path_part = src.split('?', 1)[0].split('#', 1)[0]
        url_dir, filename = posixpath.split(path_part)
        stem, extension = posixpath.splitext(filename)
        fallback_format = FALLBACK_FORMATS.get(extension.lower().lstrip('.'))
        if not fallback_format:
            self.logger.debug(f"Unsupported image format for {src}")
            return None

        relative_dir = self._relative_dir(url_dir, document_path)
        if relative_dir is None:
            self.logger.debug(f"Image {src} resolves outside the output directory")
            return None

        base = WIDTH_SUFFIX_RE.sub('', stem)
        return PictureSource(url_dir, relative_dir, base, extension, fallback_format)

    def find_variant_widths(self, source):
        """
        Find the widths for which a fallback-format variant exists.

        Ladder widths are probed first, trying each separator. If none exist,
        the directory is listed and widths are parsed from matching file names.

        Returns:
            Dictionary mapping width to the separator used in its file name.
        """
        found = {}
        for width in self.config.widths:
            for separator in self.config.separators:
                name = f"{source.base}{separator}{width}.{source.fallback_format}"
                if self._exists(posixpath.join(source.relative_dir, name)):
                    found[width] = separator
                    break
        if found:
            return found

        separators = ''.join(re.escape(s) for s in self.config.separators)
        pattern = re.compile(
            re.escape(source.base) + f"([{separators}])(\\d+)\\." + re.escape(source.fallback_format) + '$'
        )
        for name in self._listdir(source.relative_dir):
            if not name.startswith(source.base):
                continue
            match = pattern.match(name)
            if match:
                found.setdefault(int(match.group(2)), match.group(1))
        return found

    def _variant_name(self, source, separator, width, fmt):
        return f"{source.base}{separator}{width}.{fmt}"

    def _probe_intrinsic_size(self, source, filename, found, table):
        candidates = []
        names = [source.base + ext for ext in SOURCE_EXTENSIONS[source.fallback_format]]
        # Width-suffixed names are variants; only the smallest surviving one is probed
        if not WIDTH_SUFFIX_RE.search(posixpath.splitext(filename)[0]):
            names.append(filename)
        for name in names:
            candidates.append(os.path.join(self.output_dir, source.relative_dir, name))
            if self.source_dir:
                candidates.append(os.path.join(self.source_dir, source.relative_dir, name))
        if table:
            smallest = table[-1].width
            candidates.append(os.path.join(
                self.output_dir, source.relative_dir,
                self._variant_name(source, found[smallest], smallest, source.fallback_format),
            ))

        seen = set()
        for path in candidates:
            if path in seen or not os.path.isfile(path):
                continue
            seen.add(path)
            dimensions = probe_dimensions(path)
            if dimensions:
                return dimensions
        return None

    def rewrite_block(self, block, document_path=None):
        """Rewrite a single <picture>...</picture> block; return it unchanged if nothing can be done."""
        ignore = self.config.ignore_attribute
        if has_attribute(block, ignore):
            return strip_attribute(block, ignore)

        attributes = parse_img_attributes(block)
        if not attributes or not attributes.get('src'):
            return block

        src = attributes['src']
        source = self.locate(src, document_path)
        if source is None:
            return block

        found = self.find_variant_widths(source)
        table = build_breakpoint_table(found, self.config)

        sources = []
        img_src = None
        if table:
            formats = [fmt for fmt in self.config.formats if fmt != source.fallback_format]
            formats.append(source.fallback_format)
            for fmt in formats:
                for breakpoint in table:
                    name = self._variant_name(source, found[breakpoint.width], breakpoint.width, fmt)
                    if fmt != source.fallback_format and not self._exists(posixpath.join(source.relative_dir, name)):
                        continue
                    url = posixpath.join(source.url_dir, name)
                    source_attributes = {'type': f"image/{fmt}", 'srcset': url}
                    if breakpoint.min_width is not None:
                        source_attributes['media'] = f"(min-width:{breakpoint.min_width}px)"
                    elif fmt == source.fallback_format:
                        img_src = url
                    sources.append(render_tag('source', source_attributes))

            if img_src is None:
                smallest = table[-1].width
                img_src = posixpath.join(
                    source.url_dir,
                    self._variant_name(source, found[smallest], smallest, source.fallback_format),
                )
        else:
            self.logger.warning(f"No resized variants found for {src}; keeping original source")
            img_src = src

        img_attributes = {'src': img_src, 'alt': attributes.get('alt', '')}
        for key in PRESERVED_IMG_ATTRIBUTES:
            if attributes.get(key):
                img_attributes[key] = attributes[key]

        filename = posixpath.basename(src.split('?', 1)[0].split('#', 1)[0])
        dimensions = self._probe_intrinsic_size(source, filename, found, table)
        if dimensions:
            img_attributes['width'] = str(dimensions[0])
            img_attributes['height'] = str(dimensions[1])
        else:
            self.logger.debug(f"Could not determine intrinsic size for {src}")

        opening = PICTURE_OPEN_RE.match(block)
        lines = [opening.group(0) if opening else '<picture>']
        lines.extend(sources)
        lines.append(render_tag('img', img_attributes))
        lines.append('</picture>')
        return '\n'.join(lines)

    def rewrite(self, content, document_path=None):
        """
        Rewrite every <picture> block in a document.

        All replacements are computed against the original text and spliced in
        one pass. A block that fails to rewrite is left as it was.

        Args:
            content: Generated HTML
            document_path: Output path of the document, used to resolve relative image URLs

        Returns:
            The rewritten HTML
        """
        replacements = []
        for match in PICTURE_BLOCK_RE.finditer(content):
            block = match.group(0)
            try:
                new_block = self.rewrite_block(block, document_path)
            except Exception as e:
                self.logger.warning(f"Failed to rewrite <picture> at offset {match.start()}: {e}")
                continue
            if new_block != block:
                replacements.append((match.start(), match.end(), new_block))

        if not replacements:
            return content

        parts = []
        position = 0
        for start, end, new_block in replacements:
            parts.append(content[position:start])
            parts.append(new_block)
            position = end
        parts.append(content[position:])

        self.pictures_rewritten += len(replacements)
        return ''.join(parts)
