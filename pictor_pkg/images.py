"""
Image variant generation and <picture> markup injection.

Source images referenced by rendered pages are resized to a ladder of widths
and re-encoded into modern formats with Pillow. Every file written is recorded
in a VariantManifest so later stages know which variants exist.
"""

import json
import logging
import os
import posixpath
from collections import namedtuple

from PIL import Image, ImageSequence

from .markup import (
    IMG_TAG_RE,
    PICTURE_BLOCK_RE,
    has_attribute,
    parse_img_attributes,
    render_tag,
    strip_attribute,
)
from .sizes import generate_sizes_from_tailwind

Variant = namedtuple('Variant', ['width', 'height', 'path', 'url'])

FORMAT_ALIASES = {
    'jpg': 'jpeg',
    'jpeg': 'jpeg',
    'png': 'png',
    'gif': 'gif',
    'webp': 'webp',
    'avif': 'avif',
}

PIL_FORMATS = {
    'jpeg': 'JPEG',
    'png': 'PNG',
    'gif': 'GIF',
    'webp': 'WEBP',
    'avif': 'AVIF',
}

ANIMATED_FORMATS = ('gif', 'webp')

RASTER_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.gif', '.webp')

DEFAULT_FORMATS = ['avif', 'webp', 'auto']

DEFAULT_WIDTHS = [80, 100, 120, 160, 200, 240, 320, 480, 640, 768, 1024, 1280, 1536, 2048]

DEFAULT_QUALITY = {'png': 90, 'jpeg': 95, 'webp': 90, 'avif': 85}

# Near-lossless settings for logos
LOGO_QUALITY = {'png': 95, 'jpeg': 98, 'webp': 95, 'avif': 90}

logger = logging.getLogger('ImageProcessor')


def is_remote(url):
    return url.startswith(('http://', 'https://', '//', 'data:'))


def probe_dimensions(path):
    """Return (width, height) read from the image header, or None if it cannot be read."""
    try:
        with Image.open(path) as img:
            return img.size
    except (IOError, OSError, ValueError) as e:
        logger.debug(f"Could not read image metadata from {path}: {e}")
        return None


class VariantManifest:
    """Set of generated image files, stored as POSIX paths relative to the output directory."""

    def __init__(self, paths=None):
        self.paths = set(paths or ())

    def add(self, relative_path):
        self.paths.add(relative_path.replace(os.sep, '/').lstrip('/'))

    def __contains__(self, relative_path):
        return relative_path.replace(os.sep, '/').lstrip('/') in self.paths

    def __len__(self):
        return len(self.paths)

    def listdir(self, relative_dir):
        """List file names recorded directly inside a directory."""
        relative_dir = relative_dir.replace(os.sep, '/').strip('/')
        names = []
        for path in self.paths:
            directory, name = posixpath.split(path)
            if directory == relative_dir:
                names.append(name)
        return sorted(names)

    def save(self, path):
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump({'variants': sorted(self.paths)}, f, indent=2)

    @classmethod
    def load(cls, path):
        """Load a manifest written by save(); return None if it is missing or invalid."""
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            return cls(data.get('variants', []))
        except FileNotFoundError:
            return None
        except (IOError, OSError, ValueError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable variant manifest {path}: {e}")
            return None


class ImageTransformConfig:
    """Settings for variant generation and the markup it injects."""

    def __init__(self, input_dir='src', output_dir='_site', images_subdir='images', url_path='/images/',
                 formats=None, widths=None, quality=None, logo_quality=None, logo_marker='/logo/',
                 loading='lazy', decoding='async', ignore_attribute='data-pictor-ignore'):
        self.input_dir = input_dir
        self.output_dir = output_dir
        self.images_subdir = images_subdir
        self.url_path = url_path if url_path.endswith('/') else url_path + '/'
        self.formats = list(formats or DEFAULT_FORMATS)
        self.widths = sorted(set(widths or DEFAULT_WIDTHS))
        self.quality = dict(DEFAULT_QUALITY, **(quality or {}))
        self.logo_quality = dict(LOGO_QUALITY, **(logo_quality or {}))
        self.logo_marker = logo_marker
        self.loading = loading
        self.decoding = decoding
        self.ignore_attribute = ignore_attribute

    @property
    def source_images_dir(self):
        return os.path.join(self.input_dir, self.images_subdir)

    @property
    def output_images_dir(self):
        return os.path.join(self.output_dir, self.images_subdir)


class ImageProcessor:
    def __init__(self, config=None, manifest=None):
        self.config = config or ImageTransformConfig()
        self.manifest = manifest if manifest is not None else VariantManifest()
        self.logger = logger
        self.images_processed = 0
        self._processed = {}
        self._unsupported_formats = set()

    def source_format(self, source_path):
        ext = os.path.splitext(source_path)[1].lower().lstrip('.')
        return FORMAT_ALIASES.get(ext, 'jpeg')

    def output_formats(self, source_path):
        """Resolve the configured formats, replacing 'auto' with the source's own format."""
        formats = []
        for fmt in self.config.formats:
            fmt = self.source_format(source_path) if fmt == 'auto' else FORMAT_ALIASES.get(fmt, fmt)
            if fmt not in formats:
                formats.append(fmt)
        return formats

    def target_widths(self, original_width):
        """Configured widths no larger than the original; the original width if none fit."""
        widths = [w for w in self.config.widths if w <= original_width]
        return widths or [original_width]

    def quality_for(self, source_path, fmt):
        table = self.config.logo_quality if self.config.logo_marker in source_path.replace(os.sep, '/') \
            else self.config.quality
        return table.get(fmt)

    def variant_location(self, source_path, width, fmt):
        """
        Compute where a variant is written and the URL it is served from.

        The folder structure below the source images directory is preserved:
        src/images/team/alice.jpg -> _site/images/team/alice-480.webp

        Returns:
            Tuple of (output file path, URL)
        """
        relative = os.path.relpath(os.path.abspath(source_path), os.path.abspath(self.config.source_images_dir))
        sub_dir = os.path.dirname(relative)
        if sub_dir.startswith('..'):
            sub_dir = ''
        name = os.path.splitext(os.path.basename(source_path))[0]
        filename = f"{name}-{width}.{fmt}"

        output_path = os.path.join(self.config.output_images_dir, sub_dir, filename)
        url = self.config.url_path + posixpath.join(sub_dir.replace(os.sep, '/'), filename).lstrip('/')
        return output_path, url

    def _save_options(self, source_path, fmt):
        quality = self.quality_for(source_path, fmt)
        if fmt == 'jpeg':
            return {'quality': quality, 'progressive': True, 'optimize': True}
        if fmt == 'png':
            return {'optimize': True, 'compress_level': 9}
        if fmt == 'webp':
            return {'quality': quality, 'method': 6}
        if fmt == 'avif':
            return {'quality': quality, 'speed': 4, 'subsampling': '4:2:0'}
        return {}

    def _prepare_frame(self, frame, fmt, size):
        if frame.size != size:
            frame = frame.resize(size, Image.LANCZOS)
        if fmt == 'jpeg' and frame.mode != 'RGB':
            frame = frame.convert('RGB')
        elif fmt in ('webp', 'avif') and frame.mode not in ('RGB', 'RGBA'):
            frame = frame.convert('RGBA')
        return frame

    def _save_variant(self, img, source_path, output_path, size, fmt):
        """Encode one variant; return False if the format cannot be written."""
        if fmt in self._unsupported_formats:
            return False

        options = self._save_options(source_path, fmt)
        os.makedirs(os.path.dirname(output_path), exist_ok=True)
        try:
            if getattr(img, 'is_animated', False) and fmt in ANIMATED_FORMATS:
                frames = [self._prepare_frame(frame.copy(), fmt, size) for frame in ImageSequence.Iterator(img)]
                frames[0].save(output_path, PIL_FORMATS[fmt], save_all=True, append_images=frames[1:],
                               loop=img.info.get('loop', 0), duration=img.info.get('duration', 100), **options)
            else:
                img.seek(0)
                frame = self._prepare_frame(img, fmt, size)
                frame.save(output_path, PIL_FORMATS[fmt], **options)
        except KeyError:
            self.logger.warning(f"Pillow has no {fmt.upper()} encoder; skipping {fmt} variants")
            self._unsupported_formats.add(fmt)
            self._remove_partial(output_path)
            return False
        except (IOError, OSError, ValueError) as e:
            self.logger.warning(f"Failed to write {output_path}: {e}")
            self._remove_partial(output_path)
            return False
        return True

    def _remove_partial(self, path):
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError as e:
                self.logger.debug(f"Could not remove partial file {path}: {e}")

    def generate_variants(self, source_path):
        """
        Resize and re-encode a source image into every configured width and format.

        Results are cached per source path, so an image used on many pages is
        only processed once per build.

        Returns:
            Dictionary mapping format to a list of Variant tuples sorted by width.
            Empty if the source cannot be read.
        """
        key = os.path.abspath(source_path)
        if key in self._processed:
            return self._processed[key]

        results = {}
        try:
            with Image.open(source_path) as img:
                original_width, original_height = img.size
                for fmt in self.output_formats(source_path):
                    variants = []
                    for width in self.target_widths(original_width):
                        height = max(1, round(original_height * width / original_width))
                        output_path, url = self.variant_location(source_path, width, fmt)
                        if not self._save_variant(img, source_path, output_path, (width, height), fmt):
                            break
                        self.manifest.add(os.path.relpath(output_path, self.config.output_dir))
                        variants.append(Variant(width, height, output_path, url))
                    if variants:
                        results[fmt] = variants
        except (IOError, OSError, ValueError) as e:
            self.logger.warning(f"Could not process image {source_path}: {e}")
            results = {}

        if results:
            self.images_processed += 1
            self.logger.debug(f"Generated {sum(len(v) for v in results.values())} variants for {source_path}")
        self._processed[key] = results
        return results

    def resolve_source(self, src, page_path):
        """
        Map an <img src> to a file in the input directory.

        Returns None for remote or non-raster sources and for paths that escape
        the input directory.
        """
        if not src or is_remote(src):
            return None
        path_part = src.split('?', 1)[0].split('#', 1)[0]
        if not path_part.lower().endswith(RASTER_EXTENSIONS):
            return None

        if path_part.startswith('/'):
            candidate = os.path.join(self.config.input_dir, path_part.lstrip('/'))
        else:
            base_dir = os.path.dirname(page_path) if page_path else self.config.input_dir
            candidate = os.path.join(base_dir, path_part)
        candidate = os.path.normpath(candidate)

        input_root = os.path.abspath(self.config.input_dir)
        if os.path.commonpath([os.path.abspath(candidate), input_root]) != input_root:
            self.logger.warning(f"Skipping image outside input directory: {src}")
            return None
        return candidate

    def build_picture(self, attributes, variants, fallback_format):
        """Render the <picture> markup for one image from its generated variants."""
        sizes = attributes.get('sizes') or generate_sizes_from_tailwind(attributes.get('class'))

        sources = []
        for fmt, fmt_variants in variants.items():
            if fmt == fallback_format:
                continue
            srcset = ', '.join(f"{v.url} {v.width}w" for v in fmt_variants)
            sources.append(render_tag('source', {'type': f"image/{fmt}", 'srcset': srcset, 'sizes': sizes}))

        fallback = variants.get(fallback_format) or next(iter(variants.values()))
        largest = fallback[-1]

        img_attributes = {'src': fallback[0].url, 'alt': attributes.get('alt', '')}
        for key, value in attributes.items():
            if key not in ('src', 'alt', 'srcset', 'sizes', 'width', 'height'):
                img_attributes[key] = value
        img_attributes.setdefault('loading', self.config.loading)
        img_attributes.setdefault('decoding', self.config.decoding)
        if len(fallback) > 1:
            img_attributes['srcset'] = ', '.join(f"{v.url} {v.width}w" for v in fallback)
            img_attributes['sizes'] = sizes
        img_attributes['width'] = str(largest.width)
        img_attributes['height'] = str(largest.height)

        return '<picture>' + ''.join(sources) + render_tag('img', img_attributes) + '</picture>'

    def _transform_img(self, tag, page_path):
        if has_attribute(tag, self.config.ignore_attribute):
            return strip_attribute(tag, self.config.ignore_attribute)

        attributes = parse_img_attributes(tag)
        if not attributes:
            return None
        source_path = self.resolve_source(attributes.get('src'), page_path)
        if not source_path:
            return None
        if not os.path.isfile(source_path):
            self.logger.warning(f"Image not found: {attributes.get('src')} (looked in {source_path})")
            return None

        variants = self.generate_variants(source_path)
        if not variants:
            return None
        return self.build_picture(attributes, variants, self.source_format(source_path))

    def transform_html(self, content, page_path=None):
        """
        Replace local raster <img> tags with responsive <picture> markup.

        Images already inside a <picture> are left for the picture rewriter.
        """
        picture_spans = [m.span() for m in PICTURE_BLOCK_RE.finditer(content)]

        replacements = []
        for match in IMG_TAG_RE.finditer(content):
            start = match.start()
            if any(span_start <= start < span_end for span_start, span_end in picture_spans):
                continue
            replacement = self._transform_img(match.group(0), page_path)
            if replacement is not None and replacement != match.group(0):
                replacements.append((match.start(), match.end(), replacement))

        if not replacements:
            return content

        parts = []
        position = 0
        for start, end, replacement in replacements:
            parts.append(content[position:start])
            parts.append(replacement)
            position = end
        parts.append(content[position:])
        return ''.join(parts)
