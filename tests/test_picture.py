"""Tests for responsive <picture> rewriting."""

import logging
import re
import pytest
from pathlib import Path
from unittest.mock import patch

import os
import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from pictor_pkg.images import VariantManifest
from pictor_pkg.markup import has_attribute, strip_attribute
from pictor_pkg.picture import (
    Breakpoint,
    PictureConfig,
    PictureRewriter,
    build_breakpoint_table,
)
from conftest import write_image

PICTURE = ('<picture><source srcset="/images/photo-1024.webp" type="image/webp">'
           '<img src="/images/photo-1024.jpeg" alt="A photo" class="w-full md:w-64" '
           'loading="lazy" decoding="async" fetchpriority="high" style="color: red"></picture>')


def count_sources(html, fmt):
    return len(re.findall(r'<source[^>]*type="image/%s"' % fmt, html))


class TestBreakpointTable:
    """Test cases for build_breakpoint_table."""

    def test_ladder_widths_use_configured_minimums(self):
        """Ladder widths take their configured minimum viewport width."""
        table = build_breakpoint_table([480, 1024, 2560])
        assert table == [Breakpoint(2560, 1920), Breakpoint(1024, 480), Breakpoint(480, None)]

    def test_all_breakpointed(self):
        """Without the default width every entry keeps a minimum."""
        table = build_breakpoint_table([1024, 1920])
        assert table == [Breakpoint(1920, 1366), Breakpoint(1024, 480)]

    def test_listing_widths_chain_to_next_smaller(self):
        """Widths outside the ladder use the next smaller width as their minimum."""
        table = build_breakpoint_table([300, 700, 900])
        assert table == [Breakpoint(900, 700), Breakpoint(700, 300), Breakpoint(300, None)]

    def test_invariants_hold_for_mixed_widths(self):
        """At most one default entry and strictly descending minimums."""
        table = build_breakpoint_table([300, 480, 1024, 1100, 2560])
        minimums = [bp.min_width for bp in table]
        assert minimums.count(None) == 1
        assert minimums[-1] is None
        defined = minimums[:-1]
        assert all(a > b for a, b in zip(defined, defined[1:]))
        assert [bp.width for bp in table] == [2560, 1100, 1024, 480, 300]

    def test_empty(self):
        assert build_breakpoint_table([]) == []

    def test_config_rejects_two_defaults(self):
        """A breakpoint table may only have one entry without a minimum."""
        with pytest.raises(ValueError, match="At most one breakpoint"):
            PictureConfig(breakpoints={480: None, 1024: None})

    def test_config_accepts_string_keys(self):
        """Breakpoints loaded from JSON arrive with string keys."""
        config = PictureConfig(breakpoints={'800': '400', '400': None})
        assert config.widths == [400, 800]
        assert config.min_widths[800] == 400


class TestPictureRewriter:
    """Test cases for PictureRewriter."""

    def test_surviving_widths_only(self, mock_output_dir, make_variants):
        """Variants at 480 and 1024 give two sources per format and nothing at 1920."""
        make_variants(widths=(480, 1024))
        rewriter = PictureRewriter(mock_output_dir)

        result = rewriter.rewrite(PICTURE)

        for fmt in ('avif', 'webp', 'jpeg'):
            assert count_sources(result, fmt) == 2
        assert '1920' not in result
        assert '<source type="image/avif" srcset="/images/photo_1024.avif" media="(min-width:480px)">' in result
        assert '<source type="image/avif" srcset="/images/photo_480.avif">' in result

    def test_format_priority_order(self, mock_output_dir, make_variants):
        """AVIF sources come before WebP, which come before the fallback format."""
        make_variants(widths=(480, 1024))
        result = PictureRewriter(mock_output_dir).rewrite(PICTURE)

        last_avif = result.rfind('image/avif')
        first_webp = result.find('image/webp')
        last_webp = result.rfind('image/webp')
        first_jpeg = result.find('image/jpeg')
        assert last_avif < first_webp
        assert last_webp < first_jpeg

    def test_default_entry_seeds_img_src(self, mock_output_dir, make_variants):
        """The fallback-format default source becomes the <img> src."""
        make_variants(widths=(480, 1024))
        result = PictureRewriter(mock_output_dir).rewrite(PICTURE)
        assert '<img src="/images/photo_480.jpeg"' in result

    def test_all_breakpointed_uses_smallest_width(self, mock_output_dir, make_variants):
        """Without a default entry the smallest surviving width is the fallback."""
        make_variants(widths=(1024, 1920))
        result = PictureRewriter(mock_output_dir).rewrite(PICTURE)

        assert '<img src="/images/photo_1024.jpeg"' in result
        assert all('media=' in tag for tag in re.findall(r'<source[^>]*>', result))

    def test_no_variants_keeps_original_src(self, mock_output_dir):
        """With zero surviving variants the original src is kept and no sources are emitted."""
        result = PictureRewriter(mock_output_dir).rewrite(PICTURE)

        assert '<img src="/images/photo-1024.jpeg"' in result
        assert '<source' not in result

    def test_no_variants_is_idempotent(self, mock_output_dir):
        """Rewriting a block without variants on disk twice gives the same output."""
        rewriter = PictureRewriter(mock_output_dir)
        once = rewriter.rewrite(PICTURE)
        assert rewriter.rewrite(once) == once

    def test_with_variants_is_idempotent(self, mock_output_dir, make_variants):
        """Rewriting its own output does not change it while variants stay the same."""
        make_variants(widths=(480, 1024, 1366))
        write_image(Path(mock_output_dir) / 'images' / 'photo.jpg', size=(1600, 1000), format='JPEG')
        rewriter = PictureRewriter(mock_output_dir)

        once = rewriter.rewrite(PICTURE)
        assert rewriter.rewrite(once) == once

    def test_variant_src_without_original_is_idempotent(self, mock_output_dir, make_variants):
        """Without an original on disk, a variant src still gives stable dimensions."""
        make_variants(widths=(480, 1024))
        block = '<picture><img src="/images/photo_1024.jpeg" alt="A photo"></picture>'
        rewriter = PictureRewriter(mock_output_dir)

        once = rewriter.rewrite(block)

        assert '<img src="/images/photo_480.jpeg"' in once
        assert 'width="480" height="320"' in once
        assert rewriter.rewrite(once) == once

    def test_marker_text_in_alt_is_not_a_marker(self, mock_output_dir, make_variants):
        """Only an attribute named like the marker opts out; the same words in a value do not."""
        make_variants(widths=(480, 1024))
        block = '<picture><img src="/images/photo.jpg" alt="add data-pictor-ignore to opt out"></picture>'

        result = PictureRewriter(mock_output_dir).rewrite(block)

        assert 'alt="add data-pictor-ignore to opt out"' in result
        assert '<img src="/images/photo_480.jpeg"' in result
        assert count_sources(result, 'webp') == 2

    def test_strip_marker_keeps_quoted_values(self):
        fragment = ('<picture data-pictor-ignore title=\'a > b data-pictor-ignore\'>'
                    '<img src="/images/a.jpg" alt="data-pictor-ignore" DATA-PICTOR-IGNORE></picture>')

        assert has_attribute('<img alt="data-pictor-ignore">', 'data-pictor-ignore') is False
        assert has_attribute(fragment, 'data-pictor-ignore') is True
        assert strip_attribute(fragment, 'data-pictor-ignore') == (
            '<picture title=\'a > b data-pictor-ignore\'>'
            '<img src="/images/a.jpg" alt="data-pictor-ignore"></picture>'
        )

    def test_custom_element_is_not_a_picture(self, mock_output_dir, make_variants):
        """Elements such as <picture-card> are not treated as <picture> blocks."""
        make_variants(widths=(480,))
        document = '<picture-card><img src="/images/photo.jpg" alt=""></picture-card>'

        assert PictureRewriter(mock_output_dir).rewrite(document) == document

    def test_ignore_marker(self, mock_output_dir, make_variants):
        """An ignored block loses the marker and is otherwise byte-identical."""
        make_variants(widths=(480, 1024))
        block = ('<picture data-pictor-ignore class="hero">\n  <source srcset="/images/photo_480.webp">\n'
                 '  <img src="/images/photo_480.jpeg" alt="x">\n</picture>')
        document = f"<p>before</p>\n{block}\n<p>after</p>"

        result = PictureRewriter(mock_output_dir).rewrite(document)

        assert result == document.replace(' data-pictor-ignore', '')

    def test_ignore_marker_with_value(self, mock_output_dir):
        block = '<picture data-pictor-ignore="true"><img src="/images/photo.jpg" alt=""></picture>'
        result = PictureRewriter(mock_output_dir).rewrite(block)
        assert result == '<picture><img src="/images/photo.jpg" alt=""></picture>'

    def test_custom_ignore_attribute(self, mock_output_dir):
        config = PictureConfig(ignore_attribute='x-static:ignore')
        block = '<picture x-static:ignore><img src="/images/photo.jpg" alt=""></picture>'
        result = PictureRewriter(mock_output_dir, config).rewrite(block)
        assert result == '<picture><img src="/images/photo.jpg" alt=""></picture>'

    @pytest.mark.parametrize('block', [
        '<picture><img src="/images/icon.svg" alt=""></picture>',
        '<picture><img src="/images/photo.webp" alt=""></picture>',
        '<picture><img src="https://example.com/photo.jpg" alt=""></picture>',
        '<picture><img alt="no source"></picture>',
        '<picture><source srcset="/images/a.webp"></picture>',
        '<picture><img src="../../outside/photo.jpg" alt=""></picture>',
    ])
    def test_unsupported_blocks_unchanged(self, mock_output_dir, block):
        """Unsupported formats, remote images and blocks without an <img src> are left alone."""
        document = f"<div>{block}</div>"
        assert PictureRewriter(mock_output_dir).rewrite(document) == document

    def test_preserves_selected_attributes(self, mock_output_dir, make_variants):
        """class, loading, decoding and fetchpriority survive; other attributes are rebuilt away."""
        make_variants(widths=(480,))
        result = PictureRewriter(mock_output_dir).rewrite(PICTURE)

        assert 'alt="A photo"' in result
        assert 'class="w-full md:w-64"' in result
        assert 'loading="lazy"' in result
        assert 'decoding="async"' in result
        assert 'fetchpriority="high"' in result
        assert 'style=' not in result

    def test_alt_is_escaped_and_always_present(self, mock_output_dir):
        block = '<picture><img src="/images/a.png" alt="Say &quot;hi&quot; &amp; wave"></picture>'
        result = PictureRewriter(mock_output_dir).rewrite(block)
        assert 'alt="Say &quot;hi&quot; &amp; wave"' in result

        result = PictureRewriter(mock_output_dir).rewrite('<picture><img src="/images/a.png"></picture>')
        assert 'alt=""' in result

    def test_picture_attributes_kept(self, mock_output_dir, make_variants):
        """The opening <picture> tag is preserved."""
        make_variants(widths=(480,))
        block = '<picture class="hero"><img src="/images/photo.jpg" alt=""></picture>'
        result = PictureRewriter(mock_output_dir).rewrite(block)
        assert result.startswith('<picture class="hero">')
        assert result.endswith('</picture>')

    def test_dash_separator_variants(self, mock_output_dir, make_variants):
        """Variants named base-width.format are found and referenced with the same separator."""
        make_variants(widths=(480, 1024), separator='-')
        result = PictureRewriter(mock_output_dir).rewrite(PICTURE)

        assert 'srcset="/images/photo-1024.avif"' in result
        assert '<img src="/images/photo-480.jpeg"' in result

    def test_directory_listing_fallback(self, mock_output_dir, make_variants):
        """Widths outside the ladder are discovered by listing the directory."""
        make_variants(widths=(300, 700))
        make_variants(base='photograph', widths=(600,))
        result = PictureRewriter(mock_output_dir).rewrite(PICTURE)

        assert 'srcset="/images/photo_700.webp" media="(min-width:300px)"' in result
        assert '<img src="/images/photo_300.jpeg"' in result
        assert 'photograph' not in result

    def test_missing_modern_format_is_skipped(self, mock_output_dir, make_variants):
        """Sources are only emitted for modern-format files that exist."""
        make_variants(widths=(480, 1024), formats=('webp', 'jpeg'))
        result = PictureRewriter(mock_output_dir).rewrite(PICTURE)

        assert count_sources(result, 'avif') == 0
        assert count_sources(result, 'webp') == 2
        assert count_sources(result, 'jpeg') == 2

    def test_png_fallback(self, mock_output_dir, make_variants):
        make_variants(base='logo', widths=(480,), formats=('webp', 'png'))
        block = '<picture><img src="/images/logo.png" alt="Logo"></picture>'
        result = PictureRewriter(mock_output_dir).rewrite(block)

        assert 'type="image/png"' in result
        assert '<img src="/images/logo_480.png"' in result

    def test_intrinsic_size_from_original(self, mock_output_dir, make_variants):
        """Width and height come from the unsuffixed original when it exists."""
        make_variants(widths=(480, 1024))
        write_image(Path(mock_output_dir) / 'images' / 'photo.jpg', size=(1600, 1000), format='JPEG')
        result = PictureRewriter(mock_output_dir).rewrite(PICTURE)

        assert 'width="1600" height="1000"' in result

    def test_intrinsic_size_from_source_dir(self, temp_dir, mock_output_dir, make_variants):
        """The original is also looked up in the source directory."""
        make_variants(widths=(480,))
        source_dir = Path(temp_dir) / 'src'
        write_image(source_dir / 'images' / 'photo.jpg', size=(900, 600), format='JPEG')
        result = PictureRewriter(mock_output_dir, source_dir=str(source_dir)).rewrite(PICTURE)

        assert 'width="900" height="600"' in result

    def test_intrinsic_size_from_smallest_variant(self, mock_output_dir, make_variants):
        """Without an original, the smallest surviving variant is probed."""
        make_variants(widths=(480, 1024))
        result = PictureRewriter(mock_output_dir).rewrite(PICTURE)

        assert 'width="480" height="320"' in result

    def test_intrinsic_size_omitted_when_unreadable(self, mock_output_dir):
        """Unreadable files mean no width/height, not an error."""
        images = Path(mock_output_dir) / 'images'
        images.mkdir()
        (images / 'broken_480.png').write_bytes(b'not an image')
        block = '<picture><img src="/images/broken.png" alt=""></picture>'

        result = PictureRewriter(mock_output_dir).rewrite(block)

        assert '<img src="/images/broken_480.png"' in result
        assert 'width=' not in result
        assert 'height=' not in result

    def test_manifest_replaces_filesystem_probing(self, mock_output_dir):
        """With a manifest, variants are looked up there instead of on disk."""
        manifest = VariantManifest([
            'images/photo-480.jpeg', 'images/photo-480.webp',
            'images/photo-1024.jpeg', 'images/photo-1024.webp',
        ])
        result = PictureRewriter(mock_output_dir, manifest=manifest).rewrite(PICTURE)

        assert count_sources(result, 'webp') == 2
        assert count_sources(result, 'jpeg') == 2
        assert count_sources(result, 'avif') == 0
        assert '<img src="/images/photo-480.jpeg"' in result

    def test_relative_src_uses_document_path(self, mock_output_dir, make_variants):
        """Relative image URLs are resolved against the document's location."""
        make_variants(widths=(480,))
        document_path = os.path.join(mock_output_dir, 'blog', 'post', 'index.html')
        block = '<picture><img src="../../images/photo.jpg" alt=""></picture>'

        result = PictureRewriter(mock_output_dir).rewrite(block, document_path)

        assert '<img src="../../images/photo_480.jpeg"' in result

    def test_path_prefix_is_stripped(self, mock_output_dir, make_variants):
        make_variants(widths=(480,))
        block = '<picture><img src="/docs/images/photo.jpg" alt=""></picture>'

        result = PictureRewriter(mock_output_dir, path_prefix='/docs/').rewrite(block)

        assert '<img src="/docs/images/photo_480.jpeg"' in result

    def test_multiple_blocks_and_surrounding_text(self, mock_output_dir, make_variants):
        """Every block is rewritten and text between blocks is untouched."""
        make_variants(widths=(480,))
        make_variants(base='other', widths=(480,))
        document = ('<h1>Title</h1>\n<picture><img src="/images/photo.jpg" alt="1"></picture>\n'
                    '<p>middle &amp; text</p>\n<PICTURE><img src="/images/other.jpg" alt="2"></PICTURE>\n<footer></footer>')
        rewriter = PictureRewriter(mock_output_dir)

        result = rewriter.rewrite(document)

        assert result.startswith('<h1>Title</h1>\n<picture>')
        assert '\n<p>middle &amp; text</p>\n' in result
        assert result.endswith('</picture>\n<footer></footer>')
        assert '/images/photo_480.jpeg' in result
        assert '/images/other_480.jpeg' in result
        assert rewriter.pictures_rewritten == 2

    def test_failing_block_is_left_unchanged(self, mock_output_dir, caplog):
        """An unexpected error in one block is logged and the block kept."""
        rewriter = PictureRewriter(mock_output_dir)
        with patch('pictor_pkg.picture.parse_img_attributes', side_effect=RuntimeError('boom')):
            with caplog.at_level(logging.WARNING, logger='PictureRewriter'):
                result = rewriter.rewrite(PICTURE)

        assert result == PICTURE
        assert 'Failed to rewrite <picture>' in caplog.text

    def test_missing_variants_logged(self, mock_output_dir, caplog):
        with caplog.at_level(logging.WARNING, logger='PictureRewriter'):
            PictureRewriter(mock_output_dir).rewrite(PICTURE)
        assert 'No resized variants found for /images/photo-1024.jpeg' in caplog.text
