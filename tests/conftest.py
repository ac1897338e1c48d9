"""Test configuration and fixtures for Pictor tests."""

import pytest
import tempfile
import shutil
import os
from pathlib import Path
import yaml
from PIL import Image


def write_image(path, size=(100, 100), color='red', format=None):
    """Write a solid-colour image with Pillow, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    img = Image.new('RGB', size, color=color)
    img.save(path, format=format)
    return str(path)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def mock_output_dir(temp_dir):
    """Create a mock output directory."""
    output_dir = Path(temp_dir) / '_site'
    output_dir.mkdir()
    return str(output_dir)


@pytest.fixture
def make_variants(mock_output_dir):
    """
    Factory writing variant files into the output directory.

    Fallback-format variants are real images (so their dimensions can be
    probed); AVIF and WebP variants are placeholder bytes, since only their
    existence matters to the rewriter.
    """
    def _make(base='photo', widths=(480, 1024), formats=('avif', 'webp', 'jpeg'),
              separator='_', subdir='images'):
        directory = Path(mock_output_dir) / subdir
        directory.mkdir(parents=True, exist_ok=True)
        for width in widths:
            for fmt in formats:
                path = directory / f"{base}{separator}{width}.{fmt}"
                if fmt in ('jpeg', 'png', 'gif'):
                    write_image(path, size=(width, width * 2 // 3), format=fmt.upper())
                else:
                    path.write_bytes(b'placeholder')
        return str(directory)
    return _make


@pytest.fixture
def mock_site_dir(temp_dir):
    """Create a mock input tree with layouts, data, templates and assets."""
    src = Path(temp_dir) / 'src'
    (src / '_layouts').mkdir(parents=True)
    (src / '_includes').mkdir()
    (src / '_data').mkdir()
    (src / 'css').mkdir()
    (src / 'js').mkdir()
    (src / 'fonts').mkdir()
    (src / 'blog').mkdir()

    (src / '_layouts' / 'base.njk').write_text("""<!DOCTYPE html>
<html>
<head>
  <title>{{ title }} | {{ site.title }}</title>
</head>
<body>
{% include "header.njk" %}
{{ content }}
</body>
</html>
""")

    (src / '_layouts' / 'post.njk').write_text("""---
layout: base.njk
---
<article>{{ content }}</article>
""")

    (src / '_includes' / 'header.njk').write_text('<header>{{ site.title }}</header>\n')

    (src / '_data' / 'site.yml').write_text(yaml.dump({'title': 'Test Site'}))

    (src / 'index.md').write_text("""---
title: Home
layout: base.njk
---

# Welcome to {{ site.title }}

<img src="/images/photo.jpg" alt="A photo" class="w-full md:w-64">
""")

    (src / 'about.njk').write_text("""---
title: About
layout: base.njk
---
<picture data-pictor-ignore><source srcset="/images/custom.webp" type="image/webp"><img src="/images/custom.png" alt="Custom"></picture>
""")

    (src / 'blog' / 'first-post.md').write_text("""---
title: First Post
layout: post.njk
date: 2023-01-01
tags: [news]
---

Hello from the blog.
""")

    (src / 'css' / 'style.css').write_text("body {\n  color: red;\n}\n")
    (src / 'js' / 'main.js').write_text("function hello() {\n  return 'hello';\n}\n")
    (src / 'fonts' / 'Nunito.woff2').write_bytes(b'wOF2')
    (src / 'robots.txt').write_text("User-agent: *\n")

    write_image(src / 'images' / 'photo.jpg', size=(1200, 800), format='JPEG')

    return str(src)
