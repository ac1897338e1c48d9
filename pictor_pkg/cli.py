#!/usr/bin/env python3
"""
Command-line interface for Pictor - static site builder.
"""

import os
import sys
import argparse
import time
from typing import Optional, List
from . import __version__
from .core import Pictor
from .settings import PictorSettings

SAMPLE_LAYOUT = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>{{ title or site.title }}</title>
  <link rel="stylesheet" href="{{ path_prefix }}css/style.css">
</head>
<body>
  <main class="mx-auto max-w-5xl">
    {{ content }}
  </main>
  <script src="{{ path_prefix }}js/main.js"></script>
</body>
</html>
"""

SAMPLE_INDEX = """---
title: Home
layout: base.njk
---

# Welcome to {{ site.title }}

This page was built with **Pictor**. Put images in `src/images/` and reference them
from your pages; Pictor resizes them, converts them to AVIF and WebP, and writes
responsive `<picture>` markup for you.

<img src="/images/hero.jpg" alt="Hero image" class="w-full md:w-192 lg:max-w-5xl">

## Opting out

Wrap hand-written markup in a `<picture data-pictor-ignore>` element to leave it untouched.
"""

SAMPLE_SITE_DATA = """title: My Static Site
tagline: Built with Pictor
"""

SAMPLE_CSS = """body {
  font-family: system-ui, sans-serif;
  line-height: 1.6;
}

img {
  max-width: 100%;
  height: auto;
}
"""

SAMPLE_JS = """document.documentElement.classList.add('js');
"""


def _write_sample_file(relative_path: str, content: str) -> None:
    path = os.path.join(os.getcwd(), relative_path)
    if os.path.exists(path):
        print(f"File already exists: {relative_path}")
        return
    with open(path, 'w', encoding='utf-8') as f:
        f.write(content)
    print(f"Created file: {relative_path}")


def create_starter_structure(input_dir: str = 'src') -> None:
    """Create starter structure with a layout, a sample page, data and assets."""
    current_dir = os.getcwd()

    # Create directory structure
    directories = [
        input_dir,
        os.path.join(input_dir, '_layouts'),
        os.path.join(input_dir, '_includes'),
        os.path.join(input_dir, '_data'),
        os.path.join(input_dir, 'css'),
        os.path.join(input_dir, 'js'),
        os.path.join(input_dir, 'fonts'),
        os.path.join(input_dir, 'images'),
    ]

    for directory in directories:
        dir_path = os.path.join(current_dir, directory)
        if os.path.exists(dir_path):
            print(f"Directory already exists: {directory}")
        else:
            os.makedirs(dir_path, exist_ok=True)
            print(f"Created directory: {directory}")

    _write_sample_file(os.path.join(input_dir, '_layouts', 'base.njk'), SAMPLE_LAYOUT)
    _write_sample_file(os.path.join(input_dir, 'index.md'), SAMPLE_INDEX)
    _write_sample_file(os.path.join(input_dir, '_data', 'site.yml'), SAMPLE_SITE_DATA)
    _write_sample_file(os.path.join(input_dir, 'css', 'style.css'), SAMPLE_CSS)
    _write_sample_file(os.path.join(input_dir, 'js', 'main.js'), SAMPLE_JS)

    print("\n✅ Starter structure created successfully!")
    print("\nNext steps:")
    print("1. Edit the configuration file (pictor.yml)")
    print(f"2. Add images to '{input_dir}/images/' (the sample page expects hero.jpg)")
    print(f"3. Add pages to '{input_dir}/' and layouts to '{input_dir}/_layouts/'")
    print("4. Run 'pictor' to build your site")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Pictor - Static Site Builder with responsive images')
    parser.add_argument('--input', type=str,
                        help='Input directory containing templates and assets')
    parser.add_argument('--output', type=str,
                        help='Output directory for generated site')
    parser.add_argument('--template-formats', type=str,
                        help='Comma-separated list of template extensions (e.g. md,njk,html)')
    parser.add_argument('--path-prefix', type=str,
                        help='URL prefix the site is served under')
    parser.add_argument('--minify', action='store_true', default=None,
                        help='Write minified copies of CSS and JS assets')
    parser.add_argument('--no-format', dest='format', action='store_false', default=None,
                        help='Skip HTML pretty-printing')
    parser.add_argument('--clean', action='store_true', default=None,
                        help='Empty the output directory before building')
    parser.add_argument('--serve', action='store_true',
                        help='Serve the output directory after building')
    parser.add_argument('--port', type=int,
                        help='Port for the development server')
    parser.add_argument('--init', type=str, choices=['yml', 'yaml', 'json'],
                        help='Create a sample configuration file and starter project')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Handle init command
    if args.init:
        settings_loader = PictorSettings()
        config_path = settings_loader.create_sample_config(args.init)
        print(f"Created sample configuration file: {config_path}")

        print("\nCreating starter project structure...")
        create_starter_structure()

        print("\nYour new Pictor site is ready!")
        return

    # Load settings from configuration file
    settings_loader = PictorSettings()
    settings_loader.load_settings()

    # Convert argparse Namespace to dict, excluding None values for proper merging
    args_dict = {k: v for k, v in vars(args).items() if v is not None and k not in ('init', 'serve')}

    # Command line arguments take precedence
    final_settings = settings_loader.merge_with_args(args_dict)

    output_dir = os.path.expanduser(final_settings['output'])

    overall_start_time = time.time()

    try:
        generator = Pictor(
            input_dir=final_settings['input'],
            output_dir=output_dir,
            includes_dir=final_settings['includes'],
            layouts_dir=final_settings['layouts'],
            data_dir=final_settings['data'],
            template_formats=final_settings['template_formats'],
            passthrough=final_settings['passthrough'],
            image_options=final_settings['images'],
            picture_options=final_settings['picture'],
            ignore_attribute=final_settings['ignore_attribute'],
            format_output=final_settings['format'],
            minify=final_settings['minify'],
            clean=final_settings['clean'],
            path_prefix=final_settings['path_prefix']
        )

        generator.build()

        # Show build statistics
        total_time = time.time() - overall_start_time
        generator.logger.info(f"Site build completed in {total_time:.6f} seconds.")
        generator.logger.info(f"Total pages generated: {generator.pages_generated}")
        generator.logger.info(f"Total images processed: {generator.images_processed}")
        generator.logger.info(f"Total pictures rewritten: {generator.pictures_rewritten}")

        if args.serve:
            generator.serve(port=final_settings['port'], show_all_hosts=final_settings['show_all_hosts'])

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
