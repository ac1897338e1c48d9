#!/usr/bin/env python3
"""
Settings loader for Pictor static site builder.
Supports configuration from pictor.yml, pictor.yaml, or pictor.json files.
"""

import copy
import os
import json
import yaml
from typing import Dict, Any, Optional


def deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Merge overrides into a copy of base, recursing into nested dictionaries."""
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class PictorSettings:
    """Load and manage Pictor configuration settings."""

    # Default configuration
    DEFAULT_SETTINGS = {
        'input': 'src',
        'output': '_site',
        'includes': '_includes',
        'layouts': '_layouts',
        'data': '_data',
        'template_formats': ['md', 'njk', 'html'],
        'passthrough': ['css', 'js', 'fonts', 'images', 'favicon.ico', 'robots.txt', 'sitemap.xml'],
        'path_prefix': '/',
        'format': True,
        'minify': False,
        'clean': False,
        'port': 8080,
        'show_all_hosts': True,
        'images': {
            'formats': ['avif', 'webp', 'auto'],
            'widths': [80, 100, 120, 160, 200, 240, 320, 480, 640, 768, 1024, 1280, 1536, 2048],
            'quality': {'png': 90, 'jpeg': 95, 'webp': 90, 'avif': 85},
            'logo_quality': {'png': 95, 'jpeg': 98, 'webp': 95, 'avif': 90},
            'logo_marker': '/logo/',
            'images_subdir': 'images',
            'url_path': '/images/',
            'loading': 'lazy',
            'decoding': 'async',
        },
        'picture': {
            # (image width, minimum viewport width) pairs; a configured ladder replaces them whole
            'breakpoints': [[2560, 1920], [1920, 1366], [1366, 1024], [1024, 480], [480, None]],
            'formats': ['avif', 'webp'],
            'separators': ['_', '-'],
        },
        'ignore_attribute': 'data-pictor-ignore',
    }

    # Config file names to look for (in order of preference)
    CONFIG_FILES = ['pictor.yml', 'pictor.yaml', 'pictor.json']

    def __init__(self, config_dir: str = None):
        """
        Initialize settings loader.

        Args:
            config_dir: Directory to look for config files. Defaults to current directory.
        """
        self.config_dir = config_dir or os.getcwd()
        self.settings = copy.deepcopy(self.DEFAULT_SETTINGS)
        self.config_file_path = None

    def load_settings(self) -> Dict[str, Any]:
        """
        Load settings from configuration file if it exists.

        Returns:
            Dictionary of configuration settings
        """
        config_file = self._find_config_file()

        if config_file:
            self.config_file_path = config_file
            try:
                loaded_settings = self._load_config_file(config_file)
                if loaded_settings:
                    if not isinstance(loaded_settings, dict):
                        raise ValueError("top-level value must be a mapping")
                    self.settings = deep_merge(self.settings, loaded_settings)
                    print(f"Loaded configuration from: {os.path.relpath(config_file)}")
            except Exception as e:
                print(f"Warning: Failed to load config file {config_file}: {e}")

        return copy.deepcopy(self.settings)

    def _find_config_file(self) -> Optional[str]:
        """
        Find the first available configuration file.

        Returns:
            Path to config file or None if not found
        """
        for filename in self.CONFIG_FILES:
            config_path = os.path.join(self.config_dir, filename)
            if os.path.exists(config_path):
                return config_path
        return None

    def _load_config_file(self, config_path: str) -> Dict[str, Any]:
        """
        Load configuration from a file.

        Args:
            config_path: Path to the configuration file

        Returns:
            Dictionary of configuration settings
        """
        file_ext = os.path.splitext(config_path)[1].lower()
        if file_ext not in ['.yml', '.yaml', '.json']:
            raise ValueError(f"Unsupported config file format: {file_ext}")

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                if file_ext in ['.yml', '.yaml']:
                    return yaml.safe_load(f) or {}
                return json.load(f) or {}
        except FileNotFoundError:
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        except PermissionError:
            raise PermissionError(f"Permission denied reading configuration file: {config_path}")
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file {config_path}: {e}")
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file {config_path}: {e}")
        except (IOError, OSError) as e:
            raise IOError(f"Error reading configuration file {config_path}: {e}")

    def create_sample_config(self, file_format: str = 'yml') -> str:
        """
        Create a sample configuration file.

        Args:
            file_format: Format for config file ('yml', 'yaml', or 'json')

        Returns:
            Path to created sample config file
        """
        sample_config = {
            'input': 'src',
            'output': '_site',
            'template_formats': ['md', 'njk', 'html'],
            'format': True,
            'minify': False,
            'port': 8080,
            'images': {
                'formats': ['avif', 'webp', 'auto'],
                'widths': [320, 480, 640, 768, 1024, 1280, 1536, 2048],
                'url_path': '/images/',
            },
            'picture': {
                'breakpoints': {2560: 1920, 1920: 1366, 1366: 1024, 1024: 480, 480: None},
            },
        }

        filename = f'pictor.{file_format}'
        config_path = os.path.join(self.config_dir, filename)

        try:
            with open(config_path, 'w', encoding='utf-8') as f:
                if file_format in ['yml', 'yaml']:
                    # Custom YAML output with comments
                    f.write("# Pictor Configuration File\n")
                    f.write("# Configure your static site build here\n\n")
                    f.write("# Directories\n")
                    f.write("input: src\n")
                    f.write("output: _site\n\n")
                    f.write("# Templates\n")
                    f.write("template_formats: [md, njk, html]\n\n")
                    f.write("# Output processing\n")
                    f.write("format: true\n")
                    f.write("minify: false\n\n")
                    f.write("# Development server\n")
                    f.write("port: 8080\n\n")
                    f.write("# Image variants\n")
                    f.write("images:\n")
                    f.write("  formats: [avif, webp, auto]  # auto keeps the source format\n")
                    f.write("  widths: [320, 480, 640, 768, 1024, 1280, 1536, 2048]\n")
                    f.write("  url_path: /images/\n\n")
                    f.write("# <picture> rewriting: image width -> minimum viewport width\n")
                    f.write("picture:\n")
                    f.write("  breakpoints:\n")
                    f.write("    2560: 1920\n")
                    f.write("    1920: 1366\n")
                    f.write("    1366: 1024\n")
                    f.write("    1024: 480\n")
                    f.write("    480: null  # default, no media query\n")
                elif file_format == 'json':
                    json.dump(sample_config, f, indent=2)
        except PermissionError:
            raise PermissionError(f"Permission denied creating configuration file: {config_path}")
        except (IOError, OSError) as e:
            raise IOError(f"Error writing configuration file {config_path}: {e}")

        return config_path

    def merge_with_args(self, args_dict: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge configuration settings with command-line arguments.
        Command-line arguments take precedence over config file settings.

        Args:
            args_dict: Dictionary of command-line arguments

        Returns:
            Merged configuration dictionary
        """
        merged = copy.deepcopy(self.settings)

        # Override with non-None command line arguments
        for key, value in args_dict.items():
            if value is not None:
                # Handle special cases
                if key == 'template_formats' and isinstance(value, str):
                    # Convert comma-separated string to list
                    merged[key] = [fmt.strip().lstrip('.') for fmt in value.split(',') if fmt.strip()]
                else:
                    merged[key] = value

        return merged
