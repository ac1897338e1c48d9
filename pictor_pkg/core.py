import os
import shutil
import json
import logging
import functools
import threading
from datetime import datetime, date
from concurrent.futures import ProcessPoolExecutor, as_completed
from http.server import ThreadingHTTPServer, SimpleHTTPRequestHandler

import yaml
import mistune
import csscompressor
import rjsmin
from jinja2 import Environment, FileSystemLoader, TemplateError, TemplateNotFound, TemplateSyntaxError

from .formatter import format_html, remove_empty_lines
from .images import ImageProcessor, ImageTransformConfig, VariantManifest, RASTER_EXTENSIONS
from .picture import PictureConfig, PictureRewriter

DEFAULT_PASSTHROUGH = ['css', 'js', 'fonts', 'images', 'favicon.ico', 'robots.txt', 'sitemap.xml']

DEFAULT_TEMPLATE_FORMATS = ['md', 'njk', 'html']

# Multiprocessing only pays off once there are enough documents to amortize worker startup
MULTIPROCESSING_THRESHOLD = 12

MAX_LAYOUT_DEPTH = 10

COMPONENT_LOGGERS = ['ImageProcessor', 'PictureRewriter', 'Formatter', 'DocumentProcessor']

# Thread-local storage for DocumentProcessor instances
thread_local = threading.local()


def initializer(output_dir, source_dir, picture_config, manifest, path_prefix, format_output):
    """Initialize DocumentProcessor instance in thread-local storage for each worker process."""
    thread_local.document_processor = DocumentProcessor(
        output_dir, source_dir, picture_config, manifest,
        path_prefix=path_prefix, format_output=format_output
    )


def process_document(output_path, content):
    return thread_local.document_processor.process(output_path, content)


class DocumentProcessor:
    """Second build phase for one rendered document: rewrite <picture> blocks, format, write."""

    def __init__(self, output_dir, source_dir, picture_config, manifest, path_prefix='/', format_output=True):
        self.output_dir = output_dir
        self.format_output = format_output
        self.rewriter = PictureRewriter(
            output_dir, picture_config, source_dir=source_dir,
            manifest=manifest, path_prefix=path_prefix
        )
        self.logger = logging.getLogger('DocumentProcessor')

    def process(self, output_path, content):
        """
        Post-process and write a document.

        Returns:
            Dictionary with the output path and the number of rewritten
            <picture> blocks, or None if the file could not be written.
        """
        rewritten_before = self.rewriter.pictures_rewritten
        if output_path.endswith('.html'):
            content = self.rewriter.rewrite(content, output_path)
            if self.format_output:
                content = format_html(content, output_path)
            content = remove_empty_lines(content)

        try:
            os.makedirs(os.path.dirname(output_path), exist_ok=True)
            with open(output_path, 'w', encoding='utf-8') as f:
                f.write(content)
        except (IOError, OSError, PermissionError) as e:
            self.logger.error(f"Failed to write {output_path}: {e}")
            return None

        self.logger.debug(f"Wrote {output_path}")
        return {
            "output_path": output_path,
            "pictures_rewritten": self.rewriter.pictures_rewritten - rewritten_before,
        }


class InfoFilter(logging.Filter):
    """Filter to allow only selected INFO messages to be shown in the console."""
    def filter(self, record):
        if record.levelno >= logging.WARNING:
            return True
        allowed_messages = [
            "Site build completed in",
            "Total pages generated:",
            "Total images processed:",
            "Total pictures rewritten:",
            "Copying passthrough files",
            "Rendering templates",
            "Rewriting picture markup",
            "Minifying assets",
            "Serving "
        ]
        return any(msg in record.getMessage() for msg in allowed_messages)


class Pictor:
    def create_markdown_parser(self):
        """Create a Mistune markdown parser with a custom renderer."""
        class CustomRenderer(mistune.HTMLRenderer):
            def __init__(self):
                super().__init__(escape=False)
            def block_code(self, code, info=None):
                escaped_code = mistune.escape(code)
                return '<pre style="white-space: pre-wrap;"><code>{}</code></pre>'.format(escaped_code)
        return mistune.create_markdown(
            renderer=CustomRenderer(),
            plugins=['table', 'task_lists', 'strikethrough']
        )

    def markdown_filter(self, text):
        """Convert markdown text to HTML."""
        return self.markdown_parser(text)

    def __init__(self, input_dir='src', output_dir='_site', includes_dir='_includes', layouts_dir='_layouts',
                 data_dir='_data', template_formats=None, passthrough=None, image_options=None,
                 picture_options=None, ignore_attribute='data-pictor-ignore', format_output=True,
                 minify=False, clean=False, path_prefix='/', log_dir=None):
        if not os.path.isdir(input_dir):
            raise FileNotFoundError(f"Input directory not found: {input_dir}")

        self.input_dir = input_dir
        self.output_dir = output_dir
        self.includes_dir = os.path.join(input_dir, includes_dir)
        self.layouts_dir = os.path.join(input_dir, layouts_dir)
        self.data_dir = os.path.join(input_dir, data_dir)
        self.template_formats = [fmt.lstrip('.') for fmt in (template_formats or DEFAULT_TEMPLATE_FORMATS)]
        self.passthrough = list(DEFAULT_PASSTHROUGH if passthrough is None else passthrough)
        self.format_output = format_output
        self.minify = minify
        self.clean = clean
        self.path_prefix = '/' + path_prefix.strip('/') + '/' if path_prefix.strip('/') else '/'
        self.log_dir = log_dir
        self.pages_generated = 0
        self.pictures_rewritten = 0
        self.pages = []

        self.setup_logging()
        self.create_output_dir()

        self.manifest = VariantManifest()
        # A per-section ignore_attribute in the options overrides the top-level one
        image_options = dict(image_options or {})
        image_options.setdefault('ignore_attribute', ignore_attribute)
        picture_options = dict(picture_options or {})
        picture_options.setdefault('ignore_attribute', ignore_attribute)

        self.image_config = ImageTransformConfig(input_dir=input_dir, output_dir=output_dir, **image_options)
        self.image_processor = ImageProcessor(self.image_config, self.manifest)
        self.picture_config = PictureConfig(**picture_options)

        self.global_data = self.load_global_data()

        # Layouts first, then includes, then the input tree itself
        self.env = Environment(loader=FileSystemLoader([self.layouts_dir, self.includes_dir, self.input_dir]))
        self.env.filters['markdown'] = self.markdown_filter
        self.markdown_parser = self.create_markdown_parser()

    @property
    def images_processed(self):
        return self.image_processor.images_processed

    def setup_logging(self):
        """Set up logging configuration."""
        self.logger = logging.getLogger('Pictor')
        self.logger.setLevel(logging.INFO)

        if not self.logger.handlers:
            # Console handler with filter
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.INFO)
            console_handler.addFilter(InfoFilter())
            console_formatter = logging.Formatter('%(message)s')
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

            # File handler for all logs
            logs_dir = self.log_dir or os.path.join(os.getcwd(), 'logs')
            os.makedirs(logs_dir, exist_ok=True)
            log_filename = datetime.now().strftime('pictor_%Y-%m-%d_%H-%M-%S.log')
            log_filepath = os.path.join(logs_dir, log_filename)

            file_handler = logging.FileHandler(log_filepath)
            file_handler.setLevel(logging.DEBUG)
            file_formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

            # Components log warnings to the console and everything to the build log
            for name in COMPONENT_LOGGERS:
                component_logger = logging.getLogger(name)
                component_logger.setLevel(logging.DEBUG)
                warning_handler = logging.StreamHandler()
                warning_handler.setLevel(logging.WARNING)
                warning_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
                component_logger.addHandler(warning_handler)
                component_logger.addHandler(file_handler)

    def create_output_dir(self):
        """Create the output directory, emptying it first when clean builds are requested."""
        if self.clean and os.path.exists(self.output_dir):
            if os.path.abspath(self.output_dir) == os.path.abspath(self.input_dir):
                raise ValueError("Refusing to clean output directory that is the input directory")
            shutil.rmtree(self.output_dir)
            self.logger.debug(f"Removed previous output in {self.output_dir}")
        os.makedirs(self.output_dir, exist_ok=True)

    def load_global_data(self):
        """Load YAML and JSON files from the data directory, keyed by file name."""
        data = {}
        if not os.path.isdir(self.data_dir):
            return data

        for file in sorted(os.listdir(self.data_dir)):
            name, ext = os.path.splitext(file)
            path = os.path.join(self.data_dir, file)
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    if ext in ('.yml', '.yaml'):
                        data[name] = yaml.safe_load(f)
                    elif ext == '.json':
                        data[name] = json.load(f)
            except (IOError, OSError, PermissionError) as e:
                self.logger.error(f"Failed to read data file {path}: {e}")
            except (yaml.YAMLError, json.JSONDecodeError) as e:
                self.logger.error(f"Invalid data file {path}: {e}")
        return data

    def parse_front_matter(self, filepath):
        """Parse a template file with optional YAML front matter."""
        with open(filepath, 'r', encoding='utf-8') as f:
            content = f.read()

        if not content.startswith('---'):
            return {}, content

        parts = content.split('---', 2)
        if len(parts) < 3:
            return {}, content

        try:
            metadata = yaml.safe_load(parts[1])
        except yaml.YAMLError as e:
            self.logger.error(f"Invalid YAML front matter in {filepath}: {e}")
            metadata = {}
        if not isinstance(metadata, dict):
            metadata = {}
        return metadata, parts[2].lstrip('\r\n')

    def _is_passthrough(self, relative_path):
        relative_path = relative_path.replace(os.sep, '/')
        return any(relative_path == entry or relative_path.startswith(entry.rstrip('/') + '/')
                   for entry in self.passthrough)

    def get_template_files(self):
        """Walk the input directory for templates, skipping _-prefixed and passthrough directories."""
        template_files = []
        output_root = os.path.abspath(self.output_dir)
        extensions = tuple('.' + fmt for fmt in self.template_formats)

        for root, dirs, files in os.walk(self.input_dir):
            relative_root = os.path.relpath(root, self.input_dir)
            dirs[:] = sorted(
                d for d in dirs
                if not d.startswith(('_', '.'))
                and os.path.abspath(os.path.join(root, d)) != output_root
                and not self._is_passthrough(os.path.normpath(os.path.join(relative_root, d)))
            )
            for file in sorted(files):
                if file.endswith(extensions):
                    template_files.append(os.path.join(root, file))
        return template_files

    def output_path_for(self, path, metadata):
        """
        Work out where a template is written.

        about.md becomes about/index.html and index.* becomes index.html;
        a permalink in front matter overrides both.
        """
        permalink = metadata.get('permalink')
        if permalink:
            relative = str(permalink).lstrip('/')
            if relative == '' or relative.endswith('/'):
                relative += 'index.html'
            elif not os.path.splitext(relative)[1]:
                relative += '/index.html'
        else:
            relative_path = os.path.relpath(path, self.input_dir)
            directory, name = os.path.split(os.path.splitext(relative_path)[0])
            if name == 'index':
                relative = os.path.join(directory, 'index.html')
            else:
                relative = os.path.join(directory, name, 'index.html')

        output_path = os.path.normpath(os.path.join(self.output_dir, relative))
        output_root = os.path.abspath(self.output_dir)
        if os.path.commonpath([os.path.abspath(output_path), output_root]) != output_root:
            raise ValueError(f"Path traversal attempt detected: {permalink}")
        return output_path

    def url_for(self, output_path):
        relative = os.path.relpath(output_path, self.output_dir).replace(os.sep, '/')
        if relative == 'index.html':
            relative = ''
        elif relative.endswith('/index.html'):
            relative = relative[:-len('index.html')]
        return self.path_prefix + relative

    def load_page(self, path):
        """Read a template and describe the page it produces."""
        metadata, body = self.parse_front_matter(path)
        output_path = self.output_path_for(path, metadata)
        return {
            'input_path': path,
            'output_path': output_path,
            'url': self.url_for(output_path),
            'title': metadata.get('title'),
            'date': metadata.get('date'),
            'tags': metadata.get('tags') or [],
            'data': metadata,
            'body': body,
        }

    def collect_pages(self, template_files):
        pages = []
        for path in template_files:
            try:
                pages.append(self.load_page(path))
            except (IOError, OSError, PermissionError, ValueError) as e:
                self.logger.error(f"Failed to read template {path}: {e}")
        return pages

    def build_collections(self):
        """Group pages into collections: 'all' plus one per tag."""
        def sort_key(page):
            page_date = page['date']
            if isinstance(page_date, date) and not isinstance(page_date, datetime):
                page_date = datetime(page_date.year, page_date.month, page_date.day)
            if not isinstance(page_date, datetime):
                page_date = datetime.min
            return (page_date, page['input_path'])

        collections = {'all': sorted(self.pages, key=sort_key)}
        for page in collections['all']:
            tags = page['tags'] if isinstance(page['tags'], list) else [page['tags']]
            for tag in tags:
                collections.setdefault(str(tag), []).append(page)
        return collections

    def find_layout(self, layout):
        """Locate a layout in the layouts or includes directory, with or without a template extension."""
        candidates = [layout] + [f"{layout}.{fmt}" for fmt in self.template_formats]
        for directory in (self.layouts_dir, self.includes_dir):
            for candidate in candidates:
                path = os.path.join(directory, candidate)
                if os.path.isfile(path):
                    return path
        return None

    def render_template(self, source, context, name):
        """Render template source with Jinja2."""
        try:
            return self.env.from_string(source).render(**context)
        except (TemplateNotFound, TemplateSyntaxError) as e:
            self.logger.error(f"Template error in {name}: {e}")
            return None
        except TemplateError as e:
            self.logger.error(f"Failed to render {name}: {e}")
            return None

    def apply_layouts(self, content, metadata, context, name):
        """Wrap rendered content in its layout chain."""
        layout = metadata.get('layout')
        depth = 0
        while layout:
            if depth >= MAX_LAYOUT_DEPTH:
                self.logger.error(f"Layout chain too deep in {name}")
                return None
            layout_path = self.find_layout(layout)
            if not layout_path:
                self.logger.error(f"Layout not found for {name}: {layout}")
                return None

            layout_metadata, layout_body = self.parse_front_matter(layout_path)
            layout_context = dict(layout_metadata)
            layout_context.update(context)
            layout_context['content'] = content
            content = self.render_template(layout_body, layout_context, layout_path)
            if content is None:
                return None
            layout = layout_metadata.get('layout')
            depth += 1
        return content

    def render_page(self, page, collections=None):
        """
        Render one page: template body, Markdown for .md files, then layouts.

        Returns:
            Rendered HTML, or None if the page could not be rendered
        """
        context = dict(self.global_data)
        context.update(page['data'])
        context['page'] = {
            'url': page['url'],
            'input_path': page['input_path'],
            'output_path': page['output_path'],
            'date': page['date'],
        }
        context['path_prefix'] = self.path_prefix
        context['collections'] = collections if collections is not None else {'all': self.pages}

        content = self.render_template(page['body'], context, page['input_path'])
        if content is None:
            return None
        if page['input_path'].endswith('.md'):
            content = self.markdown_filter(content)
        return self.apply_layouts(content, page['data'], context, page['input_path'])

    def copy_passthrough(self):
        """Copy static files and directories from the input tree, recording images in the manifest."""
        self.logger.info("Copying passthrough files")
        for entry in self.passthrough:
            source = os.path.join(self.input_dir, entry)
            destination = os.path.join(self.output_dir, entry)
            try:
                if os.path.isdir(source):
                    shutil.copytree(source, destination, dirs_exist_ok=True)
                    copied = [
                        os.path.relpath(os.path.join(root, file), self.input_dir)
                        for root, _, files in os.walk(source) for file in files
                    ]
                elif os.path.isfile(source):
                    os.makedirs(os.path.dirname(destination) or '.', exist_ok=True)
                    shutil.copy2(source, destination)
                    copied = [entry]
                else:
                    self.logger.debug(f"Passthrough path not found, skipping: {source}")
                    continue
            except (IOError, OSError, PermissionError) as e:
                self.logger.error(f"Failed to copy {source}: {e}")
                continue

            for relative in copied:
                if relative.lower().endswith(RASTER_EXTENSIONS):
                    self.manifest.add(relative)
            self.logger.debug(f"Copied {source} -> {destination}")

    def render_documents(self):
        """First phase: render every template and generate image variants."""
        self.logger.info("Rendering templates")
        self.pages = self.collect_pages(self.get_template_files())
        collections = self.build_collections()

        documents = []
        for page in self.pages:
            try:
                html = self.render_page(page, collections)
            except Exception as e:
                self.logger.error(f"Error rendering {page['input_path']}: {e}")
                continue
            if html is None:
                continue
            if page['output_path'].endswith('.html'):
                html = self.image_processor.transform_html(html, page['input_path'])
            documents.append((page['output_path'], html))
        return documents

    def process_documents(self, documents):
        """Second phase: rewrite picture markup, format and write, adapting to workload size."""
        self.logger.info("Rewriting picture markup")
        if not documents:
            self.logger.warning("No templates found to process.")
            return

        if len(documents) >= MULTIPROCESSING_THRESHOLD:
            self.logger.debug(f"Using multiprocessing for {len(documents)} documents with {os.cpu_count()} workers")
            self._process_with_multiprocessing(documents)
        else:
            self.logger.debug(f"Using single-threaded processing for {len(documents)} documents")
            self._process_single_threaded(documents)

    def _record_result(self, result):
        if result:
            self.pages_generated += 1
            self.pictures_rewritten += result.get("pictures_rewritten", 0)

    def _process_single_threaded(self, documents):
        processor = DocumentProcessor(
            self.output_dir, self.input_dir, self.picture_config, self.manifest,
            path_prefix=self.path_prefix, format_output=self.format_output
        )
        for output_path, content in documents:
            try:
                self._record_result(processor.process(output_path, content))
            except Exception as e:
                self.logger.error(f"Error processing {output_path}: {e}")

    def _process_with_multiprocessing(self, documents):
        with ProcessPoolExecutor(
            max_workers=os.cpu_count(),
            initializer=initializer,
            initargs=(self.output_dir, self.input_dir, self.picture_config, self.manifest,
                      self.path_prefix, self.format_output)
        ) as executor:
            futures = {executor.submit(process_document, output_path, content): output_path
                       for output_path, content in documents}
            for future in as_completed(futures):
                output_path = futures[future]
                try:
                    self._record_result(future.result())
                except Exception as e:
                    self.logger.error(f"Error processing {output_path}: {e}")

    def minify_assets(self):
        """Minify CSS and JS assets."""
        self.logger.info("Minifying assets")

        # Minify CSS files
        css_dir = os.path.join(self.output_dir, 'css')
        if os.path.exists(css_dir):
            for file in os.listdir(css_dir):
                if file.endswith('.css') and not file.endswith('.min.css'):
                    css_path = os.path.join(css_dir, file)
                    try:
                        with open(css_path, 'r', encoding='utf-8') as f:
                            css_content = f.read()
                        minified_css = csscompressor.compress(css_content)
                        minified_path = os.path.join(css_dir, file[:-len('.css')] + '.min.css')
                        with open(minified_path, 'w', encoding='utf-8') as f:
                            f.write(minified_css)
                        self.logger.debug(f"Minified CSS: {file}")
                    except (IOError, OSError, PermissionError) as e:
                        self.logger.error(f"Failed to minify CSS file {file}: {e}")

        # Minify JS files
        js_dir = os.path.join(self.output_dir, 'js')
        if os.path.exists(js_dir):
            for file in os.listdir(js_dir):
                if file.endswith('.js') and not file.endswith('.min.js'):
                    js_path = os.path.join(js_dir, file)
                    try:
                        with open(js_path, 'r', encoding='utf-8') as f:
                            js_content = f.read()
                        minified_js = rjsmin.jsmin(js_content)
                        minified_path = os.path.join(js_dir, file[:-len('.js')] + '.min.js')
                        with open(minified_path, 'w', encoding='utf-8') as f:
                            f.write(minified_js)
                        self.logger.debug(f"Minified JS: {file}")
                    except (IOError, OSError, PermissionError) as e:
                        self.logger.error(f"Failed to minify JS file {file}: {e}")

    def build(self):
        """Main build process."""
        self.logger.info("Starting site build...")

        self.copy_passthrough()

        documents = self.render_documents()

        # Variants are complete from here on; the rewrite phase only reads them
        manifest_path = os.path.join(self.image_config.output_images_dir, 'manifest.json')
        try:
            self.manifest.save(manifest_path)
        except (IOError, OSError, PermissionError) as e:
            self.logger.error(f"Failed to write variant manifest {manifest_path}: {e}")

        self.process_documents(documents)

        if self.minify:
            self.minify_assets()

    def serve(self, port=8080, show_all_hosts=True):
        """Serve the output directory over HTTP until interrupted."""
        host = '0.0.0.0' if show_all_hosts else '127.0.0.1'
        handler = functools.partial(SimpleHTTPRequestHandler, directory=self.output_dir)
        with ThreadingHTTPServer((host, port), handler) as httpd:
            self.logger.info(f"Serving {self.output_dir} at http://{host}:{port}/")
            try:
                httpd.serve_forever()
            except KeyboardInterrupt:
                self.logger.info("Serving stopped")
