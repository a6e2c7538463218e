#!/usr/bin/env python3
import argparse
import hashlib
import logging
import re
import shutil
import sys
import tomllib
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from threading import Lock
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    TextIO,
    Tuple,
    TypeVar,
    Union,
)

import requests
import yaml
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "image/avif,image/webp,image/svg+xml,image/*,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

CACHEABLE_EXTS = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico", ".webp")
HTML_EXTS = {".html", ".htm"}

# leading URL token, then whatever descriptor follows it
SRCSET_CANDIDATE_RE = re.compile(r"^(\S+)(.*)$", re.DOTALL)

URL_ATTRS = (
    ("[href]", "href"),
    ("[src]", "src"),
    ("video[poster]", "poster"),
)
SRCSET_ATTRS = (
    ("[srcset]", "srcset"),
    ("[imagesrcset]", "imagesrcset"),
)

# keys accepted from config files and the CLI
CONFIG_KEYS = (
    "extensions",
    "folder",
    "log_output",
    "timeout",
    "workers",
    "retries",
    "headers",
    "cache_extensions",
    "cache_prefix",
)


def default_should_cache(url: str) -> bool:
    return url.startswith("https://") and url.endswith(CACHEABLE_EXTS)


def make_should_cache(
    extensions: Iterable[str], prefix: str = "https://"
) -> Callable[[str], bool]:
    if isinstance(extensions, str):
        extensions = (extensions,)
    exts = tuple(e if e.startswith(".") else "." + e for e in extensions)

    def should_cache(url: str) -> bool:
        return url.startswith(prefix) and url.endswith(exts)

    return should_cache


def sha1_hex(url: str) -> str:
    return hashlib.sha1(url.encode("utf-8")).hexdigest()


# -------------------- Options --------------------


@dataclass(frozen=True)
class Options:
    extensions: Tuple[str, ...] = (".html",)
    should_cache: Callable[[str], bool] = default_should_cache
    # url -> file-system-safe key
    transform: Callable[[str], str] = sha1_hex
    folder: str = "cache"
    log_output: bool = True

    # Fetching
    timeout: float = 15.0
    workers: int = 8
    retries: int = 0
    headers: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))

    def __post_init__(self) -> None:
        exts = self.extensions
        if isinstance(exts, str):
            exts = (exts,)
        object.__setattr__(self, "extensions", tuple(exts))


DEFAULTS = Options()


def merge_options(base: Options, overrides: Mapping[str, Any]) -> Options:
    """Shallow merge: each given (non-None) field replaces the base value."""
    known = {f.name for f in fields(Options)}
    unknown = set(overrides) - known
    if unknown:
        raise TypeError(f"unknown option(s): {', '.join(sorted(unknown))}")
    given = {k: v for k, v in overrides.items() if v is not None}
    return replace(base, **given)


def load_config_file(path: str) -> Dict[str, Any]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        with open(p, "rb") as f:
            data = tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise RuntimeError("Top-level YAML must be a mapping")
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")
    flat = dict(data)
    if isinstance(data.get("cache"), dict):
        flat.pop("cache")
        flat.update(data["cache"])
    return flat


def options_from_config(data: Mapping[str, Any], base: Options = DEFAULTS) -> Options:
    unknown = set(data) - set(CONFIG_KEYS)
    if unknown:
        raise RuntimeError(f"unknown config key(s): {', '.join(sorted(unknown))}")
    cfg = dict(data)
    cache_exts = cfg.pop("cache_extensions", None)
    prefix = cfg.pop("cache_prefix", None)
    if cache_exts is not None or prefix is not None:
        cfg["should_cache"] = make_should_cache(
            cache_exts or CACHEABLE_EXTS, prefix or "https://"
        )
    if cfg.get("extensions") is not None:
        cfg["extensions"] = tuple(cfg["extensions"])
    return merge_options(base, cfg)


# -------------------- Paths --------------------


def url_extension(url: str) -> str:
    # "https://host.test/file" has no extension of its own
    _, dot, ext = url.rpartition(".")
    if not dot or "/" in ext:
        return ""
    return ext


def cached_path(url: str, options: Options) -> str:
    key = options.transform(url)
    folder = options.folder.rstrip("/")
    ext = url_extension(url)
    path = f"/{folder}/{key}"
    return f"{path}.{ext}" if ext else path


def resolve_path(url: Optional[str], options: Options) -> str:
    """Local path for ``url``, the url itself when not cacheable, "" when empty."""
    if not url:
        return ""
    if not options.should_cache(url):
        return url
    return cached_path(url, options)


# -------------------- Progress --------------------


class ProgressLine:
    def __init__(self, stream: Optional[TextIO] = None, enabled: bool = True):
        self.stream = stream
        self.enabled = enabled
        self.lock = Lock()

    def _emit(self, text: str) -> None:
        if not self.enabled:
            return
        stream = self.stream or sys.stdout
        try:
            with self.lock:
                stream.write(text)
                stream.flush()
        except (OSError, ValueError) as e:
            logging.debug("progress output failed: %s", e)

    def write(self, line: str) -> None:
        self._emit(line + "\r")

    def clear(self) -> None:
        columns = shutil.get_terminal_size().columns
        self._emit(" " * columns + "\r")


# -------------------- HTTP --------------------


def build_session(
    headers: Optional[Dict[str, str]] = None, retries: int = 0
) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=retries,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=32, pool_maxsize=32)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    return s


def make_fetcher(session: requests.Session, timeout: float) -> Callable[[str], bytes]:
    def fetch(url: str) -> bytes:
        resp = session.get(url, timeout=timeout)
        resp.raise_for_status()
        return resp.content

    return fetch


# -------------------- Cache --------------------


class ContentCache:
    """Downloads every cacheable URL once per build and hands the bytes to ``register``.

    ``generated`` only ever grows. A path is claimed under the lock before its
    fetch starts, so concurrent callers asking for the same URL see the claim
    and return the path without fetching again.
    """

    def __init__(
        self,
        options: Options,
        register: Callable[[str, bytes], None],
        fetch: Optional[Callable[[str], bytes]] = None,
        progress: Optional[ProgressLine] = None,
    ):
        self.options = options
        self.register = register
        if fetch is None:
            session = build_session(options.headers, options.retries)
            fetch = make_fetcher(session, options.timeout)
        self.fetch = fetch
        self.progress = progress or ProgressLine(enabled=options.log_output)
        self.generated: Set[str] = set()
        self.lock = Lock()

    def claim(self, path: str) -> bool:
        with self.lock:
            if path in self.generated:
                return False
            self.generated.add(path)
            return True

    def ensure_cached(self, url: Optional[str]) -> str:
        if not url:
            return ""
        if not self.options.should_cache(url):
            return url
        path = cached_path(url, self.options)
        if not self.claim(path):
            return path
        if self.options.log_output:
            self.progress.write(f"Caching {url} in {path}")
        body = self.fetch(url)
        self.register(path, body)
        logging.debug("cached %s -> %s (%d bytes)", url, path, len(body))
        return path


# -------------------- Rewriters --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def serialize_html(soup: BeautifulSoup) -> str:
    try:
        return soup.decode(formatter="html")
    except Exception:
        return str(soup)


def rewrite_srcset(value: Optional[str], replace_url: Callable[[str], str]) -> str:
    candidates = value.strip().split(",") if value else []
    parts: List[str] = []
    for candidate in candidates:
        m = SRCSET_CANDIDATE_RE.match(candidate.strip())
        if m is None:
            # "a.png 1x,,b.png 2x" or a trailing comma
            continue
        url, rest = m.groups()
        parts.append(replace_url(url) + rest)
    return ", ".join(parts)


def rewrite_document(document: Optional[BeautifulSoup], cache: ContentCache) -> None:
    if document is None:
        return
    for selector, attr in URL_ATTRS:
        for tag in document.select(selector):
            tag[attr] = cache.ensure_cached(tag.get(attr))
    for selector, attr in SRCSET_ATTRS:
        for tag in document.select(selector):
            tag[attr] = rewrite_srcset(tag.get(attr), cache.ensure_cached)


# -------------------- Site --------------------


T = TypeVar("T")


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def concurrent(items: Iterable[T], fn: Callable[[T], Any], workers: int = 8) -> None:
    items = list(items)
    if not items:
        return
    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        futures = [pool.submit(fn, item) for item in items]
        for fut in as_completed(futures):
            fut.result()


class Page:
    def __init__(
        self,
        url: str,
        content: Optional[bytes] = None,
        document: Optional[BeautifulSoup] = None,
    ):
        self.url = url
        self.content = content
        self._document = document
        self._parsed = document is not None

    @classmethod
    def create(cls, url: str, content: bytes) -> "Page":
        return cls(url, content=content)

    @property
    def is_html(self) -> bool:
        return Path(self.url).suffix.lower() in HTML_EXTS

    @property
    def document(self) -> Optional[BeautifulSoup]:
        if not self._parsed:
            self._parsed = True
            if self.is_html and self.content is not None:
                html = self.content.decode("utf-8", errors="replace")
                self._document = bs4_parse(html)
        return self._document

    def data(self) -> bytes:
        if self._document is not None:
            return serialize_html(self._document).encode("utf-8")
        return self.content or b""


Processor = Callable[[List[Page]], None]


class Site:
    def __init__(self, src: Union[str, Path], dest: Union[str, Path]):
        self.src = Path(src)
        self.dest = Path(dest)
        self.pages: List[Page] = []
        self.processors: List[Tuple[Tuple[str, ...], Processor]] = []
        self.lock = Lock()

    def use(self, plugin: Callable[["Site"], None]) -> "Site":
        plugin(self)
        return self

    def process(self, extensions: Sequence[str], fn: Processor) -> None:
        self.processors.append((tuple(extensions), fn))

    def add_page(self, page: Page) -> None:
        with self.lock:
            self.pages.append(page)

    def load(self) -> None:
        n = 0
        for p in sorted(self.src.rglob("*")):
            if not p.is_file():
                continue
            url = "/" + p.relative_to(self.src).as_posix()
            self.add_page(Page(url, content=p.read_bytes()))
            n += 1
        logging.info("loaded %d files from %s", n, self.src)

    def run_processors(self) -> None:
        for exts, fn in self.processors:
            with self.lock:
                batch = [page for page in self.pages if page.url.endswith(exts)]
            if batch:
                fn(batch)

    def write(self) -> List[Path]:
        written: List[Path] = []
        with self.lock:
            pages = list(self.pages)
        for page in pages:
            target = self.dest / page.url.lstrip("/")
            ensure_parent_dir(target)
            target.write_bytes(page.data())
            written.append(target)
        return written

    def build(self) -> List[Path]:
        self.load()
        self.run_processors()
        return self.write()


# -------------------- Plugin --------------------


def cache_content(
    options: Optional[Options] = None,
    *,
    fetch: Optional[Callable[[str], bytes]] = None,
    progress: Optional[ProgressLine] = None,
    **overrides: Any,
) -> Callable[[Site], None]:
    """Site plugin that caches remote images referenced from processed pages."""
    opts = merge_options(options or DEFAULTS, overrides)

    def install(site: Site) -> None:
        def register(path: str, body: bytes) -> None:
            site.add_page(Page.create(path, body))

        cache = ContentCache(opts, register, fetch=fetch, progress=progress)

        def process_pages(pages: List[Page]) -> None:
            concurrent(
                pages,
                lambda page: rewrite_document(page.document, cache),
                workers=opts.workers,
            )
            if opts.log_output:
                cache.progress.clear()
            logging.info(
                "processed %d pages, %d remote files cached",
                len(pages),
                len(cache.generated),
            )

        site.process(opts.extensions, process_pages)

    return install


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Download remote images referenced by built pages and "
        "rewrite the pages to use local copies.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("src", help="built site directory")
    p.add_argument("dest", help="output directory")
    p.add_argument(
        "--folder", type=str, default=DEFAULTS.folder, help="cache folder in output"
    )
    p.add_argument(
        "--ext",
        dest="extensions",
        action="append",
        default=None,
        help="page extension to process (repeatable, default .html)",
    )
    p.add_argument(
        "--cache-ext",
        dest="cache_extensions",
        action="append",
        default=None,
        help="remote file extension to cache (repeatable)",
    )
    p.add_argument(
        "--timeout", type=float, default=DEFAULTS.timeout, help="request timeout seconds"
    )
    p.add_argument(
        "--workers", type=int, default=DEFAULTS.workers, help="pages processed at once"
    )
    p.add_argument(
        "--retries", type=int, default=DEFAULTS.retries, help="transport retries"
    )
    p.add_argument("--quiet", action="store_true", help="no progress line")
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


# repeatable flags; given on the command line they replace the config value
LIST_KEYS = ("extensions", "cache_extensions")


def parse_args(
    argv: Optional[List[str]] = None,
) -> Tuple[argparse.Namespace, Dict[str, Any]]:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    cfg: Dict[str, Any] = {}
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        unknown = set(cfg) - set(CONFIG_KEYS)
        if unknown:
            raise RuntimeError(f"unknown config key(s): {', '.join(sorted(unknown))}")
        parser.set_defaults(**{k: v for k, v in cfg.items() if k not in LIST_KEYS})
    return parser.parse_args(argv), cfg


def options_from_args(args: argparse.Namespace, file_cfg: Mapping[str, Any]) -> Options:
    cfg = {k: getattr(args, k, None) for k in CONFIG_KEYS}
    for k in LIST_KEYS:
        if cfg[k] is None:
            cfg[k] = file_cfg.get(k)
    if args.quiet:
        cfg["log_output"] = False
    cfg["workers"] = max(1, args.workers)
    cfg["timeout"] = max(0.1, args.timeout)
    cfg["retries"] = max(0, args.retries)
    return options_from_config(cfg)


def main(argv: Optional[List[str]] = None) -> None:
    preliminary, _ = build_arg_parser().parse_known_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if preliminary.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    try:
        args, file_cfg = parse_args(argv)
        options = options_from_args(args, file_cfg)
    except (RuntimeError, TypeError, ValueError, OSError, yaml.YAMLError) as e:
        logging.error("invalid configuration: %s", e)
        sys.exit(1)

    site = Site(args.src, args.dest)
    site.use(cache_content(options))
    try:
        written = site.build()
    except requests.RequestException as e:
        logging.error("caching failed: %s", e)
        sys.exit(1)
    logging.info("wrote %d files to %s", len(written), site.dest)


if __name__ == "__main__":
    main()
