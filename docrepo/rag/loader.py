"""
Text extraction for document sources.

Supports plain-text-like files (by mimetype or known extension), web pages
fetched over HTTP and reduced to text with BeautifulSoup, sitemap
expansion through ``<loc>`` entries, and raw text sources.
"""

import asyncio
import mimetypes
import os
import re

import structlog
from bs4 import BeautifulSoup

from docrepo.rag.errors import LoadFailure, UnsupportedType
from docrepo.rag.http_client import HTTPClient, HTTPClientError, RetryConfig
from docrepo.rag.schemas import SourceType

logger = structlog.get_logger(__name__)

TEXT_MIMETYPES = {
    "application/json",
    "application/javascript",
    "application/x-javascript",
    "application/xml",
    "application/x-sh",
    "application/x-yaml",
    "application/yaml",
    "application/toml",
}

TEXT_EXTENSIONS = {
    ".md", ".markdown", ".mdx", ".rst", ".txt", ".log", ".csv", ".tsv",
    ".py", ".pyi", ".js", ".mjs", ".cjs", ".ts", ".tsx", ".jsx", ".vue",
    ".java", ".kt", ".scala", ".go", ".rs", ".rb", ".php", ".swift",
    ".c", ".h", ".cc", ".cpp", ".hpp", ".cs", ".m", ".sql", ".sh", ".bash",
    ".zsh", ".ps1", ".r", ".lua", ".pl", ".ex", ".exs", ".dart",
    ".json", ".yaml", ".yml", ".toml", ".ini", ".cfg", ".conf",
    ".xml", ".html", ".htm", ".css", ".scss", ".tex",
}

HTML_EXTENSIONS = {".html", ".htm"}

_WHITESPACE_RE = re.compile(r"[ \t]+")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")


def list_files_recursively(folder: str) -> list[str]:
    """All files under ``folder``, skipping dotfiles and dot-directories."""
    files: list[str] = []
    for root, dirs, names in os.walk(folder):
        dirs[:] = sorted(d for d in dirs if not d.startswith("."))
        for name in sorted(names):
            if not name.startswith("."):
                files.append(os.path.join(root, name))
    return files


def html_to_text(html: str) -> tuple[str | None, str]:
    """Return the page ``<title>`` (if any) and its visible text."""
    soup = BeautifulSoup(html, "html.parser")

    title = None
    if soup.title and soup.title.string:
        title = soup.title.string.strip() or None

    for element in soup(["script", "style", "noscript", "nav", "footer", "header"]):
        element.decompose()

    text = soup.get_text(separator="\n")
    text = _WHITESPACE_RE.sub(" ", text)
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return title, text.strip()


class Loader:
    """
    Extracts text from a source.

    Usage:
        loader = Loader()
        if loader.is_parseable(SourceType.FILE, "/notes/todo.md"):
            text = await loader.load(SourceType.FILE, "/notes/todo.md")
    """

    def __init__(
        self,
        retry_config: RetryConfig | None = None,
        timeout: float = 30.0,
    ):
        self._retry_config = retry_config
        self._timeout = timeout

    def is_parseable(self, source_type: SourceType, origin: str) -> bool:
        source_type = SourceType(source_type)
        if source_type in (SourceType.URL, SourceType.SITEMAP, SourceType.TEXT):
            return True
        if source_type == SourceType.FOLDER:
            return os.path.isdir(origin)
        return self._is_text_file(origin)

    def _is_text_file(self, path: str) -> bool:
        extension = os.path.splitext(path)[1].lower()
        if extension in TEXT_EXTENSIONS:
            return True
        mimetype, _ = mimetypes.guess_type(path)
        if mimetype is None:
            return False
        return mimetype.startswith("text/") or mimetype in TEXT_MIMETYPES

    async def load(self, source_type: SourceType, origin: str) -> str:
        """
        Extract the text of a leaf source.

        Raises:
            UnsupportedType: the loader cannot parse this source
            LoadFailure: reading or fetching failed
        """
        source_type = SourceType(source_type)
        if source_type == SourceType.TEXT:
            return origin
        if source_type == SourceType.URL:
            return await self._load_url(origin)
        if source_type == SourceType.FILE and self._is_text_file(origin):
            return await self._load_file(origin)
        raise UnsupportedType(source_type.value, origin)

    async def _load_file(self, path: str) -> str:
        try:
            text = await asyncio.to_thread(_read_text, path)
        except OSError as e:
            raise LoadFailure(path, f"Unable to read file ({e.strerror})") from e

        if os.path.splitext(path)[1].lower() in HTML_EXTENSIONS:
            _, text = html_to_text(text)
        return text

    async def _fetch(self, url: str) -> str:
        try:
            async with HTTPClient(
                self._retry_config or RetryConfig.from_settings(),
                timeout=self._timeout,
            ) as client:
                response = await client.get(url)
        except HTTPClientError as e:
            raise LoadFailure(url, f"Unable to fetch ({e})") from e
        return response.text

    async def _load_url(self, url: str) -> str:
        html = await self._fetch(url)
        title, text = html_to_text(html)
        if not text:
            return ""
        # keep the title marker so the page title can be picked up downstream
        if title:
            return f"<title>{title}</title>\n\n{text}"
        return text

    async def get_sitemap_urls(self, url: str) -> list[str]:
        """
        Page urls listed in a sitemap.

        Raises:
            LoadFailure: the sitemap could not be fetched
        """
        xml = await self._fetch(url)
        soup = BeautifulSoup(xml, "html.parser")

        urls: list[str] = []
        seen: set[str] = set()
        for loc in soup.find_all("loc"):
            page = loc.get_text(strip=True)
            if page and page not in seen:
                seen.add(page)
                urls.append(page)

        logger.debug("Sitemap parsed", url=url, pages=len(urls))
        return urls


def _read_text(path: str) -> str:
    with open(path, encoding="utf-8", errors="replace") as f:
        return f.read()
