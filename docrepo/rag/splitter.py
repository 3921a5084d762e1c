"""
Recursive character text splitter.

Splits on the coarsest separator that occurs in the text (paragraphs, then
lines, then words, then characters), recursing into pieces that are still
too long, and merges neighbouring pieces back up to ``chunk_size`` with a
sliding ``chunk_overlap``.
"""

from collections import deque

DEFAULT_SEPARATORS = ["\n\n", "\n", " ", ""]


class RecursiveCharacterSplitter:
    """
    Usage:
        splitter = RecursiveCharacterSplitter(chunk_size=1000, chunk_overlap=200)
        chunks = splitter.split(text)
    """

    def __init__(
        self,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        separators: list[str] | None = None,
    ):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError(
                f"chunk_overlap ({chunk_overlap}) must be in [0, chunk_size)"
            )
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = separators or list(DEFAULT_SEPARATORS)

    def split(self, text: str) -> list[str]:
        """Ordered chunks, none longer than ``chunk_size``."""
        return self._split(text, self.separators)

    def _split(self, text: str, separators: list[str]) -> list[str]:
        separator = separators[-1]
        remaining: list[str] = []
        for i, candidate in enumerate(separators):
            if candidate == "" or candidate in text:
                separator = candidate
                remaining = separators[i + 1 :]
                break

        pieces = text.split(separator) if separator else list(text)

        chunks: list[str] = []
        short: list[str] = []
        for piece in pieces:
            if len(piece) < self.chunk_size:
                short.append(piece)
                continue

            if short:
                chunks.extend(self._merge(short, separator))
                short = []
            if remaining:
                chunks.extend(self._split(piece, remaining))
            else:
                chunks.append(piece)

        if short:
            chunks.extend(self._merge(short, separator))
        return chunks

    def _merge(self, pieces: list[str], separator: str) -> list[str]:
        sep_len = len(separator)
        chunks: list[str] = []
        window: deque[str] = deque()
        total = 0

        for piece in pieces:
            extra = sep_len if window else 0
            if total + len(piece) + extra > self.chunk_size and window:
                chunk = separator.join(window).strip()
                if chunk:
                    chunks.append(chunk)
                # slide: drop from the front until within the overlap and the
                # next piece fits
                while window and (
                    total > self.chunk_overlap
                    or total + len(piece) + (sep_len if window else 0) > self.chunk_size
                ):
                    total -= len(window[0]) + (sep_len if len(window) > 1 else 0)
                    window.popleft()

            window.append(piece)
            total += len(piece) + (sep_len if len(window) > 1 else 0)

        chunk = separator.join(window).strip()
        if chunk:
            chunks.append(chunk)
        return chunks
