"""Document parsing - turns supported files into normalised plain text.

Only extensions on the allow-list are parsed; everything else is skipped by
the indexer without counting as an error. PDF goes through PyMuPDF, DOCX
through python-docx, markup has its tags stripped, the rest is read as text.
"""

import json
import re
from pathlib import Path

from superbrain.core.errors import ParseError
from superbrain.core.logging import get_logger

logger = get_logger("indexer.parser")

CODE_EXTENSIONS = frozenset({
    "py", "pyi", "rs", "go", "java", "kt", "kts", "scala", "swift", "c", "h", "cc",
    "cpp", "cxx", "hpp", "hh", "cs", "fs", "js", "jsx", "mjs", "cjs", "ts", "tsx",
    "vue", "svelte", "rb", "php", "pl", "pm", "lua", "r", "jl", "dart", "ex", "exs",
    "erl", "hs", "clj", "elm", "ml", "mli", "nim", "zig", "sh", "bash", "zsh", "fish",
    "ps1", "bat", "cmd", "sql", "graphql", "proto", "m", "mm", "groovy", "gradle",
    "cmake", "make", "mk", "dockerfile", "tf", "hcl", "sol", "asm", "s", "v", "vhd",
})

TEXT_EXTENSIONS = frozenset({
    "txt", "text", "md", "markdown", "mdx", "rst", "adoc", "org", "tex", "bib",
    "log", "csv", "tsv", "json", "jsonl", "ndjson", "yaml", "yml", "toml", "ini",
    "cfg", "conf", "env", "properties", "css", "scss", "sass", "less", "srt", "vtt",
    "ipynb", "rtf",
})

MARKUP_EXTENSIONS = frozenset({"html", "htm", "xhtml", "xml", "svg", "xsl", "plist"})

DOCUMENT_EXTENSIONS = frozenset({"pdf", "docx"})

SUPPORTED_EXTENSIONS = CODE_EXTENSIONS | TEXT_EXTENSIONS | MARKUP_EXTENSIONS | DOCUMENT_EXTENSIONS

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.DOTALL | re.IGNORECASE)
_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_ENTITY_MAP = {"&nbsp;": " ", "&amp;": "&", "&lt;": "<", "&gt;": ">", "&quot;": '"', "&#39;": "'"}


def file_type(path: Path | str) -> str:
    """Lowercase extension without the dot; bare names like Dockerfile map to themselves."""
    path = Path(path)
    suffix = path.suffix.lstrip(".").lower()
    return suffix or path.name.lower()


def is_supported(path: Path | str) -> bool:
    return file_type(path) in SUPPORTED_EXTENSIONS


def clean_text(content: str) -> str:
    """Strip each line and drop blank ones."""
    lines = (line.strip() for line in content.splitlines())
    return "\n".join(line for line in lines if line)


def strip_markup(content: str) -> str:
    content = _SCRIPT_STYLE_RE.sub("", content)
    content = _COMMENT_RE.sub("", content)
    content = _TAG_RE.sub(" ", content)
    for entity, char in _ENTITY_MAP.items():
        content = content.replace(entity, char)
    return content


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


def _extract_pdf(path: Path) -> str:
    import fitz  # pymupdf

    with fitz.open(str(path)) as doc:
        return "\n\n".join(page.get_text() for page in doc)


def _extract_docx(path: Path) -> str:
    from docx import Document

    doc = Document(str(path))
    paragraphs = [p.text for p in doc.paragraphs if p.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                paragraphs.append(" | ".join(cells))
    return "\n\n".join(paragraphs)


def _extract_notebook(path: Path) -> str:
    data = json.loads(_read_text(path))
    parts = []
    for cell in data.get("cells", []):
        source = cell.get("source", "")
        parts.append("".join(source) if isinstance(source, list) else str(source))
    return "\n\n".join(parts)


def parse_file(path: Path | str, max_bytes: int | None = None) -> str:
    """Extract normalised text from a supported file.

    Raises:
        ParseError: unsupported type, too large, unreadable or corrupt
    """
    path = Path(path)
    kind = file_type(path)
    if kind not in SUPPORTED_EXTENSIONS:
        raise ParseError(str(path), f"unsupported file type: {kind}")

    try:
        size = path.stat().st_size
    except OSError as e:
        raise ParseError(str(path), f"cannot stat: {e}") from e
    if max_bytes is not None and size > max_bytes:
        raise ParseError(str(path), f"too large ({size / 1_048_576:.1f} MB)")

    try:
        if kind == "pdf":
            raw = _extract_pdf(path)
        elif kind == "docx":
            raw = _extract_docx(path)
        elif kind == "ipynb":
            raw = _extract_notebook(path)
        elif kind in MARKUP_EXTENSIONS:
            raw = strip_markup(_read_text(path))
        else:
            raw = _read_text(path)
    except ParseError:
        raise
    except Exception as e:
        # Library-specific corruption errors (fitz, docx, zipfile, json) end up here
        raise ParseError(str(path), f"{type(e).__name__}: {e}") from e

    text = clean_text(raw)
    logger.debug(f"Parsed {path} ({kind}): {len(text)} chars")
    return text
