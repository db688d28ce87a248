"""Tests for document parsing."""

import json
from pathlib import Path

import pytest

from superbrain.core.errors import ParseError
from superbrain.indexer.parser import (
    SUPPORTED_EXTENSIONS,
    clean_text,
    file_type,
    is_supported,
    parse_file,
    strip_markup,
)


def test_allow_list():
    for ext in ["py", "rs", "md", "txt", "html", "pdf", "docx", "json", "yaml"]:
        assert ext in SUPPORTED_EXTENSIONS
    assert is_supported("notes.MD")
    assert is_supported(Path("Dockerfile"))
    assert not is_supported("photo.jpg")
    assert not is_supported("archive.zip")


def test_file_type():
    assert file_type("a/b/Report.PDF") == "pdf"
    assert file_type("Makefile") == "makefile"


def test_clean_text():
    assert clean_text("  a  \n\n\n  b\t\n") == "a\nb"


def test_strip_markup():
    html = "<html><style>p{}</style><script>x()</script><!-- c --><p>Hi &amp; bye</p></html>"
    assert clean_text(strip_markup(html)) == "Hi & bye"


def test_parse_plain_text(tmp_path: Path):
    path = tmp_path / "notes.txt"
    path.write_text("first line\n\n   second line   \n", encoding="utf-8")
    assert parse_file(path) == "first line\nsecond line"


def test_parse_html(tmp_path: Path):
    path = tmp_path / "page.html"
    path.write_text("<h1>Title</h1><p>Body text</p>", encoding="utf-8")
    text = parse_file(path)
    assert "Title" in text
    assert "Body text" in text
    assert "<" not in text


def test_parse_notebook(tmp_path: Path):
    path = tmp_path / "analysis.ipynb"
    path.write_text(json.dumps({
        "cells": [
            {"cell_type": "markdown", "source": ["# Results\n", "Looks good"]},
            {"cell_type": "code", "source": "print('hi')"},
        ]
    }), encoding="utf-8")
    text = parse_file(path)
    assert "# Results" in text
    assert "print('hi')" in text


def test_parse_docx(tmp_path: Path):
    from docx import Document

    path = tmp_path / "report.docx"
    doc = Document()
    doc.add_paragraph("Quarterly revenue grew")
    table = doc.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = "Region"
    table.rows[0].cells[1].text = "North"
    doc.save(str(path))

    text = parse_file(path)
    assert "Quarterly revenue grew" in text
    assert "Region | North" in text


def test_parse_pdf(tmp_path: Path):
    import fitz

    path = tmp_path / "paper.pdf"
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), "Semantic search over local files")
    doc.save(str(path))
    doc.close()

    assert "Semantic search over local files" in parse_file(path)


def test_corrupt_pdf(tmp_path: Path):
    path = tmp_path / "broken.pdf"
    path.write_bytes(b"this is not a pdf")
    with pytest.raises(ParseError) as exc:
        parse_file(path)
    assert exc.value.path == str(path)


def test_corrupt_docx(tmp_path: Path):
    path = tmp_path / "broken.docx"
    path.write_bytes(b"not a zip archive")
    with pytest.raises(ParseError):
        parse_file(path)


def test_unsupported_extension(tmp_path: Path):
    path = tmp_path / "image.png"
    path.write_bytes(b"\x89PNG")
    with pytest.raises(ParseError, match="unsupported"):
        parse_file(path)


def test_too_large(tmp_path: Path):
    path = tmp_path / "big.txt"
    path.write_text("x" * 100, encoding="utf-8")
    with pytest.raises(ParseError, match="too large"):
        parse_file(path, max_bytes=10)


def test_missing_file(tmp_path: Path):
    with pytest.raises(ParseError):
        parse_file(tmp_path / "gone.txt")


def test_invalid_utf8_is_replaced(tmp_path: Path):
    path = tmp_path / "latin.txt"
    path.write_bytes(b"caf\xe9 au lait")
    assert "au lait" in parse_file(path)
