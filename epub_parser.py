"""
epub_parser.py — EPUB structuring into a Book -> Chapter -> Paragraph tree.

Reading order comes from the OPF spine. When the spine is empty (seen in
books exported by some Apple tooling), the manifest's resource index is
scanned for hypertext documents instead, in index order.

Chapter titles are looked up in the navigation map (NCX or EPUB3 nav). Many
containers nest content under a directory that navigation hrefs leave out,
so a few path variants are tried before falling back to "Chapter N".

Body text is every <p> element by default. If a set of body-text class
names is supplied (see class_samples()), elements carrying one of those
classes are used instead; <p> extraction remains the fallback.
"""

from __future__ import annotations
from collections import Counter
from dataclasses import dataclass, field
import os
import posixpath
import tempfile
from typing import Callable, Iterable, Optional, Union
from urllib.parse import unquote, urldefrag

import ebooklib
from ebooklib import epub
from bs4 import BeautifulSoup

from errors import ContainerError, ContentExtractionError


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class Paragraph:
    content: str
    summary: Optional[str] = None
    skip: bool = False


@dataclass
class Chapter:
    id: Union[int, str]
    href: str
    title: str
    content: str = ""
    paragraphs: list[Paragraph] = field(default_factory=list)
    summary: Optional[str] = None
    analysis: Optional[str] = None
    skip: bool = False


@dataclass
class Book:
    title: str
    metadata: dict[str, str] = field(default_factory=dict)
    content: str = ""
    chapters: list[Chapter] = field(default_factory=list)
    summary: Optional[str] = None
    analysis: Optional[str] = None
    skip: bool = False

    def count_units(self) -> int:
        return 1 + len(self.chapters) + sum(len(c.paragraphs) for c in self.chapters)

    def node_at(self, path: Iterable[int]) -> Union["Book", Chapter, Paragraph]:
        """Drill down by source-order index: [] -> book, [i] -> chapter, [i, j] -> paragraph."""
        indices = list(path)
        if not indices:
            return self
        if len(indices) > 2:
            raise IndexError(f"Path too deep: {indices}")
        chapter = self.chapters[indices[0]]
        if len(indices) == 1:
            return chapter
        return chapter.paragraphs[indices[1]]


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------

NON_BODY_HINTS: tuple[str, ...] = ("nav", "cover")
CONTENT_PREFIXES: tuple[str, ...] = ("OEBPS/", "OPS/", "Text/", "text/")
HYPERTEXT_EXTENSIONS: tuple[str, ...] = (".xhtml", ".html", ".htm")
STRIPPED_TAGS: tuple[str, ...] = ("script", "style")


def _normalize_path(p: str) -> str:
    p = unquote(p).replace("\\", "/")
    return posixpath.normpath(p).lstrip("/")


def _looks_like_non_body(ref: str) -> bool:
    base = posixpath.basename(ref).lower()
    return any(hint in base for hint in NON_BODY_HINTS)


def _is_hypertext(item) -> bool:
    if isinstance(item, epub.EpubHtml):
        return True
    name = (item.get_name() or "").lower()
    return item.get_type() == ebooklib.ITEM_DOCUMENT or name.endswith(HYPERTEXT_EXTENSIONS)


def _href_variants(ref: str) -> list[str]:
    """Candidate spellings of a content path as navigation might write it."""
    base = _normalize_path(ref)
    variants = [base]

    parts = base.split("/")
    for i in range(1, len(parts)):
        variants.append("/".join(parts[i:]))

    for prefix in CONTENT_PREFIXES:
        if base.startswith(prefix):
            variants.append(base[len(prefix):])
        else:
            variants.append(prefix + base)

    unique: list[str] = []
    for v in variants:
        if v and v not in unique:
            unique.append(v)
    return unique


def _flatten_toc(toc) -> list[tuple[str, str]]:
    """Flatten ebooklib's toc (Links and (Section, children) tuples) depth-first."""
    out: list[tuple[str, str]] = []

    def walk(node):
        if isinstance(node, tuple) and len(node) == 2 and isinstance(node[0], epub.Section):
            section, children = node
            if section.href:
                out.append((section.href, section.title or ""))
            walk(children)
        elif isinstance(node, (list, tuple)):
            for n in node:
                walk(n)
        elif isinstance(node, (epub.Link, epub.Section)):
            if node.href:
                out.append((node.href, node.title or ""))

    walk(toc or [])
    return [(_normalize_path(urldefrag(href)[0]), title.strip()) for href, title in out]


def _dc_values(book: epub.EpubBook, name: str) -> list[str]:
    try:
        values = book.get_metadata("DC", name)
    except KeyError:
        return []
    return [str(v).strip() for v, _ in values if v and str(v).strip()]


def _read_metadata(book: epub.EpubBook) -> dict[str, str]:
    metadata: dict[str, str] = {}
    for name in ("title", "creator", "language", "publisher", "date", "identifier", "description"):
        values = _dc_values(book, name)
        if values:
            metadata[name] = ", ".join(values) if name == "creator" else values[0]
    return metadata


class _ManifestTolerantReader(epub.EpubReader):
    """EpubReader that records manifest members missing from the archive instead of failing."""

    def __init__(self, epub_file_name, options=None):
        super().__init__(epub_file_name, options)
        self.missing: set[str] = set()
        self._in_manifest = False

    def _load_manifest(self):
        self._in_manifest = True
        try:
            super()._load_manifest()
        finally:
            self._in_manifest = False

    def read_file(self, name):
        try:
            return super().read_file(name)
        except KeyError:
            if not self._in_manifest:
                raise
            self.missing.add(_normalize_path(name))
            return b""


def _clean_text(text: str) -> str:
    return " ".join(text.split())


def _has_class(el, classes: set[str]) -> bool:
    return any(c in classes for c in (el.get("class") or []))


# ---------------------------------------------------------------------------
# Structurer
# ---------------------------------------------------------------------------

class EpubStructurer:
    def __init__(
        self,
        data: bytes,
        filename: str,
        *,
        verbose: bool = False,
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        self.filename = filename
        self.verbose = verbose
        self.on_error = on_error
        self.errors: list[ContentExtractionError] = []
        self.used_fallback = False
        self._soups: dict[str, BeautifulSoup] = {}
        self._missing: set[str] = set()
        self._opf_dir = ""

        self.book = self._open(data)
        self._toc = _flatten_toc(getattr(self.book, "toc", None))
        self.items = self._resolve_reading_order()

    def _log(self, msg: str):
        if self.verbose:
            print(msg, flush=True)

    def _record(self, exc: ContentExtractionError):
        self.errors.append(exc)
        self._log(f"  [skip] {exc}")
        if self.on_error is not None:
            self.on_error(exc)

    def _open(self, data: bytes) -> epub.EpubBook:
        if not data:
            raise ContainerError(f"{self.filename}: empty container")
        self._log(f"\n[Phase 1] Opening container {self.filename} ({len(data):,} bytes)...")

        with tempfile.NamedTemporaryFile(suffix=".epub", delete=False) as tmp:
            tmp.write(data)
            path = tmp.name
        try:
            reader = _ManifestTolerantReader(path, {"ignore_ncx": True})
            book = reader.load()
            reader.process()
            self._missing = reader.missing
            self._opf_dir = reader.opf_dir
            return book
        except Exception as e:
            raise ContainerError(f"{self.filename}: could not open container: {e}") from e
        finally:
            os.unlink(path)

    # -----------------------------------------------------------------------
    # Reading order
    # -----------------------------------------------------------------------

    def _spine_entries(self) -> list[tuple[str, Optional[epub.EpubItem]]]:
        entries: list[tuple[str, Optional[epub.EpubItem]]] = []
        for entry in getattr(self.book, "spine", None) or []:
            idref = entry if isinstance(entry, str) else entry[0]
            item = self.book.get_item_with_id(idref)
            if item is None:
                entries.append((idref, None))
            elif _is_hypertext(item):
                entries.append((_normalize_path(item.get_name()), item))
        return entries

    def _resource_index_entries(self) -> list[tuple[str, Optional[epub.EpubItem]]]:
        return [
            (_normalize_path(item.get_name()), item)
            for item in self.book.get_items()
            if _is_hypertext(item)
        ]

    def _resolve_reading_order(self) -> list[tuple[str, Optional[epub.EpubItem]]]:
        entries = self._spine_entries()
        if not entries:
            self._log("  Spine is empty; building reading order from the resource index")
            entries = self._resource_index_entries()
            self.used_fallback = True

        kept: list[tuple[str, Optional[epub.EpubItem]]] = []
        for ref, item in entries:
            if isinstance(item, (epub.EpubNav, epub.EpubCoverHtml)) or _looks_like_non_body(ref):
                self._log(f"  Skipping non-body item: {ref}")
                continue
            kept.append((ref, item))

        if not kept:
            raise ContainerError(f"{self.filename}: no readable content documents found")
        self._log(f"  Reading order: {len(kept)} items" + (" (fallback)" if self.used_fallback else ""))
        return kept

    # -----------------------------------------------------------------------
    # Titles and body text
    # -----------------------------------------------------------------------

    def find_title(self, ref: str) -> Optional[str]:
        variants = _href_variants(ref)
        for variant in variants:
            for href, title in self._toc:
                if title and href == variant:
                    return title
        # Suffix matches need a directory part, or any same-named file would match.
        for variant in variants:
            if "/" not in variant:
                continue
            for href, title in self._toc:
                if title and href.endswith("/" + variant):
                    return title
        return None

    def _soup(self, ref: str, item: Optional[epub.EpubItem]) -> BeautifulSoup:
        if ref in self._soups:
            return self._soups[ref]
        if item is None:
            raise ContentExtractionError(ref, "referenced by the reading order but missing from the manifest")
        if _normalize_path(posixpath.join(self._opf_dir, ref)) in self._missing:
            raise ContentExtractionError(ref, "listed in the manifest but missing from the container")
        raw = item.get_content()
        if not raw or not raw.strip():
            raise ContentExtractionError(ref, "document is empty")

        soup = BeautifulSoup(raw, "lxml")
        for tag in soup(list(STRIPPED_TAGS)):
            tag.decompose()
        self._soups[ref] = soup
        return soup

    def extract_paragraphs(
        self,
        ref: str,
        item: Optional[epub.EpubItem],
        body_classes: Optional[set[str]] = None,
    ) -> list[str]:
        body = self._soup(ref, item)
        body = body.body or body

        elements = []
        if body_classes:
            selected: set[int] = set()
            for el in body.find_all(True):
                if not _has_class(el, body_classes):
                    continue
                if any(id(parent) in selected for parent in el.parents):
                    continue
                selected.add(id(el))
                elements.append(el)
        if not elements:
            elements = body.find_all("p")

        texts = [_clean_text(el.get_text(" ", strip=True)) for el in elements]
        return [t for t in texts if t]

    def class_samples(self, max_classes: int = 40) -> dict[str, str]:
        """Class name -> sample text, most frequently used classes first."""
        counts: Counter = Counter()
        samples: dict[str, str] = {}
        for ref, item in self.items:
            try:
                soup = self._soup(ref, item)
            except ContentExtractionError:
                continue
            for el in (soup.body or soup).find_all(class_=True):
                text = _clean_text(el.get_text(" ", strip=True))
                for cls in el.get("class") or []:
                    counts[cls] += 1
                    if text and cls not in samples:
                        samples[cls] = text[:200]
        return {cls: samples.get(cls, "") for cls, _ in counts.most_common(max_classes)}

    # -----------------------------------------------------------------------
    # Tree
    # -----------------------------------------------------------------------

    def structure(self, body_classes: Optional[Iterable[str]] = None) -> Book:
        classes = set(body_classes) if body_classes else None
        self._log(f"\n[Phase 2] Extracting chapters ({len(self.items)} items)...")

        metadata = _read_metadata(self.book)
        stem = posixpath.splitext(posixpath.basename(self.filename.replace("\\", "/")))[0]
        book = Book(
            title=metadata.get("title") or stem or "Untitled EPUB",
            metadata=metadata,
        )

        for i, (ref, item) in enumerate(self.items):
            try:
                texts = self.extract_paragraphs(ref, item, classes)
            except ContentExtractionError as e:
                self._record(e)
                continue
            except Exception as e:
                self._record(ContentExtractionError(ref, str(e)))
                continue

            chapter = Chapter(
                id=i,
                href=ref,
                title=self.find_title(ref) or f"Chapter {i + 1}",
                content="\n\n".join(texts),
                paragraphs=[Paragraph(content=t) for t in texts],
            )
            if not chapter.paragraphs:
                chapter.skip = True
            book.chapters.append(chapter)
            self._log(f"  {chapter.title}: {len(chapter.paragraphs)} paragraphs")

        book.content = "\n\n".join(c.content for c in book.chapters if c.content)
        self._log(
            f"  Structured {len(book.chapters)} chapters, "
            f"{sum(len(c.paragraphs) for c in book.chapters)} paragraphs "
            f"({len(self.errors)} items skipped)"
        )
        return book


def structure(
    data: bytes,
    filename: str,
    body_classes: Optional[Iterable[str]] = None,
    *,
    verbose: bool = False,
    on_error: Optional[Callable[[Exception], None]] = None,
) -> Book:
    return EpubStructurer(data, filename, verbose=verbose, on_error=on_error).structure(body_classes)
