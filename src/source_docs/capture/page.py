"""Page drivers for evidence capture.

The extractor talks to a live document through the PageDriver / SourceElement
protocols. HtmlPage implements them over a BeautifulSoup tree of a sources page;
"revealing" hidden indexed information un-hides the panel behind a *show* control,
the same state change a click produces in the browser.
"""

from __future__ import annotations

import re
from typing import List, Optional, Protocol, Sequence, Tuple

from bs4 import BeautifulSoup, Comment, Tag
from pydantic import BaseModel

# Selector lists, most specific first. First match wins.
SOURCE_CONTAINER_SELECTORS = ["[data-testid='source-item']", ".source-item", "[class*='SourceCard']"]
PERSON_NAME_SELECTORS = ["[data-testid='person-name']", "h1"]
LIFESPAN_SELECTORS = ["[data-testid='person-lifespan']", ".person-lifespan"]
INDEXED_CONTAINER_SELECTORS = ["[data-testid='indexed-info']", ".indexed-info", "[class*='indexed']", "table"]
REVEAL_CONTROL_SELECTORS = ["[data-testid='show-indexed']", ".show-indexed", "button[class*='show']"]
INDEXED_ROW_SELECTOR = "tr, [class*='row'], [class*='field']"
INDEXED_CELL_SELECTOR = "td, th, [class*='label'], [class*='value']"
TEXT_BLOCK_SELECTOR = "p, [class*='text']"

PERSON_URL_RE = re.compile(r"/tree/person/(?:sources/)?([A-Z0-9-]+)", re.IGNORECASE)
BIRTH_RE = re.compile(r"(\d{1,2}\s+\w+\s+\d{4}|\d{4})\s*[–-]")
DEATH_RE = re.compile(r"[–-]\s*(\d{1,2}\s+\w+\s+\d{4}|\d{4})")


class PageInfo(BaseModel):
    person_id: str = ""
    person_name: str = ""
    birth_date: Optional[str] = None
    death_date: Optional[str] = None


class SourceElement(Protocol):
    def first_text(self, selectors: Sequence[str]) -> Optional[str]:
        ...

    def all_text(self, selectors: Sequence[str]) -> List[str]:
        ...

    def first_link(self, selectors: Sequence[str]) -> Optional[str]:
        ...

    def has_reveal_control(self) -> bool:
        ...

    def reveal(self) -> bool:
        ...

    def indexed_fields(self) -> List[Tuple[str, str]]:
        ...

    def indexed_text_blocks(self) -> List[str]:
        ...

    def indexed_visible(self) -> bool:
        ...

    def full_text(self) -> str:
        ...


class PageDriver(Protocol):
    url: str
    title: str
    locale: str

    def read_page_info(self) -> PageInfo:
        ...

    def source_elements(self) -> Sequence[SourceElement]:
        ...


def parse_page_info(url: str, name: Optional[str], lifespan: Optional[str]) -> PageInfo:
    match = PERSON_URL_RE.search(url or "")
    lifespan = lifespan or ""
    birth = BIRTH_RE.search(lifespan)
    death = DEATH_RE.search(lifespan)
    return PageInfo(
        person_id=match.group(1) if match else "",
        person_name=(name or "").strip(),
        birth_date=birth.group(1) if birth else None,
        death_date=death.group(1) if death else None,
    )


def _is_hidden(tag: Tag) -> bool:
    if tag.has_attr("hidden"):
        return True
    if tag.get("aria-hidden") == "true":
        return True
    style = (tag.get("style") or "").replace(" ", "").lower()
    return "display:none" in style


def _hidden_within(tag: Tag, root: Tag) -> bool:
    node = tag
    while node is not None and isinstance(node, Tag):
        if _is_hidden(node):
            return True
        if node is root:
            return False
        node = node.parent
    return False


def _clean(text: str) -> str:
    return " ".join(text.split())


def _visible_text(root: Tag, separator: str = " ") -> str:
    parts = []
    for string in root.find_all(string=True):
        parent = string.parent
        if isinstance(string, Comment) or parent is None or parent.name in ("script", "style"):
            continue
        if _hidden_within(parent, root):
            continue
        text = string.strip()
        if text:
            parts.append(text)
    return separator.join(parts)


def _select_first(root: Tag, selectors: Sequence[str]) -> Optional[Tag]:
    for selector in selectors:
        found = root.select_one(selector)
        if found is not None:
            return found
    return None


def _outermost(tags: List[Tag]) -> List[Tag]:
    """Drop matches nested inside another match so each source is seen once."""
    chosen = set(id(t) for t in tags)
    result = []
    for tag in tags:
        parent = tag.parent
        nested = False
        while parent is not None:
            if id(parent) in chosen:
                nested = True
                break
            parent = parent.parent
        if not nested:
            result.append(tag)
    return result


class HtmlSourceElement:
    def __init__(self, tag: Tag):
        self.tag = tag

    def first_text(self, selectors: Sequence[str]) -> Optional[str]:
        found = _select_first(self.tag, selectors)
        if found is None or _hidden_within(found, self.tag):
            return None
        text = _clean(_visible_text(found))
        return text or None

    def all_text(self, selectors: Sequence[str]) -> List[str]:
        values = []
        for found in self.tag.select(", ".join(selectors)):
            if _hidden_within(found, self.tag):
                continue
            values.append(_clean(_visible_text(found)))
        return values

    def first_link(self, selectors: Sequence[str]) -> Optional[str]:
        found = _select_first(self.tag, selectors)
        if found is None:
            return None
        return found.get("href") or None

    def _reveal_control(self) -> Optional[Tag]:
        control = _select_first(self.tag, REVEAL_CONTROL_SELECTORS)
        if control is not None:
            return control
        for candidate in self.tag.select("button, [role='button']"):
            if "show" in candidate.get_text().lower():
                return candidate
        return None

    def _indexed_container(self) -> Optional[Tag]:
        return _select_first(self.tag, INDEXED_CONTAINER_SELECTORS)

    def has_reveal_control(self) -> bool:
        control = self._reveal_control()
        return control is not None and control.get("aria-expanded") != "true"

    def reveal(self) -> bool:
        control = self._reveal_control()
        container = self._indexed_container()
        if control is None or container is None:
            return False
        node = container
        while node is not None and node is not self.tag:
            if node.has_attr("hidden"):
                del node["hidden"]
            if node.get("aria-hidden") == "true":
                node["aria-hidden"] = "false"
            style = node.get("style")
            if style and "display" in style.replace(" ", "").lower():
                node["style"] = re.sub(r"display\s*:\s*none\s*;?", "", style, flags=re.IGNORECASE)
            node = node.parent
        control["aria-expanded"] = "true"
        return not _hidden_within(container, self.tag)

    def indexed_visible(self) -> bool:
        container = self._indexed_container()
        return container is not None and not _hidden_within(container, self.tag)

    def indexed_fields(self) -> List[Tuple[str, str]]:
        container = self._indexed_container()
        if container is None or _hidden_within(container, self.tag):
            return []
        fields = []
        for row in container.select(INDEXED_ROW_SELECTOR):
            cells = row.select(INDEXED_CELL_SELECTOR)
            if len(cells) >= 2:
                fields.append((_clean(cells[0].get_text(" ")), _clean(cells[1].get_text(" "))))
        return fields

    def indexed_text_blocks(self) -> List[str]:
        container = self._indexed_container()
        if container is None or _hidden_within(container, self.tag):
            return []
        blocks = []
        for block in container.select(TEXT_BLOCK_SELECTOR):
            text = _clean(block.get_text(" "))
            if text:
                blocks.append(text)
        return blocks

    def full_text(self) -> str:
        return _visible_text(self.tag, separator="\n")


class HtmlPage:
    """A sources page parsed from HTML."""

    def __init__(self, html: str, url: str = ""):
        self.soup = BeautifulSoup(html, "html.parser")
        self.url = url
        title = self.soup.title
        self.title = _clean(title.get_text()) if title else ""
        html_tag = self.soup.find("html")
        lang = html_tag.get("lang") if isinstance(html_tag, Tag) else None
        self.locale = lang or "en"
        self._elements: Optional[List[HtmlSourceElement]] = None

    def source_elements(self) -> List[HtmlSourceElement]:
        if self._elements is None:
            tags = self.soup.select(", ".join(SOURCE_CONTAINER_SELECTORS))
            self._elements = [HtmlSourceElement(t) for t in _outermost(tags)]
        return self._elements

    def read_page_info(self) -> PageInfo:
        name_tag = _select_first(self.soup, PERSON_NAME_SELECTORS)
        lifespan_tag = _select_first(self.soup, LIFESPAN_SELECTORS)
        return parse_page_info(
            self.url,
            name_tag.get_text() if name_tag else None,
            lifespan_tag.get_text() if lifespan_tag else None,
        )
