"""
Text and regex driven page interaction for raw portal markup.

Everything here is pure: it reads HTML that was already fetched and answers
questions about forms, bill listings and download links.
"""

import html as html_lib
import re
from typing import Dict, List, Optional
from urllib.parse import parse_qsl, urljoin, urlsplit

from bs4 import BeautifulSoup, Tag


FORM_INPUTS = (
    'input[type="hidden"], input[type="text"], input[type="search"], '
    'input[type="password"], input[type="email"]'
)

ACCORDION_TARGET_PATTERNS = (
    re.compile(r"""onclick="[^"]*OsAjax\([^,]*,\s*'([^']+_block_wt5)'"""),
    re.compile(r"""onclick="[^"]*OsAjax\([^,]*,\s*'([^']+CustomAccordionItem[^']+)'"""),
)

MODAL_DOWNLOAD_PATTERN = re.compile(r'href="(ModalDownload_ComprovanteConta\.aspx\?[^"]+)"')
MONTH_SHAPE = re.compile(r"\b(0[1-9]|1[0-2])/\d{4}\b")

LISTING_ENTRIES = ".accordion-item, .accordion-group"

DOWNLOAD_LINKS = 'a[href*="download" i], a[href*=".pdf" i]'
PDF_LINKS = 'a[href*=".pdf"], a[href*="Download"], iframe[src*=".pdf"]'

ROW_SHAPES = (
    ("tr", None),
    ("div", "TableVerticalAlign"),
    ("div", "row"),
)
CONTAINER_DEPTH = 3


def _has_class(tag: Tag, fragment: str) -> bool:
    return any(fragment in cls for cls in tag.get("class") or [])


class MarkupPage:
    """Parsed HTML document plus the URL it was served from."""

    def __init__(self, html: str, url: str = ""):
        self.html = html
        self.url = url
        self.soup = BeautifulSoup(html, "html.parser")

    # ==================== Forms ====================

    def value_of(self, name: str) -> str:
        field = self.soup.find("input", attrs={"name": name})
        return (field.get("value") or "") if field else ""

    def name_of(self, selector: str) -> str:
        field = self.soup.select_one(selector)
        return (field.get("name") or "") if field else ""

    def attr_of(self, selector: str, attr: str) -> Optional[str]:
        node = self.soup.select_one(selector)
        return node.get(attr) if node else None

    def text_of(self, selector: str) -> str:
        node = self.soup.select_one(selector)
        return node.get_text(" ", strip=True) if node else ""

    def has(self, selector: str) -> bool:
        return self.soup.select_one(selector) is not None

    @property
    def title(self) -> str:
        return self.soup.title.get_text(strip=True) if self.soup.title else ""

    def form_fields(self) -> Dict[str, str]:
        """
        Every field a WebForms post-back expects: hidden and text-like inputs
        with their current value, plus checked checkboxes as ``on``.
        """
        fields: Dict[str, str] = {}
        for field in self.soup.select(FORM_INPUTS):
            name = field.get("name")
            if name:
                fields[name] = field.get("value") or ""
        for box in self.soup.select('input[type="checkbox"]'):
            name = box.get("name")
            if name and box.has_attr("checked"):
                fields[name] = "on"
        return fields

    def postback_fields(self) -> Dict[str, str]:
        """Hidden/text inputs and selects, for an AJAX post-back on a listing page."""
        fields: Dict[str, str] = {}
        for field in self.soup.select('input[type="hidden"], input[type="text"], select'):
            name = field.get("name")
            if not name or name in fields:
                continue
            if field.name == "select":
                chosen = field.find("option", selected=True) or field.find("option")
                fields[name] = (chosen.get("value") or "") if chosen else ""
            else:
                fields[name] = field.get("value") or ""
        return fields

    # ==================== Listing ====================

    def installation_block(self, code: str) -> Optional[Tag]:
        """
        The listing entry whose labeled code equals ``code`` exactly.

        Falls back to any accordion entry mentioning the code.
        """
        for label in self.soup.select(".verde-span"):
            if label.get_text(strip=True) == code:
                item = label.find_parent(class_="accordion-item") or label.find_parent(class_="accordion-group")
                if item is not None:
                    return item
        for item in self.soup.select(LISTING_ENTRIES):
            if any(text.strip() == code for text in item.find_all(string=True)):
                return item
        return None

    def entry_count(self) -> int:
        return len(self.soup.select(LISTING_ENTRIES))

    def has_bill_rows(self, scope: Optional[Tag] = None) -> bool:
        """True when ``scope`` already lists at least one MM/YYYY reference."""
        root = scope if scope is not None else self.soup
        return MONTH_SHAPE.search(root.get_text(" ")) is not None

    def month_labels(self, month: str, scope: Optional[Tag] = None) -> List[Tag]:
        """Elements whose own text is exactly ``month``."""
        root = scope if scope is not None else self.soup
        labels = []
        for text in root.find_all(string=True):
            if text.strip() == month and text.parent is not None:
                labels.append(text.parent)
        return labels

    def accordion_event_target(self, scope: Optional[Tag] = None) -> Optional[str]:
        """OsAjax event target that expands an accordion entry, searched inside ``scope`` when given."""
        source = str(scope) if scope is not None else self.html
        for pattern in ACCORDION_TARGET_PATTERNS:
            match = pattern.search(source)
            if match:
                return match.group(1)
        return None

    # ==================== Downloads ====================

    def _link(self, node: Optional[Tag], attr: str = "href") -> Optional[str]:
        if node is None:
            return None
        target = node.get(attr) or ""
        if not target or target.startswith("javascript:"):
            return None
        return urljoin(self.url, target)

    def download_link_near(self, label: Tag, index: int, block: Optional[Tag] = None) -> Optional[str]:
        """
        Resolve the download link for one month label.

        Tried in order: the row/card/grid cell holding the label, plain
        ancestor containers at increasing depth, then the ``index``-th
        download link in the installation block.
        """
        for name, fragment in ROW_SHAPES:
            row = label.find_parent(
                lambda tag: tag.name == name and (fragment is None or _has_class(tag, fragment))
            )
            if row is not None:
                link = self._link(row.select_one(DOWNLOAD_LINKS))
                if link:
                    return link

        containers = [parent for parent in label.parents if parent.name == "div"][:CONTAINER_DEPTH]
        item = label.find_parent("li")
        if item is not None:
            containers.append(item)
        for container in containers:
            link = self._link(container.select_one(DOWNLOAD_LINKS))
            if link:
                return link

        if block is not None:
            links = block.select(DOWNLOAD_LINKS)
            if len(links) > index:
                return self._link(links[index])
        return None

    def modal_download_links(self, code: str) -> List[str]:
        """``ModalDownload_ComprovanteConta.aspx`` links carrying ``code`` as a query value."""
        links = []
        for match in MODAL_DOWNLOAD_PATTERN.finditer(self.html):
            href = html_lib.unescape(match.group(1))
            if any(value == code for _, value in parse_qsl(urlsplit(href).query)):
                links.append(urljoin(self.url, href))
        return links

    def card_download_link(self, month: str, index: int = 0) -> Optional[str]:
        """Download link of the ``index``-th ``card-accordion`` block mentioning ``month``."""
        links = []
        for card in self.soup.select('[class*="card-accordion"]'):
            if month in card.get_text(" "):
                link = self._link(card.select_one('a[href*="Download"], a[href*="download"]'))
                if link:
                    links.append(link)
        return links[index] if len(links) > index else None

    def pdf_link(self) -> Optional[str]:
        """Link to the real PDF on an intermediate HTML page."""
        node = self.soup.select_one(PDF_LINKS)
        if node is None:
            return None
        return self._link(node, "src" if node.name == "iframe" else "href")
