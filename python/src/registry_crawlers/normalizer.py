"""Turns a registry results page into a canonical ``EntityRecord``.

The page layout is matched against a list of known templates. A page that matches no
template is reported as site drift instead of being parsed on a best-effort basis, and a
matched page without a business name is a parse error: a record with a missing name is
worse than a visible failure.
"""
from __future__ import annotations

from dataclasses import dataclass

from bs4 import BeautifulSoup, NavigableString, Tag

from registry_crawlers.errors import ParseError, SiteChangedError
from registry_crawlers.models import EntityRecord, ManagerRecord

BLOCK_TAGS = ["div", "p", "li", "tr"]


@dataclass(frozen=True)
class LayoutTemplate:
    name: str
    marker: str
    label_selector: str
    value_tag: str
    manager_rows: str
    manager_cells: str
    name_labels: tuple[str, ...] = ("entity name", "business name", "name")
    address_labels: tuple[str, ...] = (
        "principal office",
        "principal address",
        "business address",
        "address",
    )
    status_labels: tuple[str, ...] = ("status", "entity status")
    default_role: str = "Manager"
    role_acronyms: frozenset[str] = frozenset({"LLC", "LP", "LLP", "CEO", "CFO", "COO", "CTO", "VP"})


LABEL_TABLE = LayoutTemplate(
    name="label_table",
    marker="table.entity-details",
    label_selector="table.entity-details th",
    value_tag="td",
    manager_rows="table.managers tr",
    manager_cells="td",
)

DEFINITION_LIST = LayoutTemplate(
    name="definition_list",
    marker="dl.entity-details",
    label_selector="dl.entity-details dt",
    value_tag="dd",
    manager_rows="ul.managers li",
    manager_cells="span",
)

DEFAULT_TEMPLATES: tuple[LayoutTemplate, ...] = (LABEL_TABLE, DEFINITION_LIST)


def clean_text(value: str) -> str:
    return " ".join(value.split())


def label_key(value: str) -> str:
    return clean_text(value).rstrip(":").strip().casefold()


def text_lines(element: Tag) -> list[str]:
    for br in element.find_all("br"):
        br.replace_with(NavigableString("\n"))
    for block in element.find_all(BLOCK_TAGS):
        block.insert_after(NavigableString("\n"))
    lines = (clean_text(line) for line in element.get_text().split("\n"))
    return [line for line in lines if line]


def match_template(soup: BeautifulSoup, templates: tuple[LayoutTemplate, ...]) -> LayoutTemplate | None:
    for template in templates:
        if soup.select_one(template.marker) is not None:
            return template
    return None


def _label_values(soup: BeautifulSoup, template: LayoutTemplate) -> dict[str, Tag]:
    values: dict[str, Tag] = {}
    for label in soup.select(template.label_selector):
        key = label_key(label.get_text())
        if not key or key in values:
            continue
        value = label.find_next_sibling(template.value_tag)
        if value is not None:
            values[key] = value
    return values


def _first_value(values: dict[str, Tag], labels: tuple[str, ...]) -> Tag | None:
    for label in labels:
        if label in values:
            return values[label]
    return None


def role_case(role: str, acronyms: frozenset[str]) -> str:
    words = []
    for word in role.split():
        words.append(word.upper() if word.upper().strip(".,") in acronyms else word.title())
    return " ".join(words)


def _managers(soup: BeautifulSoup, template: LayoutTemplate) -> tuple[ManagerRecord, ...]:
    managers: list[ManagerRecord] = []
    for row in soup.select(template.manager_rows):
        cells = row.select(template.manager_cells)
        if not cells:
            continue
        name = " ".join(text_lines(cells[0]))
        if not name:
            continue
        address = ", ".join(text_lines(cells[1])) if len(cells) > 1 else ""
        role = " ".join(text_lines(cells[2])) if len(cells) > 2 else ""
        role = role_case(role or template.default_role, template.role_acronyms)
        managers.append(ManagerRecord(name=name, address=address, role=role))
    return tuple(managers)


def normalize(raw_content: str, templates: tuple[LayoutTemplate, ...] = DEFAULT_TEMPLATES) -> EntityRecord:
    soup = BeautifulSoup(raw_content, "html.parser")
    template = match_template(soup, templates)
    if template is None:
        names = ", ".join(t.name for t in templates)
        raise SiteChangedError(f"Results page matches no known layout template ({names})")

    values = _label_values(soup, template)

    name_cell = _first_value(values, template.name_labels)
    business_name = " ".join(text_lines(name_cell)) if name_cell is not None else ""
    if not business_name:
        raise ParseError(f"Business name missing from results page (template={template.name})")

    address_cell = _first_value(values, template.address_labels)
    status_cell = _first_value(values, template.status_labels)

    return EntityRecord(
        business_name=business_name,
        business_address=", ".join(text_lines(address_cell)) if address_cell is not None else "",
        status=" ".join(text_lines(status_cell)).upper() if status_cell is not None else "",
        managers=_managers(soup, template),
    )
