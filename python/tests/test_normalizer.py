import json

import pytest

from conftest import load_fixture
from registry_crawlers.errors import ParseError, SiteChangedError
from registry_crawlers.models import ManagerRecord
from registry_crawlers.normalizer import DEFINITION_LIST, LABEL_TABLE, normalize


def test_label_table_record():
    record = normalize(load_fixture("results_acme.html"))

    assert record.business_name == "Acme LLC"
    assert record.business_address == "123 Main St"
    assert record.status == "ACTIVE"
    assert record.managers == (
        ManagerRecord(name="Jane Roe", address="1 First Ave, Chicago, IL 60601", role="Manager"),
        ManagerRecord(name="John Doe", address="2 Second St, Springfield, IL 62701", role="Managing Member"),
    )


def test_zero_managers_is_valid():
    record = normalize(load_fixture("results_no_managers.html"))

    assert record.managers == ()
    assert record.business_address == "123 Main St, Chicago, IL 60601"
    assert record.to_dict()["managers"] == []


def test_definition_list_layout():
    record = normalize(load_fixture("results_definition_list.html"))

    assert record.business_name == "Widget Works Inc"
    assert record.business_address == "500 Lake Shore Dr, Suite 12, Chicago, IL 60611"
    assert record.status == "DISSOLVED"
    assert [m.name for m in record.managers] == ["Ann Smith", "Bob Jones"]
    assert [m.role for m in record.managers] == ["President", "Secretary"]


def test_missing_business_name_is_parse_error():
    with pytest.raises(ParseError, match="Business name missing"):
        normalize(load_fixture("results_missing_name.html"))


def test_unknown_layout_is_site_change():
    with pytest.raises(SiteChangedError, match="no known layout"):
        normalize(load_fixture("redesigned.html"))


def test_templates_are_tried_in_order():
    html = load_fixture("results_definition_list.html")

    with pytest.raises(SiteChangedError):
        normalize(html, templates=(LABEL_TABLE,))
    assert normalize(html, templates=(LABEL_TABLE, DEFINITION_LIST)).business_name == "Widget Works Inc"


def test_optional_fields_default_to_empty():
    html = '<table class="entity-details"><tr><th>Entity Name</th><td>Solo Corp</td></tr></table>'

    record = normalize(html)

    assert record.business_name == "Solo Corp"
    assert record.business_address == ""
    assert record.status == ""
    assert record.managers == ()


def test_normalize_is_deterministic():
    html = load_fixture("results_acme.html")

    first = json.dumps(normalize(html).to_dict(), sort_keys=True)
    second = json.dumps(normalize(html).to_dict(), sort_keys=True)

    assert first == second
    assert normalize(html) == normalize(html)


def test_empty_subsection_does_not_hide_the_record():
    record = normalize(load_fixture("results_empty_subsection.html"))

    assert record.business_name == "Acme LLC"
    assert record.managers == (ManagerRecord(name="Jane Roe", address="1 First Ave", role="LLC Manager"),)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("MANAGING MEMBER", "Managing Member"),
        ("ceo", "CEO"),
        ("LLC  MANAGER", "LLC Manager"),
        ("vice-president", "Vice-President"),
    ],
)
def test_role_casing_keeps_acronyms(raw, expected):
    html = (
        '<table class="entity-details"><tr><th>Entity Name</th><td>Solo Corp</td></tr></table>'
        f'<table class="managers"><tr><td>Ann Smith</td><td>9 Elm St</td><td>{raw}</td></tr></table>'
    )

    assert normalize(html).managers[0].role == expected
