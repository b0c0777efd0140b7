from __future__ import annotations

import pytest

from central.api.errors import ValidationFailedError
from central.services.forms import parse_schema, validate_form_data

SCHEMA = [
    {"name": "company", "type": "text", "label": "Company", "required": True},
    {"name": "email", "type": "email", "required": True},
    {"name": "website", "type": "url"},
    {"name": "seats", "type": "number"},
    {"name": "tier", "type": "select", "options": ["basic", "pro"], "required": True},
    {"name": "notes", "type": "textarea", "placeholder": "Anything else?"},
]


def test_valid_data_is_normalized():
    data = validate_form_data(
        product_id="demo",
        schema=SCHEMA,
        data={
            "company": "  Acme  ",
            "email": "owner@acme.io",
            "website": "https://acme.io",
            "seats": "12",
            "tier": "pro",
            "notes": "",
            "unexpected": "dropped",
        },
    )
    assert data == {
        "company": "Acme",
        "email": "owner@acme.io",
        "website": "https://acme.io/",
        "seats": 12.0,
        "tier": "pro",
    }


def test_missing_required_field():
    with pytest.raises(ValidationFailedError) as exc:
        validate_form_data(
            product_id="demo", schema=SCHEMA, data={"email": "owner@acme.io", "tier": "basic"}
        )
    assert exc.value.code == 400202
    assert "company" in exc.value.message


def test_empty_string_counts_as_missing():
    with pytest.raises(ValidationFailedError):
        validate_form_data(
            product_id="demo",
            schema=SCHEMA,
            data={"company": "", "email": "owner@acme.io", "tier": "basic"},
        )


@pytest.mark.parametrize(
    "field, value",
    [("email", "not-an-email"), ("website", "nope"), ("tier", "enterprise"), ("seats", "many")],
)
def test_invalid_values(field, value):
    data = {"company": "Acme", "email": "owner@acme.io", "tier": "basic", field: value}
    with pytest.raises(ValidationFailedError):
        validate_form_data(product_id="demo", schema=SCHEMA, data=data)


def test_no_schema_passes_data_through():
    assert validate_form_data(product_id="demo", schema=None, data={"a": 1}) == {"a": 1}
    assert validate_form_data(product_id="demo", schema=[], data=None) == {}


def test_invalid_schema():
    with pytest.raises(ValidationFailedError) as exc:
        parse_schema([{"name": "x", "type": "color"}])
    assert exc.value.code == 400201
