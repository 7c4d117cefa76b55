"""Tests for field-key normalisation and client value lookup."""
from formgen.utils.field_names import (
    camel_to_snake,
    key_variants,
    normalize_key,
    resolve_value,
    snake_to_camel,
)


def test_camel_to_snake():
    assert camel_to_snake("propertyAddress") == "property_address"
    assert camel_to_snake("HTTPServerName") == "http_server_name"
    assert camel_to_snake("already_snake") == "already_snake"
    assert camel_to_snake("with spaces-and-dashes") == "with_spaces_and_dashes"


def test_snake_to_camel():
    assert snake_to_camel("property_address") == "propertyAddress"
    assert snake_to_camel("email") == "email"
    assert snake_to_camel("fullName") == "fullName"


def test_key_variants_are_unique_and_ordered():
    assert key_variants("fullName") == ["fullName", "full_name"]
    assert key_variants("full_name") == ["full_name", "fullName"]
    assert key_variants("email") == ["email"]


def test_normalize_key_ignores_case_and_punctuation():
    assert normalize_key("Full-Name") == normalize_key("full_name") == "fullname"


def test_resolve_value_exact_match_wins():
    data = {"fullName": "Jane", "full_name": "Other"}
    assert resolve_value("fullName", data) == "Jane"


def test_resolve_value_snake_case_client_key():
    assert resolve_value("propertyAddress", {"property_address": "1 Main St"}) == "1 Main St"


def test_resolve_value_camel_case_client_key():
    assert resolve_value("property_address", {"propertyAddress": "1 Main St"}) == "1 Main St"


def test_resolve_value_normalized_fallback():
    assert resolve_value("fullName", {"Full Name": "Jane"}) == "Jane"


def test_resolve_value_blank_is_unmatched():
    assert resolve_value("fullName", {"fullName": "   "}) is None
    assert resolve_value("fullName", {"fullName": None}) is None
    assert resolve_value("tags", {"tags": []}) is None
    assert resolve_value("fullName", {}) is None


def test_resolve_value_keeps_falsy_non_blank_values():
    assert resolve_value("agreed", {"agreed": False}) is False
    assert resolve_value("count", {"count": 0}) == 0
