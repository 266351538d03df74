import pytest

from kubeherd.errors import InvalidAddressFormat
from kubeherd.utils.net import filter_ips, parse_targets, remove_duplicate


def test_range_expands_inclusive_ascending():
    assert parse_targets("192.168.0.1-192.168.0.5") == [
        "192.168.0.1",
        "192.168.0.2",
        "192.168.0.3",
        "192.168.0.4",
        "192.168.0.5",
    ]


def test_range_crosses_octet_boundary():
    assert parse_targets("10.0.0.254-10.0.1.1") == [
        "10.0.0.254",
        "10.0.0.255",
        "10.0.1.0",
        "10.0.1.1",
    ]


def test_reversed_range_is_rejected():
    with pytest.raises(InvalidAddressFormat):
        parse_targets("192.168.0.5-192.168.0.1")


def test_comma_list_keeps_order():
    assert parse_targets("10.0.0.3, 10.0.0.1,10.0.0.2") == [
        "10.0.0.3",
        "10.0.0.1",
        "10.0.0.2",
    ]


def test_empty_text_yields_nothing():
    assert parse_targets("") == []
    assert parse_targets("   ") == []


@pytest.mark.parametrize(
    "text",
    [
        "10.0.0.1-10.0.0.3-10.0.0.5",
        "10.0.0.1,10.0.0.2-10.0.0.4",
        "10.0.0.1,,10.0.0.2",
        "not-an-ip",
        "10.0.0.300",
        "10.0.0.1-fe80::1",
    ],
)
def test_malformed_targets(text):
    with pytest.raises(InvalidAddressFormat):
        parse_targets(text)


def test_remove_duplicate_keeps_first_occurrence():
    assert remove_duplicate(["10.0.0.1", "10.0.0.1", "10.0.0.2"]) == [
        "10.0.0.1",
        "10.0.0.2",
    ]
    assert remove_duplicate(["10.0.0.2", "", "10.0.0.1", "10.0.0.2"]) == [
        "10.0.0.2",
        "10.0.0.1",
    ]


def test_filter_ips():
    assert filter_ips(["a", "b", "c"], ["b", "x"]) == ["a", "c"]
