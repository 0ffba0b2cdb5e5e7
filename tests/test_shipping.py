import pytest

from shipping import (
    calculate_shipping_fee,
    is_complete_address,
    is_remote_parish,
    normalize_address_payload,
    normalize_parish,
)


def test_normalize_address_accepts_camel_case_and_trims():
    address = normalize_address_payload(
        {"street": " 4 Barbican Rd ", "city": "Kingston", "parish": "St. Andrew", "postalCode": "JMAAW06"}
    )
    assert address == {
        "street": "4 Barbican Rd",
        "city": "Kingston",
        "parish": "St. Andrew",
        "postal_code": "JMAAW06",
    }


def test_incomplete_address_is_rejected():
    assert is_complete_address({"street": "4 Barbican Rd", "city": "Kingston"}) is False
    assert is_complete_address({"street": " ", "city": "Kingston", "parish": "St. Andrew", "postal_code": "1"}) is False
    assert is_complete_address(None) is False


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Saint Thomas", "st. thomas"),
        ("St Elizabeth", "st. elizabeth"),
        ("  ST.  ANN ", "st. ann"),
        ("Portland", "portland"),
    ],
)
def test_normalize_parish(raw, expected):
    assert normalize_parish(raw) == expected


def test_remote_parishes():
    assert is_remote_parish("Westmoreland") is True
    assert is_remote_parish("Saint Thomas") is True
    assert is_remote_parish("St. Andrew") is False
    assert is_remote_parish(None) is False


def test_pickup_is_free():
    assert calculate_shipping_fee("pickup", {"parish": "Portland"}, flat_fee=500, remote_surcharge=300) == 0


def test_delivery_fee_adds_remote_surcharge():
    kingston = {"parish": "Kingston"}
    hanover = {"parish": "Hanover"}
    assert calculate_shipping_fee("delivery", kingston, flat_fee=500, remote_surcharge=300) == 500
    assert calculate_shipping_fee("delivery", hanover, flat_fee=500, remote_surcharge=300) == 800
    assert calculate_shipping_fee("delivery", hanover, flat_fee=500) == 500
