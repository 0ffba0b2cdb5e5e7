from typing import Dict, Optional

from helpers import money

ADDRESS_FIELDS = ("street", "city", "parish", "postal_code")
ADDRESS_FIELD_ALIASES = {
    "street": ("street", "line1", "address_line_1", "addressLine1"),
    "city": ("city", "town"),
    "parish": ("parish", "state", "region"),
    "postal_code": ("postal_code", "postalCode", "postcode", "zip"),
}
PICKUP_ADDRESS = {
    "street": "Pickup",
    "city": "N/A",
    "parish": "N/A",
    "postal_code": "N/A",
}

DELIVERY_OPTIONS = ("delivery", "pickup")

# Parishes outside the Kingston/St. Catherine/St. Ann delivery corridor.
REMOTE_PARISHES = frozenset(
    {
        "portland",
        "st. thomas",
        "st. elizabeth",
        "westmoreland",
        "hanover",
        "trelawny",
    }
)


def normalize_address_payload(payload: Optional[Dict]) -> Dict[str, str]:
    if not isinstance(payload, dict):
        return {}

    normalized: Dict[str, str] = {}
    for field in ADDRESS_FIELDS:
        value = None
        for alias in ADDRESS_FIELD_ALIASES.get(field, (field,)):
            if alias in payload:
                value = payload.get(alias)
                break
        if value is None:
            continue
        trimmed = str(value).strip()
        if trimmed:
            normalized[field] = trimmed
    return normalized


def is_complete_address(payload: Optional[Dict]) -> bool:
    normalized = normalize_address_payload(payload)
    return all(normalized.get(field) for field in ADDRESS_FIELDS)


def normalize_parish(value: Optional[str]) -> str:
    normalized = " ".join(str(value or "").strip().lower().split())
    if normalized.startswith("saint "):
        normalized = "st. " + normalized[len("saint "):]
    elif normalized.startswith("st "):
        normalized = "st. " + normalized[len("st "):]
    return normalized


def is_remote_parish(parish: Optional[str]) -> bool:
    return normalize_parish(parish) in REMOTE_PARISHES


def calculate_shipping_fee(
    delivery_option: str,
    address: Optional[Dict] = None,
    flat_fee=500,
    remote_surcharge=0,
) -> float:
    if delivery_option == "pickup":
        return 0.0
    fee = money(flat_fee)
    if address and is_remote_parish(address.get("parish")):
        fee += money(remote_surcharge)
    return round(max(fee, 0.0), 2)
