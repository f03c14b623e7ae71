"""VIN check-digit validation and vehicle keys.

A vehicle key is the lower-cased ``make|model|year`` triple used to match
vehicle-interest slots against vehicle campaigns.
"""

import re

VIN_LENGTH = 17

_VIN_LETTER_CODE = {
    "A": 1, "B": 2, "C": 3, "D": 4, "E": 5, "F": 6, "G": 7, "H": 8,
    "J": 1, "K": 2, "L": 3, "M": 4, "N": 5,
    "P": 7,
    "R": 9,
    "S": 2, "T": 3, "U": 4, "V": 5, "W": 6, "X": 7, "Y": 8, "Z": 9,
}
_VIN_POSITION_WEIGHT = (8, 7, 6, 5, 4, 3, 2, 10, 0, 9, 8, 7, 6, 5, 4, 3, 2)

_NAME_PATTERN = r"[^|\x00-\x1f]+"
VEHICLE_KEY_REGEX = re.compile(rf"\A\s*({_NAME_PATTERN})\|({_NAME_PATTERN})\|(\d{{4}})\s*\Z")


def is_valid_vin(vin: str | None) -> bool:
    """Validate length, alphabet and the position-9 check digit."""
    if not vin or len(vin) != VIN_LENGTH:
        return False
    vin = vin.upper()
    total = 0
    for position, char in enumerate(vin):
        if char.isdigit():
            value = int(char)
        elif char in _VIN_LETTER_CODE:
            value = _VIN_LETTER_CODE[char]
        else:
            return False
        total += value * _VIN_POSITION_WEIGHT[position]
    remainder = total % 11
    expected = "X" if remainder == 10 else str(remainder)
    return vin[8] == expected


def is_valid_vehicle_key(vehicle_key: str | None) -> bool:
    return bool(vehicle_key) and VEHICLE_KEY_REGEX.match(vehicle_key) is not None


def generate_vehicle_key(make: str | None, model: str | None, year: int | str | None) -> str | None:
    """Build a normalized key, or ``None`` unless make, model and year are all present.

    Lower-casing is lossy; keys compare equal across spelling case.
    """
    if not make or not model or not year:
        return None
    return f"{str(make).strip()}|{str(model).strip()}|{str(year).strip()}".lower()


def normalize_vehicle_key(vehicle_key: str) -> str:
    """Trim and lower-case each component of an already well-formed key."""
    match = VEHICLE_KEY_REGEX.match(vehicle_key)
    if match is None:
        raise ValueError(f"Malformed vehicle key: {vehicle_key!r}")
    make, model, year = match.groups()
    return f"{make.strip()}|{model.strip()}|{year}".lower()
