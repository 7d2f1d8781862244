"""
Scale-generated EAN-13 barcodes (Brazilian "etiqueta de balanca").

Layout (13 digits):

  2 F CCCCC VVVVV D
  | | |     |     +-- EAN-13 check digit
  | | |     +-------- value: grams (weight) or centavos (price)
  | | +-------------- internal product code (5 digits)
  | +---------------- type flag: 0-1 price-embedded, 2-9 weight-embedded
  +------------------ prefix "2" (in-store / variable measure)

Anything that does not match the layout returns None, and so does a
prefix-matching code whose check digit is wrong: a corrupt label is never
turned into a quantity.
"""
import re
from typing import Any, Dict, Optional

SCALE_PREFIX = "2"
PRODUCT_CODE_DIGITS = 5
VALUE_DIGITS = 5
_SCALE_RE = re.compile(r"^2\d{12}$")
_MAX_VALUE = 10 ** VALUE_DIGITS - 1


def ean13_check_digit(first12: str) -> int:
    """Check digit for the first 12 digits of an EAN-13."""
    if len(first12) != 12 or not first12.isdigit():
        raise ValueError(f"EAN-13 body must be 12 digits, got {first12!r}")
    total = 0
    for idx, ch in enumerate(first12):
        total += int(ch) * (3 if idx % 2 else 1)
    return (10 - total % 10) % 10


def is_scale_barcode(barcode: Optional[str]) -> bool:
    if not barcode:
        return False
    return bool(_SCALE_RE.match(str(barcode).strip()))


def parse_scale_barcode(barcode: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode a scale barcode into product code plus weight (kg) or price."""
    if not is_scale_barcode(barcode):
        return None
    text = str(barcode).strip()
    if ean13_check_digit(text[:12]) != int(text[12]):
        return None

    type_flag = int(text[1])
    product_code = text[2:2 + PRODUCT_CODE_DIGITS]
    raw_value = int(text[7:7 + VALUE_DIGITS])
    is_weight = type_flag >= 2

    result: Dict[str, Any] = {
        "product_code": product_code,
        "is_weight": is_weight,
        "raw_value": raw_value,
    }
    if is_weight:
        result["weight_kg"] = round(raw_value / 1000, 3)
    else:
        result["price_value"] = round(raw_value / 100, 2)
    return result


def build_scale_barcode(product_code: str, weight_kg: Optional[float] = None,
                        price: Optional[float] = None, type_flag: Optional[int] = None) -> str:
    """Encode a scale label. Exactly one of weight_kg / price must be given."""
    if (weight_kg is None) == (price is None):
        raise ValueError("Provide exactly one of weight_kg or price")
    code = str(product_code).strip()
    if not code.isdigit() or len(code) > PRODUCT_CODE_DIGITS:
        raise ValueError(f"Product code must be up to {PRODUCT_CODE_DIGITS} digits: {product_code!r}")
    code = code.zfill(PRODUCT_CODE_DIGITS)

    if weight_kg is not None:
        flag = 2 if type_flag is None else type_flag
        if not 2 <= flag <= 9:
            raise ValueError("Weight labels use type flags 2-9")
        raw = int(round(float(weight_kg) * 1000))
    else:
        flag = 0 if type_flag is None else type_flag
        if flag not in (0, 1):
            raise ValueError("Price labels use type flags 0-1")
        raw = int(round(float(price) * 100))
    if raw < 0 or raw > _MAX_VALUE:
        raise ValueError(f"Value does not fit in {VALUE_DIGITS} digits")

    body = f"{SCALE_PREFIX}{flag}{code}{raw:0{VALUE_DIGITS}d}"
    return body + str(ean13_check_digit(body))
