import sys
import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Union
from splengine.config import LOG_PREFIX, config

Number = Union[int, float]

def log_error(message: str) -> None:
    print(f"{LOG_PREFIX} {message}", file=sys.stderr, flush=True)

def log_debug(message: str) -> None:
    if config.VERBOSE:
        log_error(message)

def clamp(value: Any, default: Number, min_value: Number, max_value: Number, kind: Callable[[Any], Number] = float) -> Number:
    """Coerce ``value`` with ``kind`` (falling back to ``default``) and bound it."""
    try:
        numeric = kind(value)
    except (TypeError, ValueError):
        numeric = default
    return max(min_value, min(numeric, max_value))

def to_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).lower().strip()
    if s in ("true", "1", "yes", "on"):
        return True
    if s in ("false", "0", "no", "off"):
        return False
    return default

def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")

def json_line(path: str, payload: Dict[str, Any]) -> None:
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except (OSError, TypeError, ValueError) as exc:
        log_error(f"log write failed ({path}): {exc}")

def split_lines(text: str) -> List[str]:
    # A trailing terminator yields a trailing empty entry.
    return text.split("\n")

# ========= Byte helpers =========

def hex_to_bytes(value: Union[int, str]) -> bytes:
    """Convert a number, or a hex string with optional ``0x`` prefix, into bytes.

    Each output byte holds one hex pair; an odd number of digits is padded
    with a leading zero, so ``0x12030`` becomes ``b"\\x01\\x20\\x30"``.
    """
    if isinstance(value, bool):
        raise TypeError("hex_to_bytes() does not accept bool")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"cannot convert negative number {value} to bytes")
        digits = format(value, "x")
    else:
        digits = value.strip()
        if digits[:2].lower() == "0x":
            digits = digits[2:]
        digits = digits.replace("_", "")
        if not digits:
            raise ValueError("empty hex string")
    if len(digits) % 2 == 1:
        digits = "0" + digits
    return bytes.fromhex(digits)

def bytes_to_hex(data: bytes) -> str:
    return bytes(data).hex()

def pad_left(data: bytes, length: int) -> bytes:
    """Zero-fill on the left up to ``length``, or drop leading bytes past it."""
    if length < 0:
        raise ValueError(f"length must be >= 0, got {length}")
    data = bytes(data)
    if len(data) >= length:
        return data[len(data) - length:]
    return bytes(length - len(data)) + data

def pad_right(data: bytes, length: int) -> bytes:
    """Zero-fill on the right up to ``length``, or drop trailing bytes past it."""
    if length < 0:
        raise ValueError(f"length must be >= 0, got {length}")
    data = bytes(data)
    if len(data) >= length:
        return data[:length]
    return data + bytes(length - len(data))
