"""Environment helpers shared by every settings module.

Values are read from the process environment, optionally seeded from a
``.env`` file at the project root.
"""

import os
from decimal import Decimal
from pathlib import Path

from django.core.exceptions import ImproperlyConfigured  # type: ignore
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / ".env")


def get_env(var_name: str, default=None, required: bool = False):
    value = os.environ.get(var_name, default)
    if required and value in (None, ""):
        raise ImproperlyConfigured(f"Missing required environment variable: {var_name}")
    return value


def get_bool(var_name: str, default: bool = False) -> bool:
    return str(get_env(var_name, str(default))).lower() in ("1", "true", "yes", "on")


def get_int(var_name: str, default: int) -> int:
    value = get_env(var_name, default)
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ImproperlyConfigured(f"{var_name} must be an integer, got {value!r}") from exc


def get_float(var_name: str, default: float) -> float:
    value = get_env(var_name, default)
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ImproperlyConfigured(f"{var_name} must be a number, got {value!r}") from exc


def get_decimal(var_name: str, default: str) -> Decimal:
    value = get_env(var_name, default)
    try:
        return Decimal(str(value))
    except ArithmeticError as exc:
        raise ImproperlyConfigured(f"{var_name} must be a decimal, got {value!r}") from exc


def get_list(var_name: str, default: str = "") -> list[str]:
    return [item.strip() for item in str(get_env(var_name, default)).split(",") if item.strip()]


def get_decimal_map(var_name: str, default: str = "") -> dict[str, Decimal]:
    """Parse ``key=value`` pairs, e.g. ``tools=0.08,vehicles=0.12``."""
    result = {}
    for pair in get_list(var_name, default):
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ImproperlyConfigured(f"{var_name} entries must look like key=value, got {pair!r}")
        try:
            result[key.strip()] = Decimal(value.strip())
        except ArithmeticError as exc:
            raise ImproperlyConfigured(f"{var_name}: {value!r} is not a decimal") from exc
    return result
