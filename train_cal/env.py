# Settings are read from the environment, with a .env file as fallback.

import os
from typing import Callable, Optional, TypeVar

from dotenv import load_dotenv

load_dotenv()

T = TypeVar("T")


def _env_value(name: str) -> Optional[str]:
    # Unset and blank both mean "use the default".
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_parsed(name: str, default: T, parse: Callable[[str], T]) -> T:
    value = _env_value(name)
    if value is None:
        return default
    try:
        return parse(value)
    except ValueError:
        return default


def env_int(name: str, default: int) -> int:
    return _env_parsed(name, default, int)


def env_float(name: str, default: float) -> float:
    return _env_parsed(name, default, float)


def env_bool(name: str, default: bool) -> bool:
    value = _env_value(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}
