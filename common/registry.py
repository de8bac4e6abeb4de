"""Closed-set backend dispatch.

Each service declares a table mapping every member of its provider enum to a
backend class. Tables are checked for completeness when the module loads and
the backend is built once, from validated settings, when the service is
constructed.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Mapping, Protocol, TypeVar

from common.errors import ConfigurationError
from common.schemas import ValidationResult

K = TypeVar("K", bound=Enum)
B = TypeVar("B")


class ValidatingBackend(Protocol):
    id: Any
    name: str

    async def validate_config(self) -> ValidationResult: ...


def check_exhaustive(table: Mapping[K, Any], kind: type[K]) -> None:
    missing = [member.value for member in kind if member not in table]
    if missing:
        raise RuntimeError(f"No backend registered for {kind.__name__}: {', '.join(missing)}")


def resolve_backend(table: Mapping[K, Callable[..., B]], provider_id: K, *args: Any, **kwargs: Any) -> B:
    try:
        factory = table[provider_id]
    except KeyError:
        name = getattr(provider_id, "value", provider_id)
        raise ConfigurationError(f"Unknown provider: {name}", provider=name) from None
    return factory(*args, **kwargs)


async def require_valid(backend: ValidatingBackend) -> None:
    """Run the backend's configuration check; raise before any work is attempted."""
    validation = await backend.validate_config()
    if not validation.valid:
        raise ConfigurationError(validation.message, provider=getattr(backend.id, "value", backend.id))
