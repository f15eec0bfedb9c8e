from __future__ import annotations

from typing import Sequence

from gatehouse.core.errors import InvalidArgumentError


def trim(value: str | None) -> str | None:
    return value.strip() if value is not None else None


def check_parameter(
    value: str | None,
    *,
    name: str,
    required: bool = True,
    reject_empty: bool = True,
    reject_commas: bool = False,
    max_length: int = 0,
) -> str | None:
    """Validate a scalar string argument and return it trimmed.

    ``None`` passes through unless ``required``; a ``max_length`` of zero
    disables the length check.
    """
    if value is None:
        if required:
            raise InvalidArgumentError(f"{name} is required", param=name)
        return None
    value = value.strip()
    if reject_empty and not value:
        raise InvalidArgumentError(f"{name} cannot be empty", param=name)
    if max_length > 0 and len(value) > max_length:
        raise InvalidArgumentError(f"{name} cannot exceed {max_length} characters", param=name)
    if reject_commas and "," in value:
        raise InvalidArgumentError(f"{name} cannot contain commas", param=name)
    return value


def is_parameter_valid(
    value: str | None,
    *,
    required: bool = True,
    reject_empty: bool = True,
    reject_commas: bool = False,
    max_length: int = 0,
) -> bool:
    # Same rules as check_parameter, reported as a flag for status-returning callers.
    if value is None:
        return not required
    value = value.strip()
    if reject_empty and not value:
        return False
    if max_length > 0 and len(value) > max_length:
        return False
    if reject_commas and "," in value:
        return False
    return True


def check_array_parameter(
    values: Sequence[str] | None,
    *,
    name: str,
    reject_commas: bool = True,
    max_length: int = 0,
) -> list[str]:
    # Arrays must be non-empty and free of case-insensitive duplicates.
    if values is None:
        raise InvalidArgumentError(f"{name} is required", param=name)
    if isinstance(values, str):
        raise InvalidArgumentError(f"{name} must be a sequence of names, not a string", param=name)
    if len(values) < 1:
        raise InvalidArgumentError(f"{name} cannot be empty", param=name)
    checked: list[str] = []
    seen: set[str] = set()
    for index, value in enumerate(values):
        item = check_parameter(
            value,
            name=f"{name}[{index}]",
            reject_commas=reject_commas,
            max_length=max_length,
        )
        key = item.casefold()
        if key in seen:
            raise InvalidArgumentError(f"{name} contains a duplicate element: {item}", param=name)
        seen.add(key)
        checked.append(item)
    return checked
