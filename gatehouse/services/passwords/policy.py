from __future__ import annotations

import logging
import re
import secrets
import string
from dataclasses import dataclass
from typing import Callable, Iterable

from gatehouse.core.config import MembershipPolicy
from gatehouse.core.errors import ConfigurationError, PolicyViolationError


logger = logging.getLogger(__name__)

_ALPHANUMERIC = string.ascii_letters + string.digits
_PUNCTUATION = "!@#$%^&*()_-+=[{]};:>|./?"
# Generated passwords are redrawn until they satisfy the strength regex, within reason.
_MAX_GENERATION_ATTEMPTS = 100


@dataclass
class PasswordValidationEvent:
    # Hooks set ``cancel`` to veto the password and may attach the error to raise.
    user_name: str
    password: str
    is_new_user: bool
    cancel: bool = False
    failure: Exception | None = None


PasswordValidationHook = Callable[[PasswordValidationEvent], None]


def count_non_alphanumeric(password: str) -> int:
    return sum(1 for char in password if not char.isalnum())


def password_strength_problem(password: str, policy: MembershipPolicy) -> str | None:
    """Return why ``password`` fails the strength policy, or ``None`` when it passes."""
    if len(password) < policy.min_required_password_length:
        return f"must be at least {policy.min_required_password_length} characters long"
    if count_non_alphanumeric(password) < policy.min_required_non_alphanumeric_characters:
        return (
            f"must contain at least {policy.min_required_non_alphanumeric_characters} "
            "non-alphanumeric characters"
        )
    pattern = policy.strength_pattern
    if pattern and re.search(pattern, password) is None:
        return "does not match the password strength expression"
    return None


def check_password_strength(password: str, policy: MembershipPolicy, *, param: str = "password") -> None:
    problem = password_strength_problem(password, policy)
    if problem is not None:
        raise PolicyViolationError(f"{param} {problem}")


def run_validation_hooks(
    hooks: Iterable[PasswordValidationHook],
    event: PasswordValidationEvent,
) -> PasswordValidationEvent:
    # Every hook sees the event; a later hook may inspect an earlier veto.
    for hook in hooks:
        hook(event)
    if event.cancel:
        logger.info("password_validation_cancelled user_name=%s is_new_user=%s", event.user_name, event.is_new_user)
    return event


def raise_if_cancelled(event: PasswordValidationEvent, *, param: str = "password") -> None:
    if not event.cancel:
        return
    if event.failure is not None:
        raise event.failure
    raise PolicyViolationError(f"The custom password validation failed for {param}")


def generate_password(
    policy: MembershipPolicy,
    *,
    choice: Callable[[str], str] = secrets.choice,
) -> str:
    """Generate a random password that satisfies ``policy``.

    The length is the larger of the configured new-password length and the
    minimum length; at least the minimum number of non-alphanumeric characters
    is included.
    """
    length = max(policy.new_password_length, policy.min_required_password_length)
    non_alphanumeric = min(policy.min_required_non_alphanumeric_characters, length)
    shuffler = secrets.SystemRandom()
    for _ in range(_MAX_GENERATION_ATTEMPTS):
        chars = [choice(_PUNCTUATION) for _ in range(non_alphanumeric)]
        chars.extend(choice(_ALPHANUMERIC + _PUNCTUATION) for _ in range(length - non_alphanumeric))
        shuffler.shuffle(chars)
        candidate = "".join(chars)
        if password_strength_problem(candidate, policy) is None:
            return candidate
    raise ConfigurationError("Could not generate a password that satisfies the password strength expression")
