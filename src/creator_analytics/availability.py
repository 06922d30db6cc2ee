"""
Handle availability with an explicit "could not verify" outcome.

The lookup never decides on behalf of the caller whether an unverifiable
handle is usable; ``resolve`` applies the caller's chosen policy.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable

from .errors import DataUnavailable, InvalidParameter

logger = logging.getLogger(__name__)

MIN_HANDLE_LENGTH = 3

HandleLookup = Callable[[str], bool]


class Availability(str, Enum):
    AVAILABLE = "available"
    TAKEN = "taken"
    UNKNOWN = "unknown"


class AvailabilityPolicy(str, Enum):
    OPTIMISTIC = "optimistic"
    PESSIMISTIC = "pessimistic"


def normalize_handle(handle: str) -> str:
    """Strip a leading ``@``, surrounding whitespace and case."""

    if not handle:
        return ""
    return handle.strip().lstrip("@").strip().lower()


def check_handle_availability(handle: str, exists: HandleLookup) -> Availability:
    """
    ``exists`` returns whether the normalized handle is already registered
    and raises ``DataUnavailable`` when the store cannot be reached.
    """

    normalized = normalize_handle(handle)
    if len(normalized) < MIN_HANDLE_LENGTH:
        raise InvalidParameter("handle", handle)
    try:
        taken = exists(normalized)
    except DataUnavailable as exc:
        logger.warning("Handle check for %s could not be verified: %s", normalized, exc)
        return Availability.UNKNOWN
    return Availability.TAKEN if taken else Availability.AVAILABLE


def resolve(result: Availability, policy: AvailabilityPolicy) -> bool:
    if result is Availability.UNKNOWN:
        return policy is AvailabilityPolicy.OPTIMISTIC
    return result is Availability.AVAILABLE
