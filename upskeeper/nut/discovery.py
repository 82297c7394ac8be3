"""
UPS capability discovery.

Partitions the variables a UPS exposes into static (model, firmware,
nominals) and dynamic (voltages, load, status) sets. Name-based hints are
applied first; anything they do not classify is decided by comparing two
snapshots taken a short delay apart.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List

from .client import NUTClient
from .mapping import NUT_FIELD_TO_COLUMN

logger = logging.getLogger(__name__)

DEFAULT_INIT_SAMPLE_DELAY_MS = 700

STATIC_FIELD_HINTS = [
    re.compile(p)
    for p in (
        r"^device\.",
        r"^driver\.",
        r"^ups\.firmware",
        r"^ups\.model$",
        r"^ups\.mfr$",
        r"^ups\.serial$",
        r"^ups\.type$",
        r"\.nominal$",
        r"^battery\.mfr\.",
        r"^battery\.type$",
    )
]

DYNAMIC_FIELD_HINTS = [
    re.compile(p)
    for p in (
        r"^battery\.(?!mfr)",
        r"^input\.",
        r"^output\.",
        r"^ups\.(load|power|realpower|status|temperature|timer)",
        r"^ambient\.",
    )
]

KNOWN_DYNAMIC_FIELDS = frozenset(NUT_FIELD_TO_COLUMN)


@dataclass
class CapabilityDiscoveryResult:
    """Outcome of a discovery run."""

    available: List[str]
    static: List[str]
    dynamic: List[str]
    static_snapshot: Dict[str, str]
    initial_dynamic_snapshot: Dict[str, str]
    metadata: Dict[str, Dict[str, str]] = field(default_factory=dict)

    @property
    def combined_snapshot(self) -> Dict[str, str]:
        return {**self.static_snapshot, **self.initial_dynamic_snapshot}


def classify_field(name: str, first: Dict[str, str], second: Dict[str, str]) -> str:
    """Return ``"static"`` or ``"dynamic"`` for one field name."""
    if any(p.search(name) for p in STATIC_FIELD_HINTS):
        return "static"
    if name in KNOWN_DYNAMIC_FIELDS or any(p.search(name) for p in DYNAMIC_FIELD_HINTS):
        return "dynamic"
    if first.get(name) != second.get(name):
        return "dynamic"
    return "static"


async def discover_capabilities(
    client: NUTClient,
    ups_name: str,
    init_sample_delay_ms: float = DEFAULT_INIT_SAMPLE_DELAY_MS,
) -> CapabilityDiscoveryResult:
    """
    Sample the UPS twice and classify every variable.

    Args:
        client: A connected NUT client.
        ups_name: The UPS to inspect.
        init_sample_delay_ms: Pause between the two samples. A value <= 0
            reuses the first sample as the second.

    Returns:
        The classified field sets and the two restricted snapshots.
    """
    first = await client.list_variables(ups_name)
    if init_sample_delay_ms > 0:
        await asyncio.sleep(init_sample_delay_ms / 1000)
        second = await client.list_variables(ups_name)
    else:
        second = first

    available = list(first)
    static: List[str] = []
    dynamic: List[str] = []
    for name in available:
        if classify_field(name, first, second) == "static":
            static.append(name)
        else:
            dynamic.append(name)

    result = CapabilityDiscoveryResult(
        available=available,
        static=static,
        dynamic=dynamic,
        static_snapshot={name: first[name] for name in static},
        initial_dynamic_snapshot={name: second[name] for name in dynamic if name in second},
        metadata={name: {"name": name} for name in available},
    )
    logger.info(
        "Discovered %d variables for '%s' (%d static, %d dynamic)",
        len(available), ups_name, len(static), len(dynamic),
    )
    return result
