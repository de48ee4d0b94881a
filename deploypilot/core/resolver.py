"""Placeholder to address resolution for DNS post actions."""

import logging
from typing import Dict, Optional

from deploypilot.core.exceptions import NotFoundError

logger = logging.getLogger(__name__)


class PlaceholderResolver:
    """
    Maps symbolic address names to concrete addresses.

    Requests name a placeholder (for example ``edge-1``) instead of an IP so
    infrastructure addresses stay out of deployment payloads. Missing
    placeholders are a hard failure; there is no fallback address.
    """

    def __init__(self, mappings: Optional[Dict[str, str]] = None):
        self._mappings = dict(mappings or {})

    def resolve(self, placeholder: str) -> str:
        """
        Resolve a placeholder.

        Raises:
            NotFoundError: If the placeholder is not mapped
        """
        address = self._mappings.get(placeholder)
        if not address:
            logger.error(
                "Address placeholder %r not found (%d mappings available)",
                placeholder,
                len(self._mappings),
            )
            raise NotFoundError(
                f"Address placeholder '{placeholder}' not found in mappings",
                details={"placeholder": placeholder},
            )

        logger.debug("Resolved placeholder %r to %s", placeholder, address)
        return address

    def __contains__(self, placeholder: str) -> bool:
        return placeholder in self._mappings

    def __len__(self) -> int:
        return len(self._mappings)
