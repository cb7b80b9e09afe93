"""
Merge policy for devices reported by several discovery methods
"""

import logging
from typing import Iterable, List, Optional

from .models import Device

logger = logging.getLogger(__name__)

DEFAULT_GENERIC_NAME_PATTERNS = ["Device at ", "Network Device at ", " at "]


class MergePolicy:
    """Decides which record's core fields win when two share an (ip, port)"""

    def __init__(self, generic_name_patterns: Optional[Iterable[str]] = None):
        if generic_name_patterns is None:
            generic_name_patterns = DEFAULT_GENERIC_NAME_PATTERNS
        self.generic_name_patterns: List[str] = list(generic_name_patterns)

    def is_generic_name(self, name: str) -> bool:
        if not name:
            return True
        return any(pattern in name for pattern in self.generic_name_patterns)

    def should_replace(self, existing: Device, incoming: Device, enrichment: bool = False) -> bool:
        """True when incoming should overwrite existing's name/type/manufacturer"""
        incoming_rank = incoming.discovery_method.precedence
        existing_rank = existing.discovery_method.precedence

        if incoming_rank != existing_rank:
            return incoming_rank > existing_rank

        # Description XML is authoritative for its own method
        if enrichment:
            return True

        return self.is_generic_name(existing.friendly_name) and not self.is_generic_name(incoming.friendly_name)

    def merge(self, existing: Device, incoming: Device, enrichment: bool = False) -> Device:
        """Merge incoming into existing in place and return existing"""
        replace_core = self.should_replace(existing, incoming, enrichment)
        if replace_core:
            existing.friendly_name = incoming.friendly_name
            existing.device_type = incoming.device_type
            existing.manufacturer = incoming.manufacturer
            existing.model_name = incoming.model_name
            existing.control_url = incoming.control_url
            existing.discovery_method = incoming.discovery_method
            logger.debug(f"Core fields of {existing.identity} replaced by {incoming.discovery_method.value} record")

        if incoming.uuid and (replace_core or enrichment or not existing.uuid):
            existing.uuid = incoming.uuid

        existing.metadata.update(incoming.metadata)
        existing.last_seen = max(existing.last_seen, incoming.last_seen)
        return existing
