"""
Property mapping construction and validation.

A property map names, for each exported source attribute, the user profile
property it populates. The map is validated locally before it is handed to
the import submission so that a typo never reaches the remote service.
"""

import logging
from collections.abc import Mapping
from typing import Any, Dict, Iterable, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)

STRICTNESS_WARN = 'warn'
STRICTNESS_FAIL = 'fail'
STRICTNESS_LEVELS = (STRICTNESS_WARN, STRICTNESS_FAIL)


class MappingError(Exception):
    """Base exception for invalid property maps."""
    pass


class DuplicateKey(MappingError):
    """Raised when the same source attribute is mapped more than once."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Source attribute '{key}' is mapped more than once")


class UnknownSourceAttribute(MappingError):
    """Raised when a mapped source attribute is not part of the exported document."""

    def __init__(self, keys):
        self.keys = list(keys)
        super().__init__(
            "Mapped source attributes are not exported: " + ", ".join(repr(k) for k in self.keys)
        )


class EmptyDestinationName(MappingError):
    """Raised when a source attribute is mapped to an empty profile property name."""

    def __init__(self, keys):
        self.keys = list(keys)
        super().__init__(
            "Empty destination property for source attributes: " + ", ".join(repr(k) for k in self.keys)
        )


class PropertyMap(Mapping):
    """Ordered, read-only source attribute -> profile property mapping."""

    def __init__(self, pairs: Iterable[Tuple[str, str]] = ()):
        self._data: Dict[str, str] = {}
        for source, destination in pairs:
            if source in self._data:
                raise DuplicateKey(source)
            self._data[source] = destination

    @classmethod
    def from_config(cls, entries: Any) -> 'PropertyMap':
        """
        Build a property map from its configuration representation.

        Accepted forms:
            - a mapping ``{source: destination}``
            - a list of ``{'source': ..., 'destination': ...}`` entries
            - a list of single-key ``{source: destination}`` entries

        Raises:
            DuplicateKey: If a source attribute appears twice
            MappingError: If an entry cannot be interpreted
        """
        return cls(_iter_config_pairs(entries))

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"PropertyMap({self._data!r})"

    def to_dict(self) -> Dict[str, str]:
        return dict(self._data)


def _iter_config_pairs(entries: Any) -> Iterator[Tuple[str, str]]:
    if entries is None:
        return
    if isinstance(entries, Mapping):
        for source, destination in entries.items():
            yield _coerce_name(source), _coerce_name(destination)
        return
    if isinstance(entries, (str, bytes)) or not isinstance(entries, Iterable):
        raise MappingError(f"Unsupported property map representation: {type(entries).__name__}")

    for index, entry in enumerate(entries):
        if isinstance(entry, Mapping) and 'source' in entry:
            yield _coerce_name(entry['source']), _coerce_name(entry.get('destination'))
        elif isinstance(entry, Mapping) and len(entry) == 1:
            source, destination = next(iter(entry.items()))
            yield _coerce_name(source), _coerce_name(destination)
        elif isinstance(entry, (list, tuple)) and len(entry) == 2:
            yield _coerce_name(entry[0]), _coerce_name(entry[1])
        else:
            raise MappingError(f"Invalid property map entry at position {index}: {entry!r}")


def _coerce_name(value: Any) -> str:
    if value is None:
        return ''
    return str(value).strip()


def validate(property_map: PropertyMap,
             known_source_names: Iterable[str],
             strictness: str = STRICTNESS_FAIL) -> PropertyMap:
    """
    Validate a property map against the attributes present in the document.

    Args:
        property_map: Map to validate
        known_source_names: Identity source attribute plus every exported attribute
        strictness: 'fail' raises on unknown source attributes, 'warn' only logs them

    Returns:
        The same property map, unchanged

    Raises:
        EmptyDestinationName: If any destination property name is empty
        UnknownSourceAttribute: If a source attribute is unknown and strictness is 'fail'
        ValueError: If strictness is not a recognised level
    """
    if strictness not in STRICTNESS_LEVELS:
        raise ValueError(f"Unknown mapping strictness '{strictness}', expected one of {STRICTNESS_LEVELS}")

    empty = [source for source, destination in property_map.items() if not destination]
    if empty:
        raise EmptyDestinationName(empty)

    known = set(known_source_names)
    unknown = [source for source in property_map if source not in known]
    if unknown:
        if strictness == STRICTNESS_FAIL:
            raise UnknownSourceAttribute(unknown)
        for source in unknown:
            logger.warning(f"Mapped source attribute '{source}' is not exported and will never match a row")

    logger.debug(f"Property map validated: {len(property_map)} entries")
    return property_map


def build_and_validate(entries: Any,
                       known_source_names: Iterable[str],
                       strictness: Optional[str] = None) -> PropertyMap:
    """Build a PropertyMap from configuration entries and validate it."""
    property_map = PropertyMap.from_config(entries)
    return validate(property_map, known_source_names, strictness or STRICTNESS_FAIL)
