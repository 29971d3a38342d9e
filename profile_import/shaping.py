"""
Record shaping for the profile import document.

This module turns raw directory user records into the rows consumed by the
bulk profile property import: a leading ``idName`` identity column followed by
every requested attribute, with missing values written as empty strings.
"""

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

IDENTITY_KEY = 'idName'
DOCUMENT_FIELD = 'value'


class ShapingError(ValueError):
    """Raised when the shaping inputs themselves are malformed."""
    pass


@dataclass(frozen=True)
class RawUserRecord:
    """
    One user entry as returned by the directory.

    Attributes:
        attributes: Regular directory attributes keyed by attribute name
        extension_attributes: Custom/extension attributes keyed by name
        dn: Distinguished name of the entry, informational only
    """
    attributes: Mapping = field(default_factory=dict)
    extension_attributes: Mapping = field(default_factory=dict)
    dn: Optional[str] = None

    def get(self, name: str, default: Any = '') -> Any:
        """Return a regular attribute value, or ``default`` when absent."""
        value = self.attributes.get(name)
        return default if value is None else value

    def get_extension(self, name: str, default: Any = '') -> Any:
        """Return an extension attribute value, or ``default`` when absent."""
        value = self.extension_attributes.get(name)
        return default if value is None else value


class NormalizedRow(Mapping):
    """Immutable, ordered output row. Iteration follows the field order."""

    __slots__ = ('_items', '_index')

    def __init__(self, items: Iterable[Tuple[str, str]]):
        self._items = tuple(items)
        self._index = dict(self._items)
        if len(self._index) != len(self._items):
            raise ShapingError("Row field names must be unique")

    def __getitem__(self, key: str) -> str:
        return self._index[key]

    def __iter__(self):
        return (name for name, _ in self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __hash__(self):
        return hash(frozenset(self._items))

    def __repr__(self) -> str:
        return f"NormalizedRow({dict(self._items)!r})"

    @property
    def id_name(self) -> str:
        return self._index[IDENTITY_KEY]

    @property
    def fields(self) -> List[str]:
        return [name for name, _ in self._items]

    def to_dict(self) -> Dict[str, str]:
        return dict(self._items)


@dataclass(frozen=True)
class OutputDocument:
    """The ``{"value": [...]}`` document uploaded for the import job."""
    rows: Tuple[NormalizedRow, ...] = ()

    def to_dict(self) -> Dict[str, List[Dict[str, str]]]:
        return {DOCUMENT_FIELD: [row.to_dict() for row in self.rows]}

    def to_json(self, indent: Optional[int] = None) -> str:
        # Keys are never sorted: row field order is part of the output contract
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=indent)

    def to_bytes(self) -> bytes:
        return self.to_json().encode('utf-8')

    @classmethod
    def from_json(cls, data) -> 'OutputDocument':
        """
        Parse a serialized document back into rows.

        Args:
            data: JSON text or UTF-8 bytes in ``{"value": [...]}`` form

        Returns:
            OutputDocument with the parsed rows in document order

        Raises:
            ShapingError: If the payload is not a valid output document
        """
        if isinstance(data, (bytes, bytearray)):
            data = data.decode('utf-8')
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            raise ShapingError(f"Invalid output document JSON: {e}")

        if not isinstance(payload, dict) or not isinstance(payload.get(DOCUMENT_FIELD), list):
            raise ShapingError(f"Output document must be an object with a '{DOCUMENT_FIELD}' list")

        rows = []
        for entry in payload[DOCUMENT_FIELD]:
            if not isinstance(entry, dict) or not entry.get(IDENTITY_KEY):
                raise ShapingError(f"Output document row without '{IDENTITY_KEY}': {entry!r}")
            rows.append(NormalizedRow((str(k), stringify(v)) for k, v in entry.items()))
        return cls(tuple(rows))

    def __len__(self) -> int:
        return len(self.rows)


def stringify(value: Any) -> str:
    """
    Convert a directory attribute value into the string written to the document.

    None becomes the empty string, multi-valued attributes are joined with
    ``", "``, binary values are decoded as UTF-8 and dates use ISO 8601.
    """
    if value is None:
        return ''
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode('utf-8', errors='replace')
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple, set, frozenset)):
        return ', '.join(stringify(item) for item in value if item is not None)
    return str(value)


def _as_record(record: Any) -> RawUserRecord:
    """
    Accept plain mappings as well as RawUserRecord instances.

    A mapping with an ``extension_attributes`` sub-mapping keeps the two bags
    apart. A flat mapping serves as both the regular and the extension
    attribute source, so an extension column is filled from a key of the
    same name at the top level.
    """
    if isinstance(record, RawUserRecord):
        return record
    if isinstance(record, Mapping):
        extensions = record.get('extension_attributes')
        if isinstance(extensions, Mapping):
            attributes = {k: v for k, v in record.items() if k != 'extension_attributes'}
            return RawUserRecord(attributes=attributes, extension_attributes=extensions)
        # Flat mapping: extension attributes live beside the regular ones
        return RawUserRecord(attributes=record, extension_attributes=record)
    raise ShapingError(f"Unsupported record type: {type(record).__name__}")


def _check_inputs(attribute_names: Sequence[str],
                  extension_attribute_names: Sequence[str],
                  identity_source_name: str):
    if not identity_source_name:
        raise ShapingError("Identity source attribute name must not be empty")
    if not attribute_names:
        raise ShapingError("At least one attribute name is required")

    seen = set()
    for name in list(attribute_names) + list(extension_attribute_names):
        if not name:
            raise ShapingError("Attribute names must not be empty")
        if name == IDENTITY_KEY:
            raise ShapingError(f"'{IDENTITY_KEY}' is reserved for the identity column")
        if name in seen:
            raise ShapingError(f"Attribute '{name}' requested more than once")
        seen.add(name)


def shape_record(record: Any,
                 attribute_names: Sequence[str],
                 extension_attribute_names: Sequence[str],
                 identity_source_name: str) -> Optional[NormalizedRow]:
    """
    Shape a single record. Returns None when the record has no identity value.
    """
    record = _as_record(record)

    identity = stringify(record.get(identity_source_name)).strip()
    if not identity:
        return None

    items = [(IDENTITY_KEY, identity)]
    items.extend((name, stringify(record.get(name))) for name in attribute_names)
    items.extend((name, stringify(record.get_extension(name))) for name in extension_attribute_names)
    return NormalizedRow(items)


def shape(records: Iterable[Any],
          attribute_names: Sequence[str],
          extension_attribute_names: Sequence[str] = (),
          identity_source_name: str = 'mail') -> Tuple[List[NormalizedRow], OutputDocument]:
    """
    Shape directory records into import rows and the output document.

    Args:
        records: RawUserRecord instances or plain mappings, in directory order
        attribute_names: Regular attributes to export, in column order
        extension_attribute_names: Extension attributes to export after the regular ones
        identity_source_name: Attribute holding the identity written to ``idName``

    Returns:
        Tuple of (rows, document). Records without an identity value are dropped.

    Raises:
        ShapingError: If the attribute lists or identity name are malformed
    """
    attribute_names = list(attribute_names or [])
    extension_attribute_names = list(extension_attribute_names or [])
    _check_inputs(attribute_names, extension_attribute_names, identity_source_name)

    rows = []
    dropped = 0
    for record in records:
        row = shape_record(record, attribute_names, extension_attribute_names, identity_source_name)
        if row is None:
            dropped += 1
            continue
        rows.append(row)

    if dropped:
        logger.info(f"Dropped {dropped} records without a '{identity_source_name}' value")
    logger.debug(f"Shaped {len(rows)} rows with {1 + len(attribute_names) + len(extension_attribute_names)} fields each")

    return rows, OutputDocument(tuple(rows))
