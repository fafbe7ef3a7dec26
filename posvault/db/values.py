"""Row and payload values.

Rows read from the store, rows carried in a snapshot, and change-event
payloads are all ordered ``dict[str, RowValue]`` where ``RowValue`` is a
closed set of scalars.  Anything else is normalised before it reaches a
parameterised statement so dynamic INSERT/UPDATE generation never has to
guess at a value's type.
"""

from __future__ import annotations

import base64
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Union

RowValue = Union[None, bool, int, float, str]
Row = dict[str, RowValue]


def coerce_value(value: Any) -> RowValue:
    """Map an arbitrary Python value onto :data:`RowValue`.

    * ``None``, ``bool``, ``int``, ``float``, ``str`` pass through
    * ``Decimal`` -> ``int`` when integral, else ``float``
    * ``datetime`` / ``date`` -> ISO-8601 text
    * ``bytes`` -> base64 text
    * ``dict`` / ``list`` / ``tuple`` -> compact JSON text
    * everything else -> ``str(value)``
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def coerce_row(row: Mapping[str, Any]) -> Row:
    """Coerce every value of *row*, keeping key order."""
    return {str(key): coerce_value(value) for key, value in row.items()}
