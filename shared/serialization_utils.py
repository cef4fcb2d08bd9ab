"""
Serialization utilities for the Press chain indexer.

JSON encoding for decoded event records, raw log payloads and uint256-sized
integers (trace logs, read-side exports).

Usage:
    from shared.serialization_utils import RecordEncoder
    json.dumps(record, cls=RecordEncoder)
"""

import dataclasses
import json
from enum import Enum
from json import JSONEncoder
from typing import Any

from hexbytes import HexBytes


class RecordEncoder(JSONEncoder):
    """
    JSON encoder handling dataclass records, bytes/HexBytes, enums and large integers.

    Sources:
    - RFC 7159 section 6 (JSON number limits)
    - IEEE 754-2008 (double precision safe integer limit: 2^53 - 1)
    """

    # IEEE 754 double precision safe integer limit
    _MAX_SAFE_INTEGER = 2**53 - 1

    def default(self, obj: Any) -> Any:
        if isinstance(obj, (HexBytes, bytes, bytearray)):
            return "0x" + bytes(obj).hex()
        if isinstance(obj, Enum):
            return obj.value
        if hasattr(obj, "__iter__") and hasattr(obj, "keys"):
            return dict(obj)
        return super().default(obj)

    def iterencode(self, obj: Any, _one_shot: bool = False):
        """Convert records and large integers before JSON serialization."""
        return super().iterencode(self._convert(obj), _one_shot)

    def _convert(self, obj: Any) -> Any:
        """
        Recursively flatten dataclasses and stringify integers beyond the IEEE 754
        safe range, so fee and supply amounts survive JavaScript consumers.
        """
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            out = {"kind": type(obj).__name__}
            out.update({f.name: self._convert(getattr(obj, f.name)) for f in dataclasses.fields(obj)})
            return out
        if isinstance(obj, dict):
            return {k: self._convert(v) for k, v in obj.items()}
        if isinstance(obj, (list, tuple)):
            return [self._convert(item) for item in obj]
        if isinstance(obj, bool):
            return obj
        if isinstance(obj, int) and (obj > self._MAX_SAFE_INTEGER or obj < -self._MAX_SAFE_INTEGER):
            return str(obj)
        return obj
