from __future__ import annotations

import base64
import collections
import dataclasses
import datetime
import decimal
import enum
import json
import logging
import pathlib
import re
import uuid
from typing import Any

import orjson

logger = logging.getLogger(__name__)

_OPTIONS = (
    orjson.OPT_SERIALIZE_DATACLASS
    | orjson.OPT_SERIALIZE_UUID
    | orjson.OPT_NON_STR_KEYS
    | orjson.OPT_UTC_Z
)


def _simple_default(obj: Any) -> Any:
    try:
        # Only types orjson doesn't serialize natively end up here
        if isinstance(obj, datetime.datetime):
            return obj.isoformat()
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, BaseException):
            return {"error": type(obj).__name__, "message": str(obj)}
        if isinstance(obj, (set, frozenset, collections.deque)):
            return list(obj)
        if isinstance(obj, datetime.timedelta):
            return obj.total_seconds()
        if isinstance(obj, decimal.Decimal):
            if obj.as_tuple().exponent >= 0:
                return int(obj)
            return float(obj)
        if isinstance(obj, enum.Enum):
            return obj.value
        if isinstance(obj, pathlib.PurePath):
            return str(obj)
        if isinstance(obj, re.Pattern):
            return obj.pattern
        if isinstance(obj, (bytes, bytearray)):
            return base64.b64encode(obj).decode()
        return str(obj)
    except Exception as e:
        logger.debug(f"Failed to serialize {type(obj)} to JSON: {e}")
    return repr(obj)


def _serialize_json(obj: Any) -> Any:
    if isinstance(obj, (set, tuple)):
        if hasattr(obj, "_asdict") and callable(obj._asdict):
            # NamedTuple
            return obj._asdict()
        return list(obj)
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)

    for attr in ("model_dump", "to_dict"):
        method = getattr(obj, attr, None)
        if callable(method) and not isinstance(obj, type):
            try:
                response = method()
            except Exception as e:
                logger.error(
                    f"Failed to use {attr} to serialize {type(obj)} to JSON: {e!r}"
                )
                continue
            if isinstance(response, dict):
                return response
            return str(response)
    return _simple_default(obj)


def _elide_surrogates(s: bytes) -> bytes:
    pattern = re.compile(rb"\\ud[89a-f][0-9a-f]{2}", re.IGNORECASE)
    return pattern.sub(b"", s)


def dumps_json(obj: Any) -> bytes:
    """Serialize an object to JSON bytes.

    Values orjson cannot handle natively (pydantic models, exceptions, sets,
    arbitrary objects) are converted best-effort rather than raising.
    """
    try:
        return orjson.dumps(obj, default=_serialize_json, option=_OPTIONS)
    except TypeError as e:
        # Usually caused by UTF surrogate characters
        logger.debug(f"Orjson serialization failed: {e!r}. Falling back to json.")
        result = json.dumps(
            obj,
            default=_simple_default,
            ensure_ascii=True,
        ).encode("utf-8")
        try:
            return orjson.dumps(
                orjson.loads(_elide_surrogates(result)), option=_OPTIONS
            )
        except orjson.JSONDecodeError:
            return _elide_surrogates(result)


def loads_json(data: bytes) -> Any:
    return orjson.loads(data)
