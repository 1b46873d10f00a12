"""
Signal Data Types
=================

VSS data types used by fixture rules and the coercion applied to rule
outputs before they are published.

Coercion rules:
    - Widening (int8 -> int32, float -> double) is always allowed
    - Narrowing is allowed only if the value fits; out-of-range values raise
      ValueRangeError instead of wrapping
    - Integers never silently truncate fractional values
"""

import math
from enum import Enum
from typing import Any, Optional, Tuple

import numpy as np

from ..errors import ValueRangeError


class DataType(Enum):
    """Declared data type of a VSS signal."""
    BOOLEAN = "boolean"
    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    UINT8 = "uint8"
    UINT16 = "uint16"
    UINT32 = "uint32"
    UINT64 = "uint64"
    FLOAT = "float"
    DOUBLE = "double"
    STRING = "string"

    @classmethod
    def from_string(cls, name: str) -> Optional["DataType"]:
        """
        Parse a data type name as written in fixture files.

        Returns:
            DataType, or None if the name is unknown
        """
        key = name.strip().lower()
        for data_type in cls:
            if data_type.value == key:
                return data_type
        return None

    @property
    def is_integer(self) -> bool:
        return self in _INTEGER_DTYPES

    @property
    def is_floating(self) -> bool:
        return self in (DataType.FLOAT, DataType.DOUBLE)


_INTEGER_DTYPES = {
    DataType.INT8: np.int8,
    DataType.INT16: np.int16,
    DataType.INT32: np.int32,
    DataType.INT64: np.int64,
    DataType.UINT8: np.uint8,
    DataType.UINT16: np.uint16,
    DataType.UINT32: np.uint32,
    DataType.UINT64: np.uint64,
}


def integer_range(data_type: DataType) -> Tuple[int, int]:
    """Inclusive (min, max) for an integer data type."""
    info = np.iinfo(_INTEGER_DTYPES[data_type])
    return int(info.min), int(info.max)


def coerce(value: Any, data_type: Optional[DataType]) -> Any:
    """
    Convert a rule output to the declared data type.

    Args:
        value: Raw value produced by a rule
        data_type: Declared type, or None to pass the value through

    Returns:
        Plain Python value (bool, int, float or str)

    Raises:
        ValueRangeError: value cannot be represented without loss
    """
    if data_type is None:
        return value
    if isinstance(value, np.generic):
        value = value.item()

    if data_type == DataType.BOOLEAN:
        return _to_bool(value)
    if data_type.is_integer:
        return _to_int(value, data_type)
    if data_type.is_floating:
        return _to_float(value, data_type)
    return str(value)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ValueRangeError(f"{value!r} is not a boolean")


def _to_int(value: Any, data_type: DataType) -> int:
    if isinstance(value, bool):
        result = int(value)
    elif isinstance(value, int):
        result = value
    elif isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise ValueRangeError(f"{value!r} is not an integral value for {data_type.value}")
        result = int(value)
    else:
        try:
            result = int(str(value), 0)
        except ValueError:
            raise ValueRangeError(f"{value!r} is not a valid {data_type.value}") from None

    low, high = integer_range(data_type)
    if not low <= result <= high:
        raise ValueRangeError(f"{result} out of range for {data_type.value} [{low}, {high}]")
    return result


def _to_float(value: Any, data_type: DataType) -> float:
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            raise ValueRangeError(f"{value!r} is not a valid {data_type.value}") from None
    elif not isinstance(value, (int, float)):
        raise ValueRangeError(f"{value!r} is not a valid {data_type.value}")

    result = float(value)
    if data_type == DataType.FLOAT and math.isfinite(result):
        if abs(result) > float(np.finfo(np.float32).max):
            raise ValueRangeError(f"{result} out of range for float")
        result = float(np.float32(result))
    return result
