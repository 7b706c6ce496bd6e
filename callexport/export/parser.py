"""
Record parser: delimited text line -> typed record tuple.

Splitting is delegated to the stdlib ``csv`` reader so enclosing and escaping
rules behave like the files the upstream import tools write. Conversion is
driven by the field schema; every failure becomes a ``MalformedRecordError``
for that line only.
"""

from __future__ import annotations

import csv
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Tuple

from callexport.domain.models import DelimiterConfig, FieldSchema, FieldType
from callexport.errors import MalformedRecordError

Record = Tuple[Any, ...]

_TRUE = {"true", "t", "1", "yes", "y"}
_FALSE = {"false", "f", "0", "no", "n"}


def _to_bool(text: str) -> bool:
    lowered = text.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(f"not a boolean: {text!r}")


def _to_decimal(text: str) -> Decimal:
    try:
        value = Decimal(text.strip())
    except InvalidOperation as exc:
        raise ValueError(f"not a decimal: {text!r}") from exc
    if not value.is_finite():
        raise ValueError(f"not a finite decimal: {text!r}")
    return value


_CONVERTERS: Dict[FieldType, Callable[[str], Any]] = {
    FieldType.INTEGER: lambda text: int(text.strip()),
    FieldType.FLOAT: lambda text: float(text.strip()),
    FieldType.DECIMAL: _to_decimal,
    FieldType.STRING: lambda text: text,
    FieldType.DATE: lambda text: date.fromisoformat(text.strip()),
    FieldType.TIMESTAMP: lambda text: datetime.fromisoformat(text.strip()),
    FieldType.BOOLEAN: _to_bool,
}


class RecordParser:
    """
    Parse delimited lines against a fixed field schema.

    The parser is stateless between calls: a malformed line never affects the
    next one.
    """

    def __init__(self, field_schema: FieldSchema, delimiters: DelimiterConfig) -> None:
        self.field_schema = field_schema
        self.delimiters = delimiters
        self._dialect = self._make_dialect(delimiters)

    @staticmethod
    def _make_dialect(delimiters: DelimiterConfig) -> Dict[str, Any]:
        dialect: Dict[str, Any] = {
            "delimiter": delimiters.fields_terminated_by,
            "escapechar": delimiters.escaped_by,
            "strict": True,
            "skipinitialspace": False,
        }
        if delimiters.enclosed_by:
            dialect["quotechar"] = delimiters.enclosed_by
            dialect["quoting"] = csv.QUOTE_MINIMAL
            dialect["doublequote"] = delimiters.escaped_by is None
        else:
            dialect["quoting"] = csv.QUOTE_NONE
        return dialect

    def split(self, line: str, offset: int = 0) -> List[str]:
        if self.delimiters.lines_terminated_by == "\n" and line.endswith("\r"):
            line = line[:-1]
        try:
            rows = list(csv.reader([line], **self._dialect))
        except csv.Error as exc:
            raise MalformedRecordError(offset, line, str(exc)) from exc
        if not rows or not rows[0]:
            # empty line: a single empty field
            return [""]
        if len(rows) > 1:
            raise MalformedRecordError(offset, line, "embedded line break")
        return rows[0]

    def parse(self, line: str, offset: int = 0) -> Record:
        """
        Convert one line into a record matching the schema arity and types.

        Raises
        ------
        MalformedRecordError
            On wrong field count or an unparsable typed value.
        """
        values = self.split(line, offset)
        if len(values) != len(self.field_schema):
            raise MalformedRecordError(
                offset,
                line,
                f"expected {len(self.field_schema)} fields, found {len(values)}",
            )

        null_string = self.delimiters.null_string
        record: List[Any] = []
        for spec, text in zip(self.field_schema, values):
            if null_string is not None and text == null_string:
                record.append(None)
                continue
            try:
                record.append(_CONVERTERS[spec.type](text))
            except ValueError as exc:
                raise MalformedRecordError(
                    offset, line, f"field '{spec.name}' ({spec.type.value}): {exc}"
                ) from exc
        return tuple(record)


__all__ = ["Record", "RecordParser"]
