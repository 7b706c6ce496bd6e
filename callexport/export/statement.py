"""
Statement builder: field schema + procedure name -> reusable CALL template.

The template is composed once per task with ``psycopg.sql`` so the procedure
name is quoted as an identifier and every record value travels as a bound,
explicitly cast parameter. Record data never becomes part of the SQL text.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Sequence, Tuple

from psycopg import sql

from callexport.domain.models import FieldSchema, FieldSpec, FieldType
from callexport.errors import BindingError, SchemaError

_ACCEPTED: Dict[FieldType, Tuple[type, ...]] = {
    FieldType.INTEGER: (int,),
    FieldType.FLOAT: (float, int, Decimal),
    FieldType.DECIMAL: (Decimal, int, float),
    FieldType.STRING: (str,),
    FieldType.DATE: (date,),
    FieldType.TIMESTAMP: (datetime,),
    FieldType.BOOLEAN: (bool,),
}


def _check_value(spec: FieldSpec, value: Any, offset: Optional[int]) -> None:
    if value is None:
        if not spec.nullable:
            raise BindingError(spec.name, "NULL for a non-nullable parameter", offset)
        return
    # bool is an int subclass; only boolean slots take it.
    if isinstance(value, bool) and spec.type is not FieldType.BOOLEAN:
        raise BindingError(spec.name, f"boolean value for {spec.type.value} parameter", offset)
    if spec.type is FieldType.DATE and isinstance(value, datetime):
        raise BindingError(spec.name, "timestamp value for date parameter", offset)
    if not isinstance(value, _ACCEPTED[spec.type]):
        raise BindingError(
            spec.name,
            f"{type(value).__name__} value {value!r} for {spec.type.value} parameter",
            offset,
        )


@dataclass(frozen=True)
class CallTemplate:
    """A prepared-once ``CALL`` statement with one typed slot per schema field."""

    procedure: str
    field_schema: FieldSchema
    query: sql.Composed

    @property
    def arity(self) -> int:
        return len(self.field_schema)

    def bind(self, record: Sequence[Any], offset: Optional[int] = None) -> Tuple[Any, ...]:
        """
        Validate a record against the schema and return its positional parameters.

        Raises
        ------
        BindingError
            If the arity differs or a value's runtime type does not match its slot.
        """
        if len(record) != self.arity:
            raise BindingError(
                "<record>", f"expected {self.arity} values, got {len(record)}", offset
            )
        for spec, value in zip(self.field_schema, record):
            _check_value(spec, value, offset)
        return tuple(record)


class StatementBuilder:
    """
    Build the ``CALL`` template for a procedure.

    ``procedure`` may be schema-qualified (``schema.proc``); each part is quoted
    verbatim, so case matters.
    """

    def __init__(self, procedure: str, field_schema: FieldSchema) -> None:
        if not procedure or any(not part for part in procedure.split(".")):
            raise SchemaError(f"Invalid procedure name {procedure!r}")
        if not field_schema:
            raise SchemaError(f"Procedure {procedure!r} has an empty field schema")
        self.procedure = procedure
        self.field_schema = tuple(field_schema)

    def build(self) -> CallTemplate:
        params = sql.SQL(", ").join(
            sql.SQL("{}::{}").format(sql.Placeholder(), sql.SQL(spec.cast))
            for spec in self.field_schema
        )
        query = sql.SQL("CALL {proc}({params})").format(
            proc=sql.Identifier(*self.procedure.split(".")),
            params=params,
        )
        return CallTemplate(procedure=self.procedure, field_schema=self.field_schema, query=query)


__all__ = ["CallTemplate", "StatementBuilder"]
