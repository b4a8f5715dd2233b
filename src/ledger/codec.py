"""Borsh encoding of instruction payloads and decoding of program records.

Layouts are built from the interface description at call time with
``borsh_construct``, so a schema revision only needs a new IDL file. Caller
arguments are looked up by snake_case or camelCase alias and widened to the
declared integer width before encoding.
"""

from typing import Any, Mapping, Optional

from borsh_construct import (
    I8,
    I16,
    I32,
    I64,
    I128,
    U8,
    U16,
    U32,
    U64,
    U128,
    Bool,
    Bytes,
    CStruct,
    F32,
    F64,
    Option,
    String,
    Vec,
)
from construct import ConstructError
from solders.pubkey import Pubkey

from src.errors import MissingArgumentError, SchemaUnavailableError, ValidationError
from src.ledger.schema import FieldDef, InterfaceSchema, OperationDef, RecordDef, camel_case, snake_case

_MISSING = object()

_INT_LAYOUTS = {
    "u8": (U8, 0, 2**8 - 1),
    "u16": (U16, 0, 2**16 - 1),
    "u32": (U32, 0, 2**32 - 1),
    "u64": (U64, 0, 2**64 - 1),
    "u128": (U128, 0, 2**128 - 1),
    "i8": (I8, -(2**7), 2**7 - 1),
    "i16": (I16, -(2**15), 2**15 - 1),
    "i32": (I32, -(2**31), 2**31 - 1),
    "i64": (I64, -(2**63), 2**63 - 1),
    "i128": (I128, -(2**127), 2**127 - 1),
}

_OTHER_LAYOUTS = {
    "bool": Bool,
    "string": String,
    "bytes": Bytes,
    "f32": F32,
    "f64": F64,
    "pubkey": U8[32],
    "publicKey": U8[32],
}


def aliases(name: str) -> tuple[str, ...]:
    """Accepted spellings of a schema field name."""
    snake = snake_case(name) if "_" not in name else name
    camel = camel_case(snake)
    return tuple(dict.fromkeys((name, snake, camel)))


def first_present(source: Optional[Mapping], keys, default: Any = None) -> Any:
    """Return the value of the first key present (and not None) in ``source``."""
    if not source:
        return default
    for key in keys:
        value = source.get(key)
        if value is not None:
            return value
    return default


def _defined_name(type_def: dict) -> str:
    defined = type_def["defined"]
    return defined["name"] if isinstance(defined, dict) else defined


class InstructionCodec:
    """Schema-driven encoder/decoder for one program's interface."""

    def __init__(self, schema: InterfaceSchema):
        self.schema = schema

    # Layouts

    def layout(self, type_def: Any):
        """Build the borsh layout for an IDL type."""
        if isinstance(type_def, str):
            if type_def in _INT_LAYOUTS:
                return _INT_LAYOUTS[type_def][0]
            if type_def in _OTHER_LAYOUTS:
                return _OTHER_LAYOUTS[type_def]
            raise SchemaUnavailableError(f"Unsupported IDL primitive type: {type_def}")
        if "option" in type_def:
            return Option(self.layout(type_def["option"]))
        if "vec" in type_def:
            return Vec(self.layout(type_def["vec"]))
        if "array" in type_def:
            inner, length = type_def["array"]
            return self.layout(inner)[length]
        if "defined" in type_def:
            user_type = self.schema.type_def(_defined_name(type_def))
            if user_type is None or user_type.kind != "struct":
                raise SchemaUnavailableError(f"Unsupported IDL type: {type_def}")
            return self.struct_layout(user_type.fields)
        raise SchemaUnavailableError(f"Unsupported IDL type: {type_def}")

    def struct_layout(self, fields: tuple[FieldDef, ...]):
        return CStruct(*(f.name / self.layout(f.type) for f in fields))

    # Encoding

    def _to_wire(self, field: str, type_def: Any, value: Any) -> Any:
        if isinstance(type_def, str):
            if type_def in _INT_LAYOUTS:
                _, lo, hi = _INT_LAYOUTS[type_def]
                try:
                    number = int(value)
                except (TypeError, ValueError):
                    raise ValidationError(f"Argument '{field}' must be an integer (got {value!r})")
                if not lo <= number <= hi:
                    raise ValidationError(f"Argument '{field}' is out of range for {type_def}: {number}")
                return number
            if type_def in ("pubkey", "publicKey"):
                if isinstance(value, Pubkey):
                    return list(bytes(value))
                try:
                    return list(bytes(Pubkey.from_string(str(value))))
                except ValueError:
                    raise ValidationError(f"Argument '{field}' is not a valid address: {value!r}")
            if type_def == "bool":
                return bool(value)
            if type_def == "string":
                return str(value)
            if type_def == "bytes":
                return bytes(value)
            return float(value)
        if "option" in type_def:
            return None if value is None else self._to_wire(field, type_def["option"], value)
        if "vec" in type_def:
            return [self._to_wire(field, type_def["vec"], item) for item in value]
        if "array" in type_def:
            inner, length = type_def["array"]
            items = list(value)
            if len(items) != length:
                raise ValidationError(f"Argument '{field}' must have exactly {length} items")
            return [self._to_wire(field, inner, item) for item in items]
        user_type = self.schema.type_def(_defined_name(type_def))
        return self._fields_to_wire(user_type.fields, value, context=field)

    def _fields_to_wire(self, fields: tuple[FieldDef, ...], values: Mapping, context: str) -> dict:
        wire = {}
        for f in fields:
            value = first_present(values, aliases(f.name), default=_MISSING)
            if value is _MISSING:
                if isinstance(f.type, dict) and "option" in f.type:
                    value = None
                else:
                    raise MissingArgumentError(
                        f"No value mapped for argument '{f.name}' of {context}",
                        details={"missing": f.name, "available_keys": sorted(values or {})},
                    )
            wire[f.name] = self._to_wire(f.name, f.type, value)
        return wire

    def encode(self, operation: OperationDef, args: Mapping[str, Any]) -> bytes:
        """Serialize an instruction payload: discriminator then borsh args.

        Args:
            operation: The resolved instruction definition.
            args: Argument values keyed by snake_case or camelCase name.

        Returns:
            The instruction data bytes.

        Raises:
            MissingArgumentError: If a declared argument has no value.
        """
        if not operation.args:
            return operation.discriminator
        wire = self._fields_to_wire(operation.args, args, context=operation.name)
        return operation.discriminator + self.struct_layout(operation.args).build(wire)

    # Decoding

    def _from_wire(self, type_def: Any, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(type_def, str):
            if type_def in ("pubkey", "publicKey"):
                return Pubkey.from_bytes(bytes(value))
            if type_def == "bytes":
                return bytes(value)
            return value
        if "option" in type_def:
            return self._from_wire(type_def["option"], value)
        if "vec" in type_def:
            return [self._from_wire(type_def["vec"], item) for item in value]
        if "array" in type_def:
            return [self._from_wire(type_def["array"][0], item) for item in value]
        user_type = self.schema.type_def(_defined_name(type_def))
        return self._fields_from_wire(user_type.fields, value)

    def _fields_from_wire(self, fields: tuple[FieldDef, ...], parsed: Mapping) -> dict:
        return {f.name: self._from_wire(f.type, parsed[f.name]) for f in fields}

    @staticmethod
    def _parse(layout, data: bytes, name: str):
        try:
            return layout.parse(bytes(data[8:]))
        except ConstructError as e:
            raise ValueError(f"Malformed {name} data: {e}") from e

    def decode_instruction(self, data: bytes) -> tuple[OperationDef, dict]:
        """Decode instruction data back into its definition and argument values.

        Raises:
            ValueError: If no instruction has the leading discriminator.
        """
        prefix = bytes(data[:8])
        for operation in self.schema.operations:
            if operation.discriminator == prefix:
                if not operation.args:
                    return operation, {}
                parsed = self._parse(self.struct_layout(operation.args), data, operation.name)
                return operation, self._fields_from_wire(operation.args, parsed)
        raise ValueError(f"Unknown instruction discriminator: {prefix.hex()}")

    def decode_record(self, record: RecordDef, data: bytes) -> dict:
        """Decode an account's data as the given record type.

        Raises:
            ValueError: If the discriminator does not match the record type.
        """
        if bytes(data[:8]) != record.discriminator:
            raise ValueError(f"Account data is not a {record.name} record")
        parsed = self._parse(self.struct_layout(record.fields), data, record.name)
        return self._fields_from_wire(record.fields, parsed)

    def encode_record(self, record: RecordDef, values: Mapping[str, Any]) -> bytes:
        """Serialize a record the way the program stores it (used by fixtures and tooling)."""
        wire = self._fields_to_wire(record.fields, values, context=record.name)
        return record.discriminator + self.struct_layout(record.fields).build(wire)
