"""Interface description (Anchor IDL) loading and name resolution.

The schema is parsed once into an immutable index of operations (instructions)
and record types (accounts). Lookups are by name fragments: every fragment must
appear, case-insensitively and ignoring underscores, in the declared name. That
keeps callers working across IDL revisions that rename ``createCampaign`` to
``create_campaign_v2`` and the like.

Both the current Anchor format (explicit discriminators, ``writable``/``signer``
flags, account layouts under ``types``) and the older format (``isMut``/
``isSigner``, layouts inline on the account, no discriminators) are accepted.
"""

import hashlib
import json
import re
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.logging_utils import get_logger

logger = get_logger(__name__)


class FieldDef(BaseModel):
    """One named, typed field of an argument list or record layout."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: Any = Field(description="IDL type: a primitive name or a compound mapping")


class AccountDef(BaseModel):
    """An account slot an instruction expects, in declaration order."""

    model_config = ConfigDict(frozen=True)

    name: str
    writable: bool = False
    signer: bool = False
    address: Optional[str] = Field(default=None, description="Fixed address, e.g. the system program")


class OperationDef(BaseModel):
    """A program instruction: discriminator, ordered accounts and ordered args."""

    model_config = ConfigDict(frozen=True)

    name: str
    discriminator: bytes
    accounts: tuple[AccountDef, ...] = ()
    args: tuple[FieldDef, ...] = ()


class RecordDef(BaseModel):
    """A program-owned account type: discriminator and ordered fields."""

    model_config = ConfigDict(frozen=True)

    name: str
    discriminator: bytes
    fields: tuple[FieldDef, ...] = ()


class TypeDef(BaseModel):
    """A named user type from the ``types`` section."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: str
    fields: tuple[FieldDef, ...] = ()
    variants: tuple[Any, ...] = ()


def snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def _normalize(name: str) -> str:
    return name.replace("_", "").replace("-", "").lower()


def _sighash(namespace: str, name: str) -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:8]


def _matches(name: str, fragments: tuple[str, ...]) -> bool:
    normalized = _normalize(name)
    return all(_normalize(fragment) in normalized for fragment in fragments)


def _best_match(candidates: dict, fragments: tuple[str, ...]):
    """Pick the definition whose name matches all fragments.

    An exact (normalized) match wins; otherwise the shortest matching name,
    ties broken alphabetically, so lookups are deterministic.
    """
    if not fragments:
        return None
    joined = _normalize("".join(fragments))
    matching = [name for name in candidates if _matches(name, fragments)]
    if not matching:
        return None
    for name in matching:
        if _normalize(name) == joined:
            return candidates[name]
    return candidates[min(matching, key=lambda n: (len(n), n))]


class InterfaceSchema:
    """Immutable, indexed view of a program's interface description."""

    def __init__(
        self,
        name: str,
        address: Optional[str],
        operations: dict[str, OperationDef],
        records: dict[str, RecordDef],
        types: dict[str, TypeDef],
        errors: dict[int, str],
        source: Optional[str] = None,
    ):
        self.name = name
        self.address = address
        self._operations = dict(operations)
        self._records = dict(records)
        self._types = dict(types)
        self._errors = dict(errors)
        self.source = source

    @property
    def operation_names(self) -> list[str]:
        return sorted(self._operations)

    @property
    def record_names(self) -> list[str]:
        return sorted(self._records)

    @property
    def operations(self) -> tuple[OperationDef, ...]:
        return tuple(self._operations.values())

    @property
    def records(self) -> tuple[RecordDef, ...]:
        return tuple(self._records.values())

    def resolve_operation(self, *fragments: str) -> Optional[OperationDef]:
        """Find the instruction whose name contains every fragment.

        Args:
            fragments: Name fragments, e.g. ``("redeem", "coupon")``.

        Returns:
            The matching OperationDef, or None when nothing matches.
        """
        return _best_match(self._operations, fragments)

    def resolve_record_type(self, *fragments: str) -> Optional[RecordDef]:
        """Find the account type whose name contains every fragment."""
        return _best_match(self._records, fragments)

    def type_def(self, name: str) -> Optional[TypeDef]:
        return self._types.get(name)

    def error_message(self, code: int) -> Optional[str]:
        """Human-readable message for a custom program error code."""
        return self._errors.get(code)

    @classmethod
    def from_dict(cls, raw: dict, source: Optional[str] = None) -> "InterfaceSchema":
        """Build a schema from a parsed IDL document.

        Raises:
            ValueError: If the document has no instructions section.
        """
        if not isinstance(raw.get("instructions"), list):
            raise ValueError("IDL document has no 'instructions' list")

        types: dict[str, TypeDef] = {}
        for entry in raw.get("types") or []:
            body = entry.get("type") or {}
            types[entry["name"]] = TypeDef(
                name=entry["name"],
                kind=body.get("kind", "struct"),
                fields=tuple(FieldDef(name=f["name"], type=f["type"]) for f in body.get("fields") or []),
                variants=tuple(body.get("variants") or ()),
            )

        operations: dict[str, OperationDef] = {}
        for entry in raw["instructions"]:
            name = entry["name"]
            discriminator = entry.get("discriminator")
            operations[name] = OperationDef(
                name=name,
                discriminator=bytes(discriminator) if discriminator else _sighash("global", snake_case(name)),
                accounts=tuple(_flatten_accounts(entry.get("accounts") or [])),
                args=tuple(FieldDef(name=a["name"], type=a["type"]) for a in entry.get("args") or []),
            )

        records: dict[str, RecordDef] = {}
        for entry in raw.get("accounts") or []:
            name = entry["name"]
            discriminator = entry.get("discriminator")
            # Older IDLs carry the layout inline; newer ones point into `types`
            body = entry.get("type") or {}
            if body.get("fields") is not None:
                fields = tuple(FieldDef(name=f["name"], type=f["type"]) for f in body["fields"])
            elif name in types:
                fields = types[name].fields
            else:
                logger.warning(f"IDL account {name} has no layout; it cannot be decoded")
                fields = ()
            records[name] = RecordDef(
                name=name,
                discriminator=bytes(discriminator) if discriminator else _sighash("account", name),
                fields=fields,
            )

        errors = {e["code"]: e.get("msg") or e["name"] for e in raw.get("errors") or []}
        metadata = raw.get("metadata") or {}

        return cls(
            name=metadata.get("name") or raw.get("name") or "unknown",
            address=raw.get("address") or metadata.get("address"),
            operations=operations,
            records=records,
            types=types,
            errors=errors,
            source=source,
        )

    @classmethod
    def from_file(cls, path: str) -> "InterfaceSchema":
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        return cls.from_dict(raw, source=str(path))


def _flatten_accounts(entries: list) -> list[AccountDef]:
    """Flatten nested account groups into declaration order."""
    accounts = []
    for entry in entries:
        if "accounts" in entry:
            accounts.extend(_flatten_accounts(entry["accounts"]))
            continue
        accounts.append(
            AccountDef(
                name=entry["name"],
                writable=bool(entry.get("writable", entry.get("isMut", False))),
                signer=bool(entry.get("signer", entry.get("isSigner", False))),
                address=entry.get("address"),
            )
        )
    return accounts


def load_schema(path: str) -> Optional[InterfaceSchema]:
    """Load the interface description, or None if it cannot be read.

    A missing or malformed file must not stop the process; endpoints that need
    the schema report it as unavailable instead.

    Args:
        path: Filesystem path of the IDL JSON document.

    Returns:
        The parsed schema, or None.
    """
    if not Path(path).is_file():
        logger.error(f"Interface description not found at {path}")
        return None
    try:
        schema = InterfaceSchema.from_file(path)
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.error(f"Failed to load interface description from {path}: {e}")
        return None

    logger.info(
        f"Loaded interface description '{schema.name}' from {path}: "
        f"{len(schema.operation_names)} instructions, {len(schema.record_names)} account types"
    )
    return schema
