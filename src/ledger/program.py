"""Schema-aware access to the promo program's instructions and accounts."""

from typing import Any, Mapping, Optional, Sequence

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from src.errors import MissingArgumentError, SchemaUnavailableError
from src.ledger.codec import InstructionCodec, aliases, first_present
from src.ledger.rpc import LedgerAccount, LedgerRpc, memcmp
from src.ledger.schema import InterfaceSchema, OperationDef, RecordDef
from src.logging_utils import get_logger

logger = get_logger(__name__)


class ProgramClient:
    """Builds instructions and decodes records for one deployed program.

    The schema is optional so the service can start without it; anything that
    needs it raises ``SchemaUnavailableError`` naming the missing artifact.
    """

    def __init__(
        self,
        program_id: Pubkey,
        rpc: LedgerRpc,
        schema: Optional[InterfaceSchema],
        schema_path: str = "",
    ):
        self.program_id = program_id
        self.rpc = rpc
        self.schema_path = schema_path
        self._schema = schema
        self._codec = InstructionCodec(schema) if schema is not None else None

    @property
    def schema_loaded(self) -> bool:
        return self._schema is not None

    def require_schema(self) -> InterfaceSchema:
        if self._schema is None:
            raise SchemaUnavailableError(
                "Program interface description is not loaded.",
                details={"artifact": self.schema_path, "hint": "Set PROMO_IDL_PATH to the program's IDL JSON"},
            )
        return self._schema

    @property
    def codec(self) -> InstructionCodec:
        self.require_schema()
        return self._codec

    def operation(self, *fragments: str) -> OperationDef:
        schema = self.require_schema()
        operation = schema.resolve_operation(*fragments)
        if operation is None:
            raise SchemaUnavailableError(
                f"No instruction matching {list(fragments)} in the interface description.",
                details={"available": schema.operation_names},
            )
        return operation

    def record_type(self, *fragments: str) -> RecordDef:
        schema = self.require_schema()
        record = schema.resolve_record_type(*fragments)
        if record is None:
            raise SchemaUnavailableError(
                f"No account type matching {list(fragments)} in the interface description.",
                details={"available": schema.record_names},
            )
        return record

    def instruction(
        self,
        fragments: Sequence[str],
        accounts: Mapping[str, Pubkey],
        args: Mapping[str, Any],
    ) -> Instruction:
        """Build a program instruction from named accounts and arguments.

        Account order, signer and writable flags come from the schema; fixed
        addresses (e.g. the system program) fill themselves in.

        Args:
            fragments: Instruction name fragments, e.g. ``("mint", "coupon")``.
            accounts: Account addresses keyed by snake_case or camelCase name.
            args: Argument values keyed by snake_case or camelCase name.

        Returns:
            The instruction, ready to assemble.
        """
        operation = self.operation(*fragments)
        metas = []
        for account in operation.accounts:
            pubkey = first_present(accounts, aliases(account.name))
            if pubkey is None and account.address:
                pubkey = Pubkey.from_string(account.address)
            if pubkey is None:
                raise MissingArgumentError(
                    f"No account mapped for '{account.name}' of {operation.name}",
                    details={"missing": account.name, "available_keys": sorted(accounts)},
                )
            metas.append(AccountMeta(pubkey=pubkey, is_signer=account.signer, is_writable=account.writable))
        data = self.codec.encode(operation, args)
        return Instruction(program_id=self.program_id, data=data, accounts=metas)

    async def fetch_account(self, address: Pubkey, label: str) -> Optional[LedgerAccount]:
        return await self.rpc.get_account_info(address, label=label)

    def decode(self, record: RecordDef, account: LedgerAccount) -> dict:
        return self.codec.decode_record(record, account.data)

    async def fetch_record(self, address: Pubkey, *fragments: str) -> Optional[dict]:
        """Fetch and decode one account, or None if it does not exist."""
        record = self.record_type(*fragments)
        account = await self.fetch_account(address, label=f"getAccountInfo({record.name}:{address})")
        if account is None:
            return None
        return self.decode(record, account)

    async def list_records(self, fragments: Sequence[str], filters: Sequence[dict] = ()) -> list[tuple[str, dict]]:
        """Fetch and decode every account of a record type.

        Accounts that fail to decode are logged and skipped.

        Returns:
            ``(address, decoded)`` pairs.
        """
        record = self.record_type(*fragments)
        accounts = await self.rpc.get_program_accounts(
            self.program_id,
            filters=[memcmp(0, record.discriminator), *filters],
            label=f"getProgramAccounts({record.name})",
        )
        decoded = []
        for account in accounts:
            try:
                decoded.append((account.address, self.decode(record, account)))
            except (ValueError, KeyError) as e:
                logger.warning(f"Skipping undecodable {record.name} account {account.address}: {e}")
        return decoded
