"""LocalLedger: In-process ledger for local development and tests.

Plays the role of the program that owns feed accounts: accounts are kept as
raw bytes, every instruction is signature-checked, decoded and processed,
and the account is written back only when processing succeeds. Failed
updates on an initialized account are counted on that account (feeding its
circuit breaker) unless the failure is not the feed's fault, such as a
foreign signer or a replayed sequence.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from eth_account.signers.local import LocalAccount
from web3 import Web3

from .config import DEFAULT_PROGRAM_ID, FeedPolicy
from .errors import (
    AccountNotFoundError,
    AlreadyInitializedError,
    ErrorKind,
    KeeperError,
)
from .LedgerClient import LedgerClient, SubmitReceipt
from .PriceFeedAccount import PriceFeedAccount
from .UpdateProtocol import (
    InitializeCommand,
    Instruction,
    process,
    recover_signer,
    sign_instruction,
)

logger = logging.getLogger(__name__)

# Failures that are not the feed's fault and must not open its breaker.
_UNCOUNTED_ERRORS = frozenset(
    {
        ErrorKind.MISSING_ACCOUNT,
        ErrorKind.NOT_INITIALIZED,
        ErrorKind.UNAUTHORIZED,
        ErrorKind.CIRCUIT_OPEN,
        ErrorKind.REPLAYED_SEQUENCE,
    }
)


class LocalLedger(LedgerClient):
    """Ledger client that executes instructions in process.

    :ivar program_id: Program address recorded on initialized accounts.
    :ivar policy: Policy given to newly allocated accounts.
    :ivar sequence_number: Count of accepted instructions.
    """

    def __init__(
        self,
        program_id: str = DEFAULT_PROGRAM_ID,
        policy: FeedPolicy | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """Initialize an empty ledger.

        :param program_id: Program address (default: localnet program).
        :param policy: Policy for new accounts (default: FeedPolicy()).
        :param clock: Time source (default: time.time).
        """
        self.program_id = Web3.to_checksum_address(program_id)
        self.policy = policy or FeedPolicy()
        self.clock = clock
        self.sequence_number = 0
        self._accounts: dict[str, bytes] = {}

    def _now(self) -> float:
        return self.clock() if self.clock is not None else time.time()

    def allocate(self, address: str, capacity: int) -> None:
        """Allocate an uninitialized feed account at an address.

        :param address: Account address.
        :param capacity: History slots.
        """
        key = Web3.to_checksum_address(address)
        if key in self._accounts:
            raise AlreadyInitializedError(f"Account {key} already allocated")
        self._accounts[key] = PriceFeedAccount(capacity, self.policy).serialize()
        logger.debug(f"Allocated account {key} with capacity {capacity}")

    def get_account(self, address: str) -> bytes:
        """Read the raw bytes stored at an account address.

        :raises AccountNotFoundError: If nothing is stored at the address.
        """
        key = Web3.to_checksum_address(address)
        data = self._accounts.get(key)
        if data is None:
            raise AccountNotFoundError(f"No account at {key}")
        return data

    def submit(self, instruction: bytes, signer: LocalAccount) -> SubmitReceipt:
        """Sign an instruction with ``signer`` and execute it."""
        return self.execute(instruction, sign_instruction(instruction, signer))

    def execute(self, instruction: bytes, signature: bytes) -> SubmitReceipt:
        """Verify, decode and process a signed instruction.

        :param instruction: Encoded instruction.
        :param signature: Signature over the instruction bytes.
        :returns: SubmitReceipt.
        """
        now = self._now()
        try:
            signer = recover_signer(instruction, signature)
            decoded = Instruction.decode(instruction)
        except KeeperError as e:
            logger.warning(f"Rejected instruction: {e}")
            return SubmitReceipt(False, error=e.kind, message=str(e))

        account = None
        if decoded.account is not None:
            data = self._accounts.get(decoded.account)
            if data is not None:
                account = PriceFeedAccount.deserialize(data)
            elif isinstance(decoded.command, InitializeCommand):
                try:
                    account = PriceFeedAccount(decoded.command.capacity, self.policy)
                except ValueError as e:
                    return SubmitReceipt(
                        False, error=ErrorKind.INVALID_PARAMETER, message=str(e)
                    )

        result = process(
            decoded, account, signer, program_ref=self.program_id, now=now
        )
        if result.success:
            self._accounts[decoded.account] = account.serialize()
            self.sequence_number += 1
            return SubmitReceipt(True, sequence_number=self.sequence_number)

        if (
            account is not None
            and account.is_initialized
            and result.error not in _UNCOUNTED_ERRORS
            and not isinstance(decoded.command, InitializeCommand)
        ):
            account.record_error(now)
            self._accounts[decoded.account] = account.serialize()

        logger.info(f"Instruction for {decoded.account} rejected: {result.error}")
        return SubmitReceipt(False, error=result.error, message=result.message)
