"""LedgerClient: Abstract base class for ledger interaction.

The keeper talks to the ledger through two calls: submit a signed
instruction and read an account's raw bytes. Implementations decide how the
instruction reaches the program that owns the feed accounts.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from eth_account.signers.local import LocalAccount

from .errors import ErrorKind
from .PriceFeedAccount import PriceFeedAccount


@dataclass(frozen=True)
class SubmitReceipt:
    """Ledger answer to a submitted instruction.

    :ivar accepted: Whether the instruction was applied.
    :ivar sequence_number: Ledger-assigned sequence of an accepted instruction.
    :ivar error: Rejection kind, None when accepted.
    :ivar message: Human readable detail.
    """

    accepted: bool
    sequence_number: int | None = None
    error: ErrorKind | None = None
    message: str = ""


class LedgerClient(ABC):
    """Abstract base class for ledger client implementations."""

    @abstractmethod
    def submit(self, instruction: bytes, signer: LocalAccount) -> SubmitReceipt:
        """Sign and submit an encoded instruction.

        :param instruction: Encoded instruction bytes.
        :param signer: Account that signs the instruction.
        :returns: SubmitReceipt.
        :raises TransportError: If the ledger cannot be reached.
        """
        pass

    @abstractmethod
    def get_account(self, address: str) -> bytes:
        """Read the raw bytes stored at an account address.

        :param address: Account address.
        :returns: Encoded account.
        :raises AccountNotFoundError: If nothing is stored at the address.
        :raises TransportError: If the ledger cannot be reached.
        """
        pass

    def get_feed(self, address: str) -> PriceFeedAccount:
        """Read and decode a price feed account.

        :raises AccountNotFoundError: If nothing is stored at the address.
        :raises UnsupportedVersionError: If the layout version is unknown.
        :raises MalformedDataError: If the stored bytes are inconsistent.
        """
        return PriceFeedAccount.deserialize(self.get_account(address))
