"""UpdateProtocol: Wire format, validation and application of feed commands.

An instruction targets one feed account and carries one command:

    has_account u8 | account 20 bytes | command

Commands (little-endian, strings are u32 length + UTF-8 bytes):

    UpdatePrice    (0): price str | confidence f64 | sequence i64 |
                        timestamp u64 ms | u32 count + source strs | volume str
    InitializeFeed (1): pair id str | base str | quote str |
                        base decimals u8 | quote decimals u8 | capacity u32

Validation is fail-fast in a fixed order, each check yielding its own
:class:`ErrorKind`. Applying a validated update is a single call to
:meth:`PriceFeedAccount.apply_update`, so a rejected command leaves the
account untouched. :func:`process` reports outcomes as :class:`ProcessResult`
values rather than raising.

Instructions are signed with an ``eth_account`` local account over their
encoded bytes (EIP-191); the ledger recovers the signer address and passes it
to validation.

.. code-block:: python

    >>> instruction = build_update(feed, Decimal("101.5"), 0.9, 1, ("okx", "binance"), now=now)
    >>> signature = sign_instruction(instruction.encode(), signer)
    >>> recover_signer(instruction.encode(), signature) == signer.address
    True
"""

from __future__ import annotations

import logging
import struct
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import ClassVar, Union

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from web3 import Web3

from .config import FeedPolicy
from .errors import ErrorKind, KeeperError, MalformedDataError, ValidationError
from .PriceFeedAccount import PriceFeedAccount
from .PriceSample import PriceSample, to_decimal
from .TradingPair import TradingPairIdentity

logger = logging.getLogger(__name__)

OP_UPDATE_PRICE = 0
OP_INITIALIZE_FEED = 1

_U8 = struct.Struct("<B")
_U32 = struct.Struct("<I")
_UPDATE_FIXED = struct.Struct("<dqQ")
_INIT_FIXED = struct.Struct("<BBI")
ADDRESS_BYTES = 20


def _pack_str(value: str) -> bytes:
    raw = value.encode("utf-8")
    return _U32.pack(len(raw)) + raw


class _Reader:
    """Sequential reader over an encoded command."""

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.offset = 0

    def take(self, size: int) -> bytes:
        if self.offset + size > len(self.data):
            raise MalformedDataError(
                f"Instruction truncated: need {size} bytes at offset {self.offset}"
            )
        chunk = self.data[self.offset:self.offset + size]
        self.offset += size
        return chunk

    def unpack(self, fmt: struct.Struct) -> tuple:
        return fmt.unpack(self.take(fmt.size))

    def string(self) -> str:
        (length,) = self.unpack(_U32)
        try:
            return self.take(length).decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedDataError(f"Invalid UTF-8 string: {e}") from e

    def decimal(self) -> Decimal:
        text = self.string()
        try:
            return to_decimal(text)
        except ValueError as e:
            raise MalformedDataError(str(e)) from e

    def finish(self) -> None:
        if self.offset != len(self.data):
            raise MalformedDataError(
                f"{len(self.data) - self.offset} trailing bytes after command"
            )


@dataclass(frozen=True)
class UpdateCommand:
    """Price update for one feed.

    :ivar price: New price.
    :ivar confidence: Confidence in [0.0, 1.0].
    :ivar sequence: Keeper-assigned sequence number (positive).
    :ivar timestamp: Unix time of the price.
    :ivar sources: Contributing sources.
    :ivar volume: Summed volume reported by the sources.
    """

    opcode: ClassVar[int] = OP_UPDATE_PRICE

    price: Decimal
    confidence: float
    sequence: int
    timestamp: float
    sources: tuple[str, ...] = field(default_factory=tuple)
    volume: Decimal = Decimal(0)

    def __post_init__(self) -> None:
        object.__setattr__(self, "price", to_decimal(self.price))
        object.__setattr__(self, "volume", to_decimal(self.volume))
        object.__setattr__(self, "sources", tuple(self.sources))

    def encode(self) -> bytes:
        """Encode the command (opcode included)."""
        out = bytearray(_U8.pack(self.opcode))
        out += _pack_str(str(self.price))
        out += _UPDATE_FIXED.pack(
            self.confidence, self.sequence, max(0, round(self.timestamp * 1000))
        )
        out += _U32.pack(len(self.sources))
        for source in self.sources:
            out += _pack_str(source)
        out += _pack_str(str(self.volume))
        return bytes(out)

    @classmethod
    def _read(cls, reader: _Reader) -> UpdateCommand:
        price = reader.decimal()
        confidence, sequence, timestamp_ms = reader.unpack(_UPDATE_FIXED)
        (count,) = reader.unpack(_U32)
        sources = tuple(reader.string() for _ in range(count))
        volume = reader.decimal()
        return cls(
            price=price,
            confidence=confidence,
            sequence=sequence,
            timestamp=timestamp_ms / 1000,
            sources=sources,
            volume=volume,
        )

    def to_sample(self) -> PriceSample:
        """Build the sample this command records.

        :raises ValueError: If the sources do not fit a sample record.
        """
        return PriceSample(
            price=self.price,
            confidence=self.confidence,
            sources=self.sources,
            sample_count=len(self.sources),
            timestamp=self.timestamp,
            sequence=self.sequence,
            volume=self.volume,
        )


@dataclass(frozen=True)
class InitializeCommand:
    """Initialization of a feed account for a pair.

    :ivar pair: Pair the feed tracks.
    :ivar capacity: History slots to allocate.
    """

    opcode: ClassVar[int] = OP_INITIALIZE_FEED

    pair: TradingPairIdentity
    capacity: int = 1000

    def encode(self) -> bytes:
        """Encode the command (opcode included)."""
        pair = self.pair
        return (
            _U8.pack(self.opcode)
            + _pack_str(pair.pair_id)
            + _pack_str(pair.base)
            + _pack_str(pair.quote)
            + _INIT_FIXED.pack(pair.base_decimals, pair.quote_decimals, self.capacity)
        )

    @classmethod
    def _read(cls, reader: _Reader) -> InitializeCommand:
        pair_id = reader.string()
        base = reader.string()
        quote = reader.string()
        base_decimals, quote_decimals, capacity = reader.unpack(_INIT_FIXED)
        try:
            pair = TradingPairIdentity(
                base,
                quote,
                pair_id=pair_id,
                base_decimals=base_decimals,
                quote_decimals=quote_decimals,
            )
        except ValueError as e:
            raise MalformedDataError(f"Invalid pair identity: {e}") from e
        return cls(pair=pair, capacity=capacity)


Command = Union[UpdateCommand, InitializeCommand]

_COMMANDS: dict[int, type] = {
    OP_UPDATE_PRICE: UpdateCommand,
    OP_INITIALIZE_FEED: InitializeCommand,
}


def decode_command(data: bytes) -> Command:
    """Decode a command.

    :param data: Encoded command, opcode first.
    :returns: UpdateCommand or InitializeCommand.
    :raises MalformedDataError: If the opcode is unknown or data is malformed.
    """
    reader = _Reader(data)
    (opcode,) = reader.unpack(_U8)
    command_cls = _COMMANDS.get(opcode)
    if command_cls is None:
        raise MalformedDataError(f"Unknown opcode {opcode}")
    command = command_cls._read(reader)
    reader.finish()
    return command


@dataclass(frozen=True)
class Instruction:
    """A command addressed to one feed account.

    :ivar account: Target feed address, or None if absent.
    :ivar command: Command to execute.
    """

    account: str | None
    command: Command

    def encode(self) -> bytes:
        """Encode the instruction envelope and its command."""
        if self.account is None:
            header = _U8.pack(0) + bytes(ADDRESS_BYTES)
        else:
            header = _U8.pack(1) + bytes.fromhex(self.account.removeprefix("0x"))
        return header + self.command.encode()

    @classmethod
    def decode(cls, data: bytes) -> Instruction:
        """Decode an instruction.

        :raises MalformedDataError: If the data is malformed.
        """
        reader = _Reader(bytes(data))
        (has_account,) = reader.unpack(_U8)
        raw_account = reader.take(ADDRESS_BYTES)
        if has_account not in (0, 1):
            raise MalformedDataError(f"Invalid account flag {has_account}")
        account = Web3.to_checksum_address("0x" + raw_account.hex()) if has_account else None
        return cls(account=account, command=decode_command(reader.data[reader.offset:]))


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of processing one instruction.

    :ivar success: Whether the command was applied.
    :ivar error: Failure kind, None on success.
    :ivar message: Human readable detail.
    :ivar sequence: Sequence number of an applied update.
    """

    success: bool
    error: ErrorKind | None = None
    message: str = ""
    sequence: int | None = None

    @classmethod
    def ok(cls, sequence: int | None = None) -> ProcessResult:
        return cls(True, sequence=sequence)

    @classmethod
    def failed(cls, kind: ErrorKind, message: str = "") -> ProcessResult:
        return cls(False, error=kind, message=message or kind.value)


def check_update_parameters(
    price: Decimal,
    confidence: float,
    sequence: int,
    timestamp: float,
    sources: Sequence[str],
    policy: FeedPolicy,
    now: float,
) -> ErrorKind | None:
    """Run the parameter checks shared by builders and the ledger.

    Order: non_positive_price, confidence_out_of_range, non_positive_sequence,
    stale_timestamp, insufficient_sources.

    :returns: The first violated kind, or None if all checks pass.
    """
    if not price.is_finite() or price <= 0:
        return ErrorKind.NON_POSITIVE_PRICE
    if not 0.0 <= confidence <= 1.0:
        return ErrorKind.CONFIDENCE_OUT_OF_RANGE
    if sequence <= 0:
        return ErrorKind.NON_POSITIVE_SEQUENCE
    if now - timestamp > policy.max_age:
        return ErrorKind.STALE_TIMESTAMP
    if len(sources) < policy.minimum_sources:
        return ErrorKind.INSUFFICIENT_SOURCES
    return None


def validate_update(
    account: PriceFeedAccount | None,
    signer: str | None,
    command: UpdateCommand,
    now: float,
) -> ErrorKind | None:
    """Validate an update against its target account.

    Order: missing_account, not_initialized, unauthorized, then the
    parameter checks of :func:`check_update_parameters`, then
    replayed_sequence: the sequence must exceed the one of the current
    sample, so an observed signed update cannot be sent again to roll the
    feed back.

    :param account: Target account, None if it does not exist.
    :param signer: Recovered signer address.
    :param command: Update to validate.
    :param now: Current Unix time.
    :returns: The first violated kind, or None if the update may be applied.
    """
    if account is None:
        return ErrorKind.MISSING_ACCOUNT
    if not account.is_initialized:
        return ErrorKind.NOT_INITIALIZED
    if signer is None or signer.lower() != (account.authority or "").lower():
        return ErrorKind.UNAUTHORIZED
    kind = check_update_parameters(
        command.price,
        command.confidence,
        command.sequence,
        command.timestamp,
        command.sources,
        account.policy,
        now,
    )
    if kind is not None:
        return kind
    if account.current is not None and command.sequence <= account.current.sequence:
        return ErrorKind.REPLAYED_SEQUENCE
    return None


def process(
    instruction: Instruction,
    account: PriceFeedAccount | None,
    signer: str | None,
    *,
    program_ref: str | None = None,
    now: float | None = None,
) -> ProcessResult:
    """Validate and apply one instruction.

    :param instruction: Decoded instruction.
    :param account: Account at the instruction's address, None if absent.
        Initialization expects a freshly allocated account.
    :param signer: Recovered signer address.
    :param program_ref: Program address recorded at initialization.
    :param now: Current Unix time (defaults to time.time()).
    :returns: ProcessResult; the account is unchanged on failure.
    """
    now = time.time() if now is None else now
    command = instruction.command
    if instruction.account is None:
        account = None

    if isinstance(command, InitializeCommand):
        return _process_initialize(command, account, signer, program_ref, now)

    kind = validate_update(account, signer, command, now)
    if kind is not None:
        logger.debug(f"Rejected update seq={command.sequence}: {kind}")
        return ProcessResult.failed(kind)

    try:
        sample = command.to_sample()
    except ValueError as e:
        return ProcessResult.failed(ErrorKind.INVALID_PARAMETER, str(e))
    try:
        account.apply_update(sample, now)
    except KeeperError as e:
        return ProcessResult.failed(e.kind, str(e))
    return ProcessResult.ok(command.sequence)


def _process_initialize(
    command: InitializeCommand,
    account: PriceFeedAccount | None,
    signer: str | None,
    program_ref: str | None,
    now: float,
) -> ProcessResult:
    if account is None:
        return ProcessResult.failed(ErrorKind.MISSING_ACCOUNT)
    if signer is None:
        return ProcessResult.failed(ErrorKind.UNAUTHORIZED)
    if account.capacity != command.capacity:
        return ProcessResult.failed(
            ErrorKind.INVALID_PARAMETER,
            f"account capacity {account.capacity} != requested {command.capacity}",
        )
    try:
        account.initialize(command.pair, signer, program_ref or signer, now)
    except KeeperError as e:
        return ProcessResult.failed(e.kind, str(e))
    return ProcessResult.ok()


def build_update(
    account: str,
    price: Decimal | float | str,
    confidence: float,
    sequence: int,
    sources: Sequence[str],
    *,
    timestamp: float | None = None,
    volume: Decimal | float | str = 0,
    policy: FeedPolicy | None = None,
    now: float | None = None,
) -> Instruction:
    """Build an update instruction after running the parameter checks.

    :param account: Target feed address.
    :param price: New price.
    :param confidence: Confidence in [0.0, 1.0].
    :param sequence: Positive sequence number.
    :param sources: Contributing sources.
    :param timestamp: Price time (defaults to now).
    :param volume: Summed source volume.
    :param policy: Policy the target account applies (default: FeedPolicy()).
    :param now: Current Unix time (defaults to time.time()).
    :returns: Instruction ready to encode and sign.
    :raises ValidationError: With the violated kind if a check fails.
    """
    now = time.time() if now is None else now
    timestamp = now if timestamp is None else timestamp
    policy = policy or FeedPolicy()
    if not Web3.is_address(account):
        raise ValidationError(
            f"Invalid feed address '{account}'", kind=ErrorKind.MISSING_ACCOUNT
        )
    try:
        price = to_decimal(price)
    except ValueError as e:
        raise ValidationError(str(e), kind=ErrorKind.NON_POSITIVE_PRICE) from e

    kind = check_update_parameters(
        price, confidence, sequence, timestamp, sources, policy, now
    )
    if kind is not None:
        raise ValidationError(f"Update rejected: {kind}", kind=kind)

    command = UpdateCommand(
        price=price,
        confidence=confidence,
        sequence=sequence,
        timestamp=timestamp,
        sources=tuple(sources),
        volume=volume,
    )
    return Instruction(account=Web3.to_checksum_address(account), command=command)


def build_initialize(
    account: str, pair: TradingPairIdentity, capacity: int = 1000
) -> Instruction:
    """Build an initialization instruction for a feed account."""
    if capacity < 1:
        raise ValidationError("capacity must be at least 1")
    return Instruction(
        account=Web3.to_checksum_address(account),
        command=InitializeCommand(pair=pair, capacity=capacity),
    )


@dataclass(frozen=True)
class UpdateRequest:
    """Parameters of one update in a batch."""

    account: str
    price: Decimal
    confidence: float
    sequence: int
    sources: tuple[str, ...] = field(default_factory=tuple)
    timestamp: float | None = None
    volume: Decimal = Decimal(0)


@dataclass(frozen=True)
class BuildResult:
    """Outcome of building one batch item.

    :ivar instruction: Built instruction, None on failure.
    :ivar error: Failure kind, None on success.
    :ivar message: Human readable detail.
    """

    instruction: Instruction | None
    error: ErrorKind | None = None
    message: str = ""

    @property
    def success(self) -> bool:
        return self.instruction is not None


def build_batch(
    requests: Sequence[UpdateRequest],
    *,
    policy: FeedPolicy | None = None,
    now: float | None = None,
) -> list[BuildResult]:
    """Build independent update instructions.

    :returns: One BuildResult per request, in input order.
    """
    now = time.time() if now is None else now
    results = []
    for request in requests:
        try:
            instruction = build_update(
                request.account,
                request.price,
                request.confidence,
                request.sequence,
                request.sources,
                timestamp=request.timestamp,
                volume=request.volume,
                policy=policy,
                now=now,
            )
        except ValidationError as e:
            results.append(BuildResult(None, e.kind, str(e)))
            continue
        results.append(BuildResult(instruction))
    return results


def process_batch(
    instructions: Sequence[Instruction],
    resolve_account: Callable[[str], PriceFeedAccount | None],
    signer: str | None,
    *,
    now: float | None = None,
) -> list[ProcessResult]:
    """Apply independent update instructions.

    A failing item never prevents the others from being applied.

    :param instructions: Instructions to apply.
    :param resolve_account: Maps a feed address to its account (or None).
    :param signer: Recovered signer address.
    :param now: Current Unix time (defaults to time.time()).
    :returns: One ProcessResult per instruction, in input order.
    """
    now = time.time() if now is None else now
    results = []
    for instruction in instructions:
        account = resolve_account(instruction.account) if instruction.account else None
        results.append(process(instruction, account, signer, now=now))
    return results


def sign_instruction(data: bytes, signer: LocalAccount) -> bytes:
    """Sign encoded instruction bytes (EIP-191 personal message).

    :returns: 65-byte signature.
    """
    signed = signer.sign_message(encode_defunct(primitive=data))
    return bytes(signed.signature)


def recover_signer(data: bytes, signature: bytes) -> str:
    """Recover the checksummed address that signed ``data``.

    :raises ValidationError: If the signature is malformed.
    """
    try:
        return Account.recover_message(encode_defunct(primitive=data), signature=signature)
    except Exception as e:
        raise ValidationError(
            f"Invalid signature: {e}", kind=ErrorKind.UNAUTHORIZED
        ) from e
