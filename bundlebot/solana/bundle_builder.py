"""
Preparation of pre-built transactions for relay bundles.
"""

import base64
from typing import Sequence, Union

import base58
from loguru import logger
from solders.hash import Hash
from solders.message import Message, MessageV0
from solders.transaction import VersionedTransaction

from bundlebot.solana.errors import BundleValidationError, MissingSignerError
from bundlebot.solana.models import BundleEntry, PreparedBundle

MAX_BUNDLE_TRANSACTIONS = 5
SUPPORTED_ENCODINGS = ("base58", "base64")


def validate_bundle_size(count: int):
    if count < 1 or count > MAX_BUNDLE_TRANSACTIONS:
        raise BundleValidationError(
            f"Bundle must contain 1 to {MAX_BUNDLE_TRANSACTIONS} transactions, got {count}"
        )


def encode_transaction(raw: bytes, encoding: str = "base58") -> str:
    """Encode serialized transaction bytes for the relay."""
    if encoding == "base58":
        return base58.b58encode(raw).decode("utf-8")
    if encoding == "base64":
        return base64.b64encode(raw).decode("utf-8")
    raise BundleValidationError(f"Unsupported encoding: {encoding}")


def decode_transaction(encoded: str, encoding: str = "base58") -> bytes:
    if encoding == "base58":
        return base58.b58decode(encoded)
    if encoding == "base64":
        return base64.b64decode(encoded)
    raise BundleValidationError(f"Unsupported encoding: {encoding}")


def as_versioned_transaction(transaction: Union[VersionedTransaction, bytes]) -> VersionedTransaction:
    if isinstance(transaction, (bytes, bytearray)):
        return VersionedTransaction.from_bytes(bytes(transaction))
    return transaction


def restamp_message(message, blockhash: Hash):
    """Copy a legacy or v0 message with a new recent blockhash."""
    if isinstance(message, MessageV0):
        return MessageV0(
            message.header,
            message.account_keys,
            blockhash,
            message.instructions,
            message.address_table_lookups,
        )
    if isinstance(message, Message):
        header = message.header
        return Message.new_with_compiled_instructions(
            header.num_required_signatures,
            header.num_readonly_signed_accounts,
            header.num_readonly_unsigned_accounts,
            message.account_keys,
            blockhash,
            message.instructions,
        )
    raise BundleValidationError(f"Unsupported message type: {type(message).__name__}")


def sign_entry(entry: BundleEntry, blockhash: Hash) -> VersionedTransaction:
    """
    Re-stamp one bundle entry with `blockhash` and sign it.

    Signatures are produced in the order the message lists its required
    signers, whatever order `entry.signers` is in.

    Raises:
        MissingSignerError: If the message requires a key not in entry.signers
    """
    tx = as_versioned_transaction(entry.transaction)
    message = restamp_message(tx.message, blockhash)

    required = list(message.account_keys[:message.header.num_required_signatures])
    available = {kp.pubkey(): kp for kp in entry.signers}
    missing = [str(key) for key in required if key not in available]
    if missing:
        name = entry.label or entry.role.value
        raise MissingSignerError(f"Bundle entry '{name}' is missing signer(s): {', '.join(missing)}")

    return VersionedTransaction(message, [available[key] for key in required])


def prepare_bundle(entries: Sequence[BundleEntry],
                   blockhash: Hash,
                   encoding: str = "base58") -> PreparedBundle:
    """
    Sign and encode a set of pre-built transactions as one bundle.

    Args:
        entries: Bundle entries, in bundle order
        blockhash: Blockhash every transaction is re-stamped with
        encoding: "base58" or "base64"

    Returns:
        PreparedBundle with encoded transactions and primary signatures
    """
    validate_bundle_size(len(entries))
    if encoding not in SUPPORTED_ENCODINGS:
        raise BundleValidationError(f"Unsupported encoding: {encoding}")

    encoded = []
    signatures = []
    for entry in entries:
        signed = sign_entry(entry, blockhash)
        encoded.append(encode_transaction(bytes(signed), encoding))
        signatures.append(str(signed.signatures[0]))

    logger.debug(f"Prepared bundle of {len(encoded)} transactions, first signature {signatures[0][:8]}...")
    return PreparedBundle(
        encoded_transactions=tuple(encoded),
        primary_signatures=tuple(signatures),
        encoding=encoding,
    )
