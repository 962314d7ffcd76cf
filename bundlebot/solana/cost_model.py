"""
Transaction fee and rent exemption cost model.

Pure functions, no I/O. Rent constants follow
https://docs.solanalabs.com/implemented-proposals/rent
"""

import math
from typing import Dict, Iterable

from loguru import logger

from bundlebot.solana.errors import InvalidAccountTypeError
from bundlebot.solana.models import LAMPORTS_PER_SOL, BalanceValidation, CostBreakdown

BASE_FEE_LAMPORTS = 5000  # per signature
MICRO_LAMPORTS_PER_LAMPORT = 1_000_000

ACCOUNT_STORAGE_OVERHEAD = 128  # bytes
LAMPORTS_PER_BYTE_YEAR = 3480
EXEMPTION_THRESHOLD_YEARS = 2.0

RENT_BUFFER_PERCENT = 10

ACCOUNT_SIZES = {
    "basic": 0,
    "token": 165,
    "ATA": 165,  # associated token account
    "mint": 82,
    "multisig": 355,
}


def sol_to_lamports(sol_amount: float) -> int:
    return int(math.floor(sol_amount * LAMPORTS_PER_SOL))


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def priority_fee(priority_fee_micro_lamports: int, compute_unit_limit: int) -> int:
    """Priority fee in lamports for a compute unit price and limit."""
    return -(-priority_fee_micro_lamports * compute_unit_limit // MICRO_LAMPORTS_PER_LAMPORT)


def transaction_fee(priority_fee_micro_lamports: int, compute_unit_limit: int) -> int:
    """
    Calculate the fee of a single-signature transaction.

    Args:
        priority_fee_micro_lamports: Compute unit price in micro-lamports
        compute_unit_limit: Compute unit limit

    Returns:
        Base fee plus priority fee, in lamports
    """
    return BASE_FEE_LAMPORTS + priority_fee(priority_fee_micro_lamports, compute_unit_limit)


def rent_exemption_for_size(data_size: int) -> int:
    """Rent exemption in lamports for an account holding `data_size` bytes."""
    total_size = data_size + ACCOUNT_STORAGE_OVERHEAD
    return math.ceil(total_size * LAMPORTS_PER_BYTE_YEAR * EXEMPTION_THRESHOLD_YEARS)


def rent_exemption(account_type: str) -> int:
    """
    Rent exemption for one of the known account types.

    Raises:
        InvalidAccountTypeError: For an account type not in ACCOUNT_SIZES
    """
    if account_type not in ACCOUNT_SIZES:
        raise InvalidAccountTypeError(
            f"Unknown account type: {account_type}. Supported types: {', '.join(ACCOUNT_SIZES)}"
        )
    return rent_exemption_for_size(ACCOUNT_SIZES[account_type])


def total_cost(priority_fee_micro_lamports: int,
               compute_unit_limit: int,
               account_types_to_create: Iterable[str] = (),
               include_buffer: bool = True) -> CostBreakdown:
    """
    Calculate the total cost of an operation that may create accounts.

    Args:
        priority_fee_micro_lamports: Compute unit price in micro-lamports
        compute_unit_limit: Compute unit limit
        account_types_to_create: One entry per account the operation creates
        include_buffer: Add a 10% safety buffer over the total rent

    Returns:
        CostBreakdown with per-type rent
    """
    rent: Dict[str, int] = {}
    for account_type in account_types_to_create:
        rent[account_type] = rent.get(account_type, 0) + rent_exemption(account_type)

    total_rent = sum(rent.values())
    buffer = -(-total_rent * RENT_BUFFER_PERCENT // 100) if include_buffer else 0
    fee = priority_fee(priority_fee_micro_lamports, compute_unit_limit)
    total = BASE_FEE_LAMPORTS + fee + total_rent + buffer

    breakdown = CostBreakdown(
        base_fee_lamports=BASE_FEE_LAMPORTS,
        priority_fee_lamports=fee,
        rent_required_lamports=rent,
        buffer_lamports=buffer,
        total_lamports=total,
    )
    logger.debug(
        f"Cost: fee {breakdown.transaction_fee_lamports} + rent {total_rent} + buffer {buffer} = {total} lamports"
    )
    return breakdown


def validate_balance(balance_lamports: int,
                     cost: CostBreakdown,
                     additional_spend_lamports: int = 0) -> BalanceValidation:
    """
    Check that a balance covers a cost breakdown plus any extra spend.

    Args:
        balance_lamports: Current balance
        cost: Result of total_cost
        additional_spend_lamports: Amount spent on top of fees and rent

    Returns:
        BalanceValidation; shortfall is zero when valid
    """
    required = cost.total_lamports + additional_spend_lamports
    is_valid = balance_lamports >= required
    shortfall = 0 if is_valid else required - balance_lamports

    if not is_valid:
        logger.warning(
            f"Insufficient balance: {lamports_to_sol(balance_lamports):.9f} SOL < "
            f"{lamports_to_sol(required):.9f} SOL required (shortfall {lamports_to_sol(shortfall):.9f} SOL)"
        )

    return BalanceValidation(
        is_valid=is_valid,
        balance_lamports=balance_lamports,
        total_required_lamports=required,
        shortfall_lamports=shortfall,
    )
