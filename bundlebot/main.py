#!/usr/bin/env python
import argparse
import asyncio
import logging
import sys

from loguru import logger

from bundlebot.config import LOG_LEVEL, SOLANA_RPC_URL, select_rpc_profile
from bundlebot.engine import ExecutionEngine
from bundlebot.solana import cost_model
from bundlebot.solana.errors import EngineError


def setup_logging(level: str = LOG_LEVEL):
    """Configure structured logging with loguru."""
    logger.remove()  # Remove default handler
    logger.add(
        "logs/bundlebot_{time}.log",
        rotation="1 day",
        retention="14 days",
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message} | {extra}",
        serialize=True,  # JSON formatting for structured logs
    )

    # Also send logs to stderr
    logger.add(
        sys.stderr,
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}"
    )

    # Redirect solana-py, httpx, websockets and aiohttp loggers to loguru
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)


class InterceptHandler(logging.Handler):
    """Intercept standard logging and redirect to loguru."""
    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def cmd_profile(args) -> int:
    rpc_url = args.rpc_url or SOLANA_RPC_URL
    profile = select_rpc_profile(rpc_url)
    print(f"RPC URL:              {rpc_url}")
    print(f"Profile:              {profile.name}")
    print(f"Call interval:        {profile.call_interval_ms} ms")
    print(f"Max concurrent:       {profile.max_concurrent_requests}")
    print(f"Rate limit backoff:   {profile.retry_backoff_ms} ms")
    print(f"Confirmation timeout: {profile.confirmation_timeout_ms} ms")
    print(f"Push confirmation:    {'on' if profile.use_push_confirmation else 'off'}")
    return 0


def cmd_estimate_cost(args) -> int:
    cost = cost_model.total_cost(args.priority_fee, args.compute_units, args.account_type or [])
    print(f"Base fee:      {cost.base_fee_lamports} lamports")
    print(f"Priority fee:  {cost.priority_fee_lamports} lamports")
    for account_type, lamports in cost.rent_required_lamports.items():
        print(f"Rent ({account_type}): {lamports} lamports")
    print(f"Buffer:        {cost.buffer_lamports} lamports")
    print(f"Total:         {cost.total_lamports} lamports ({cost.total_sol:.9f} SOL)")

    if args.balance is not None:
        validation = cost_model.validate_balance(args.balance, cost, args.extra_spend)
        status = "OK" if validation.is_valid else f"short by {validation.shortfall_lamports} lamports"
        print(f"Balance:       {validation.balance_lamports} lamports, {status}")
        return 0 if validation.is_valid else 1
    return 0


async def cmd_confirm(args) -> int:
    async with ExecutionEngine(rpc_url=args.rpc_url) as engine:
        result = await engine.watch(args.signature, commitment=args.commitment, timeout_ms=args.timeout_ms)
    print(f"{result.signature}: {result.status.value} via {result.method.value} in {result.elapsed_ms} ms")
    if result.error:
        print(f"Error: {result.error}")
    return 0 if result.confirmed else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bundlebot", description="Solana transaction execution engine")
    parser.add_argument("--log-level", default=LOG_LEVEL, help="Log level (default: %(default)s)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    profile_parser = subparsers.add_parser("profile", help="Show the RPC profile for an endpoint")
    profile_parser.add_argument("--rpc-url", help="RPC endpoint (default: SOLANA_RPC_URL)")

    cost_parser = subparsers.add_parser("estimate-cost", help="Estimate fees and rent for an operation")
    cost_parser.add_argument("--priority-fee", type=int, default=100_000,
                             help="Compute unit price in micro-lamports")
    cost_parser.add_argument("--compute-units", type=int, default=200_000, help="Compute unit limit")
    cost_parser.add_argument("--account-type", action="append", choices=sorted(cost_model.ACCOUNT_SIZES),
                             help="Account created by the operation; repeat for several")
    cost_parser.add_argument("--balance", type=int, help="Payer balance in lamports to validate")
    cost_parser.add_argument("--extra-spend", type=int, default=0, help="Additional spend in lamports")

    confirm_parser = subparsers.add_parser("confirm", help="Wait for a transaction signature to confirm")
    confirm_parser.add_argument("signature", help="Base58 transaction signature")
    confirm_parser.add_argument("--commitment", default="confirmed",
                                choices=["processed", "confirmed", "finalized"])
    confirm_parser.add_argument("--timeout-ms", type=int, help="Timeout (default: profile timeout)")
    confirm_parser.add_argument("--rpc-url", help="RPC endpoint (default: SOLANA_RPC_URL)")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level.upper())

    try:
        if args.command == "profile":
            return cmd_profile(args)
        if args.command == "estimate-cost":
            return cmd_estimate_cost(args)
        return asyncio.run(cmd_confirm(args))
    except EngineError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 2


if __name__ == '__main__':
    sys.exit(main())
