"""Command line entry point.

  paper-advisor serve [--api]          scheduler (and optionally the HTTP API)
  paper-advisor run-now <stage>        one stage now, same single-flight guard
  paper-advisor status                 exposure, breakers and stage history
  paper-advisor trade BUY BTC 0.01 --stop 58000 [--confirm]
"""

from __future__ import annotations

import argparse
import json
import sys

from loguru import logger

from .desk import ManualTradeRequest
from .errors import StageBusyError
from .logging_config import configure_logging
from .main import run_service
from .service import STAGES, AdvisorService
from .settings import settings


def _print(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="paper-advisor", description="Risk-gated paper trading advisor")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the scheduler until interrupted")
    serve.add_argument("--api", action="store_true", help="Also serve the HTTP API")

    run_now = sub.add_parser("run-now", help="Run one stage immediately")
    run_now.add_argument("stage", choices=STAGES)

    sub.add_parser("status", help="Print service status")

    trade = sub.add_parser("trade", help="Submit a manual trade (two-phase)")
    trade.add_argument("side", choices=["BUY", "SELL"], type=str.upper)
    trade.add_argument("symbol")
    trade.add_argument("quantity", type=float)
    trade.add_argument("--price", type=float, default=None, help="Limit price (default: market)")
    trade.add_argument("--stop", type=float, default=None, help="Stop-loss price")
    trade.add_argument("--take-profit", type=float, default=None, help="Take-profit price")
    trade.add_argument("--reason", default="", help="Free-text reasoning")
    trade.add_argument("--confirm", action="store_true", help="Confirm warnings and execute")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        run_service(with_api=args.api)
        return 0

    configure_logging(settings.log_level, settings.log_file)
    service = AdvisorService()
    try:
        if args.command == "run-now":
            try:
                _print(service.run_stage(args.stage))
            except StageBusyError as exc:
                logger.warning("{}", exc)
                return 2
        elif args.command == "status":
            _print(service.status())
        elif args.command == "trade":
            request = ManualTradeRequest(
                symbol=args.symbol,
                side=args.side,
                quantity=args.quantity,
                price=args.price,
                stop_loss=args.stop,
                take_profit=args.take_profit,
                reasoning=args.reason,
                initiated_by="cli",
            )
            response = service.desk.submit_manual_trade(request, confirm_warnings=args.confirm)
            _print(response.model_dump())
            if response.status == "needs_confirmation":
                print("\nRe-run with --confirm to execute despite the warnings above.")
            return 0 if response.status == "executed" else 1
    finally:
        service.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
