"""CLI entry point for longshot."""
import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

from .errors import GameError
from .main import GameApp


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="longshot — game economy and daily tournament service")
    parser.add_argument("--config", type=str, help="Path to config.yaml")
    parser.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--validate-config", action="store_true", help="Validate config and exit without starting")
    parser.add_argument(
        "--close-window", nargs="?", const="", default=None, metavar="DATE",
        help="Close one window (default: the most recently ended) and exit",
    )
    parser.add_argument("--drain-payouts", action="store_true", help="Attempt every pending payout once and exit")
    return parser.parse_args(argv)


async def run_once(app: GameApp, args: argparse.Namespace) -> dict:
    """Run the requested one-shot admin operations against an already set-up app."""
    result: dict = {}
    if args.close_window is not None:
        run = await app.tournament.close_window(args.close_window or None)
        result["close"] = run.to_dict()
    if args.drain_payouts:
        report = await app.payout_processor.drain()
        result["drain"] = report.to_dict()
    return result


async def main_async() -> None:
    args = parse_args()
    setup_logging(args.log_level)
    logger = logging.getLogger("longshot")

    config_path = args.config
    if not config_path:
        for candidate in ["/etc/longshot/config.yaml", "./config.yaml"]:
            if Path(candidate).exists():
                config_path = candidate
                break
    if not config_path:
        logger.error("No config file found. Use --config or place config.yaml in CWD.")
        sys.exit(1)

    if args.validate_config:
        from .config import load_config

        try:
            load_config(config_path)
            logger.info("Config is valid.")
        except Exception as e:
            logger.error("Config validation failed: %s", e)
            sys.exit(1)
        return

    app = GameApp(config_path)

    if args.close_window is not None or args.drain_payouts:
        await app.setup()
        try:
            result = await run_once(app, args)
        except GameError as e:
            logger.error("%s: %s", e.error_code, e)
            sys.exit(1)
        finally:
            await app.stop()
        print(json.dumps(result, indent=2, default=str))
        return

    # Signal handling (Unix only; Windows uses KeyboardInterrupt)
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(app.stop()))

    try:
        await app.start()
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()


def main() -> None:
    """Sync entry point for pyproject.toml [project.scripts]."""
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
