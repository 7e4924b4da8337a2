"""CLI entry point for cytube-bot."""
import argparse
import asyncio
import logging
import signal
import sys

from .main import BotApp


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="cytube-bot — CyTube chat bot")
    parser.add_argument("--config", type=str, help="Path to config.yaml")
    parser.add_argument(
        "--log-level", type=str, default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Overrides logging.level from the config file",
    )
    parser.add_argument("--validate-config", action="store_true", help="Validate config and exit without starting")
    return parser.parse_args(argv)


def resolve_config_path(explicit: str | None) -> str | None:
    if explicit:
        return explicit
    from pathlib import Path

    for candidate in [
        "/etc/cytube-bot/config.yaml",
        "./config.yaml",
    ]:
        if Path(candidate).exists():
            return candidate
    return None


async def main_async(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    config_path = resolve_config_path(args.config)

    level = args.log_level
    if level is None and config_path:
        from .config import load_config

        try:
            level = load_config(config_path).logging.level
        except Exception:
            level = "INFO"
    setup_logging(level or "INFO")
    logger = logging.getLogger("cytube_bot")

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

    app = BotApp(config_path)

    # Signal handling (Unix only; Windows uses KeyboardInterrupt)
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(app.stop()))

    try:
        await app.run()
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()


def main() -> None:
    """Sync entry point for pyproject.toml [project.scripts]."""
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
