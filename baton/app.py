"""Baton bridge entry point."""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from baton.engine.config import BridgeConfig
from baton.engine.errors import ConfigError
from baton.engine.stats import BridgeStats
from baton.engine.yaml_config import load_yaml_config

logger = logging.getLogger(__name__)


def _configure_logging(config: BridgeConfig, verbose: bool) -> Path:
    log_dir = Path(config.log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "baton-bridge.log"

    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=5_000_000, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _check_runtime() -> str | None:
    """Return a problem description if the assistant SDK is unusable."""
    try:
        import claude_agent_sdk  # noqa: F401
    except ImportError as exc:
        return f"claude-agent-sdk is not installed: {exc}"
    return None


async def _serve(config: BridgeConfig) -> None:
    from baton.server.app import BridgeServer

    server = BridgeServer(config)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Not available on Windows loops.
            pass
    await server.start()
    try:
        await stop.wait()
        logger.info("Shutdown signal received")
    finally:
        await server.stop()


def load_config(config_path: str | None) -> BridgeConfig:
    config = BridgeConfig.from_env()
    if config_path:
        config = load_yaml_config(config_path, base=config)
    problems = config.validate()
    if problems:
        raise ConfigError(problems)
    return config


def main(argv: list[str] | None = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="baton",
        description="Baton: stream assistant sessions to web clients with human-approved tool use",
    )
    parser.add_argument(
        "--stats", "-s", action="store_true",
        help="Print bridge statistics and exit",
    )
    parser.add_argument(
        "--reset", "-r", action="store_true",
        help="Reset bridge statistics and exit",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML file with a 'bridge:' section overriding BATON_* settings",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Log at DEBUG level",
    )
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"baton: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.stats or args.reset:
        stats = BridgeStats(config.stats_path)
        stats.load()
        if args.reset:
            stats.reset()
            print("Statistics reset.")
        else:
            print(stats.format_report())
        sys.exit(0)

    log_file = _configure_logging(config, args.verbose)
    logger.info(
        "Starting bridge host=%s port=%d cwd=%s config=%s log=%s",
        config.host, config.port, config.working_dir, args.config or "<none>", log_file,
    )
    problem = _check_runtime()
    if problem:
        logger.error("Refusing to start: %s", problem)
        sys.exit(1)

    try:
        asyncio.run(_serve(config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except OSError as exc:
        logger.error("Bridge failed to start: %s", exc)
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
