#!/usr/bin/env python3

import json
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from .logging_setup import setup_logging, get_logger
from .config import Config, PortBlockConfig, load_config
from .allocation import Allocation
from .errors import EphemeralRangeError, PortBlockError
from .metrics.prometheus import get_metrics
from .net.ephemeral import get_ephemeral_range_provider
from .planner import iter_blocks, plan_blocks


app = typer.Typer(
    name="portblock",
    help="Allocate blocks of free local TCP ports",
    no_args_is_help=True
)


def _config_option():
    return typer.Option(None, "--config", "-c", help="Path to YAML configuration file")


def _block_size_option():
    return typer.Option(None, "--block-size", help="Ports per block")


def _max_blocks_option():
    return typer.Option(None, "--max-blocks", help="Number of candidate blocks")


def _lower_bound_option():
    return typer.Option(None, "--lower-bound", help="Lowest block anchor port")


def _os_option():
    return typer.Option(None, "--os", help="Override OS used for the ephemeral range query")


def _seed_option():
    return typer.Option(None, "--seed", help="Seed for block selection")


def _json_option():
    return typer.Option(False, "--json", "-j", help="Output in JSON format")


def _log_level_option():
    return typer.Option(None, "--log-level", "-l", help="Log level (DEBUG, INFO, WARNING, ERROR); defaults to the config file or WARNING")


def _build_config(
    config: Optional[str],
    block_size: Optional[int] = None,
    max_blocks: Optional[int] = None,
    lower_bound: Optional[int] = None,
    os_name: Optional[str] = None,
    seed: Optional[int] = None,
    log_level: Optional[str] = None,
) -> Config:
    """Load the config file (if any) and apply command line overrides."""
    cfg = load_config(Path(config)) if config else Config()
    if config:
        level = log_level or cfg.logging.level
        setup_logging(level.upper(), stream=sys.stderr, fmt=cfg.logging.format)

    overrides = {
        "block_size": block_size,
        "max_blocks": max_blocks,
        "lower_bound": lower_bound,
        "os_override": os_name,
        "seed": seed,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        cfg.portblock = PortBlockConfig(**{**cfg.portblock.model_dump(), **overrides})
    return cfg


def _allocate(cfg: Config) -> Allocation:
    provider = get_ephemeral_range_provider(cfg.portblock.os_override)
    return Allocation.new(cfg.portblock, provider=provider)


def _print_ports(allocation: Allocation, ports: list[int], json_output: bool) -> None:
    if json_output:
        print(json.dumps({
            "first_port": allocation.first_port,
            "block_size": allocation.block_size,
            "ports": ports,
        }))
    else:
        print(" ".join(str(p) for p in ports))


@app.command()
def ephemeral(
    os_name: Optional[str] = _os_option(),
    json_output: bool = _json_option(),
    log_level: Optional[str] = _log_level_option(),
):
    """Show the host ephemeral port range."""
    setup_logging((log_level or "WARNING").upper(), stream=sys.stderr)
    logger = get_logger(__name__)

    try:
        low, high = get_ephemeral_range_provider(os_name).get_range()
    except EphemeralRangeError as e:
        logger.error(f"Failed to read ephemeral port range: {e}")
        raise typer.Exit(1)

    if json_output:
        print(json.dumps({"min": low, "max": high}))
    else:
        print(f"{low} {high}")


@app.command()
def plan(
    config: Optional[str] = _config_option(),
    block_size: Optional[int] = _block_size_option(),
    max_blocks: Optional[int] = _max_blocks_option(),
    lower_bound: Optional[int] = _lower_bound_option(),
    os_name: Optional[str] = _os_option(),
    json_output: bool = _json_option(),
    log_level: Optional[str] = _log_level_option(),
):
    """Show which blocks are usable on this host."""
    setup_logging((log_level or "WARNING").upper(), stream=sys.stderr)
    logger = get_logger(__name__)

    try:
        cfg = _build_config(config, block_size, max_blocks, lower_bound, os_name, log_level=log_level)
        ephemeral_range = get_ephemeral_range_provider(cfg.portblock.os_override).get_range()
        effective = plan_blocks(cfg.portblock, ephemeral_range)
    except FileNotFoundError:
        logger.error(f"Configuration file not found: {config}")
        raise typer.Exit(1)
    except (PortBlockError, ValidationError, RuntimeError) as e:
        logger.error(f"Planning failed: {e}")
        raise typer.Exit(1)

    blocks = [b for b in iter_blocks(cfg.portblock) if b.index < effective]
    if json_output:
        print(json.dumps({
            "ephemeral_range": list(ephemeral_range),
            "effective_max_blocks": effective,
            "first_ports": [b.port_min for b in blocks],
        }, indent=2))
    else:
        print(f"Ephemeral range: {ephemeral_range[0]}-{ephemeral_range[1]}")
        print(f"Usable blocks: {effective} of {cfg.portblock.max_blocks}")
        for b in blocks:
            print(f"  [{b.index}] {b.port_min}-{b.port_max}")


@app.command()
def take(
    count: int = typer.Option(1, "--count", "-n", help="Number of ports to take"),
    config: Optional[str] = _config_option(),
    block_size: Optional[int] = _block_size_option(),
    max_blocks: Optional[int] = _max_blocks_option(),
    lower_bound: Optional[int] = _lower_bound_option(),
    os_name: Optional[str] = _os_option(),
    seed: Optional[int] = _seed_option(),
    json_output: bool = _json_option(),
    log_level: Optional[str] = _log_level_option(),
):
    """Allocate a block, print free ports from it and release it."""
    setup_logging((log_level or "WARNING").upper(), stream=sys.stderr)
    logger = get_logger(__name__)

    try:
        cfg = _build_config(config, block_size, max_blocks, lower_bound, os_name, seed, log_level)
        with _allocate(cfg) as allocation:
            ports = allocation.take(count)
            _print_ports(allocation, ports, json_output)
    except FileNotFoundError:
        logger.error(f"Configuration file not found: {config}")
        raise typer.Exit(1)
    except (PortBlockError, ValidationError, RuntimeError) as e:
        logger.error(f"Failed to take ports: {e}")
        raise typer.Exit(1)


@app.command()
def hold(
    count: int = typer.Option(1, "--count", "-n", help="Number of ports to take"),
    config: Optional[str] = _config_option(),
    block_size: Optional[int] = _block_size_option(),
    max_blocks: Optional[int] = _max_blocks_option(),
    lower_bound: Optional[int] = _lower_bound_option(),
    os_name: Optional[str] = _os_option(),
    seed: Optional[int] = _seed_option(),
    duration: Optional[float] = typer.Option(
        None,
        "--duration",
        help="Seconds to hold the block (default: until SIGINT/SIGTERM)"
    ),
    metrics_port: Optional[int] = typer.Option(
        None,
        "--metrics-port",
        help="Expose Prometheus metrics on the given port"
    ),
    json_output: bool = _json_option(),
    log_level: Optional[str] = _log_level_option(),
):
    """Allocate a block, print ports and keep the block reserved."""
    setup_logging((log_level or "WARNING").upper(), stream=sys.stderr)
    logger = get_logger(__name__)

    try:
        cfg = _build_config(config, block_size, max_blocks, lower_bound, os_name, seed, log_level)
        if metrics_port is not None:
            cfg.metrics.enabled = True
            cfg.metrics.port = metrics_port
        allocation = _allocate(cfg)
    except FileNotFoundError:
        logger.error(f"Configuration file not found: {config}")
        raise typer.Exit(1)
    except (PortBlockError, ValidationError, RuntimeError) as e:
        logger.error(f"Failed to allocate port block: {e}")
        raise typer.Exit(1)

    done = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, releasing port block")
        done.set()

    with allocation:
        try:
            ports = allocation.take(count)
        except PortBlockError as e:
            logger.error(f"Failed to take ports: {e}")
            raise typer.Exit(1)

        if cfg.metrics.enabled:
            get_metrics().start_http_server(cfg.metrics)

        _print_ports(allocation, ports, json_output)
        sys.stdout.flush()

        previous = {}
        if threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                previous[signum] = signal.signal(signum, signal_handler)

        try:
            done.wait(duration)
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)


@app.command()
def validate(
    config: str = typer.Option(
        ...,
        "--config",
        "-c",
        help="Path to configuration file"
    )
):
    """Validate configuration file."""
    setup_logging("WARNING", stream=sys.stderr)
    
    try:
        cfg = load_config(Path(config))
    except Exception as e:
        print(f"✗ Configuration is invalid: {e}")
        raise typer.Exit(1)

    pb = cfg.portblock
    print(f"✓ Configuration is valid")
    print(f"✓ {pb.max_blocks} blocks of {pb.block_size} ports from {pb.lower_bound}")


if __name__ == "__main__":
    app()
