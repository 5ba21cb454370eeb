#!/usr/bin/env python3
"""
Solana Trading Node - Main Entry Point

main.py owns the process lifecycle: preflight, logging, wiring, AI bootstrap,
the orchestrator loop, and an orderly shutdown on SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import os
import signal as sig
import sys
from pathlib import Path

_INSTANCE_LOCK_FD: int | None = None


def _acquire_instance_lock() -> bool:
    """
    Single-instance lock on the data volume.

    Two nodes sharing one SQLite file and one wallet would double-trade.
    """
    try:
        import fcntl
    except ImportError:
        return True

    lock_path = os.getenv("INSTANCE_LOCK_PATH", "data/instance.lock").strip() or "data/instance.lock"
    lock_file = Path(lock_path)
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        os.lseek(fd, 0, os.SEEK_SET)
        existing = os.read(fd, 64).decode("utf-8", "ignore").strip()
        msg = f"[FATAL] Another trading node is already running (lock: {lock_file})."
        if existing:
            msg += f" (pid: {existing})"
        print(msg)
        os.close(fd)
        return False

    os.ftruncate(fd, 0)
    os.write(fd, f"{os.getpid()}\n".encode("utf-8"))
    os.fsync(fd)
    global _INSTANCE_LOCK_FD
    _INSTANCE_LOCK_FD = fd
    return True


def preflight_checks() -> bool:
    """Create working directories and take the instance lock."""
    for directory in ["data", "logs", "config"]:
        Path(directory).mkdir(parents=True, exist_ok=True)

    if not Path("config/config.yaml").exists():
        print("[WARN] config/config.yaml not found, using defaults")
    if not Path(".env").exists():
        print("[WARN] No .env file; signer key and RPC endpoints come from the environment")

    return _acquire_instance_lock()


def _install_asyncio_exception_handler(loop: asyncio.AbstractEventLoop, logger) -> None:
    def _handler(_loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        logger.error(
            "Asyncio exception",
            message=context.get("message", "asyncio_exception"),
            error_type=type(exc).__name__ if exc else None,
            error=str(exc) if exc else None,
        )

    loop.set_exception_handler(_handler)


async def run_node() -> None:
    """Wire every component, bootstrap the AI policy, and run until signalled."""
    from src.ai.policy import AIPolicyController, allowed_actions
    from src.core.config import get_config
    from src.core.controls import Controls
    from src.core.database import DatabaseManager, now_ms
    from src.core.error_handler import GracefulErrorHandler
    from src.core.logger import get_logger
    from src.core.orchestrator import Orchestrator
    from src.exchange.jupiter_client import JupiterVenueClient
    from src.exchange.price_client import PriceClient
    from src.exchange.signer_client import SignerClient
    from src.exchange.solana_rpc import SolanaRpcClient
    from src.execution.exit_engine import ExitEngine
    from src.execution.governance import GovernanceGate
    from src.execution.reconciler import Reconciler
    from src.execution.risk_manager import RiskGate
    from src.execution.router import ExecutionRouter
    from src.intel.chain_intelligence import ChainIntelligence
    from src.intel.filters import FilterSystem
    from src.intel.scoring import ScoringModel
    from src.strategies.decision import StrategyDecisionEngine

    logger = get_logger("main")
    cfg = get_config()

    db = DatabaseManager(cfg.app.db_path)
    await db.initialize()

    rpc = SolanaRpcClient(cfg.rpc.endpoints, cfg.rpc.timeout_seconds, cfg.rpc.max_retries)
    signer = SignerClient(
        cfg.signer.url, cfg.signer.api_key, cfg.signer.timeout_seconds, cfg.signer.retry_attempts
    )
    prices = PriceClient(cfg.market.price_url, cfg.market.price_timeout_seconds)
    jupiter = JupiterVenueClient(cfg.market.quote_base_url)
    venues = {}
    for venue in cfg.execution.venues:
        if venue.kind != "jupiter":
            logger.warning("Unsupported venue kind, venue ignored", venue=venue.name, kind=venue.kind)
            continue
        venues[venue.name] = jupiter

    for client in (rpc, signer, prices, jupiter):
        await client.initialize()

    policy = AIPolicyController(db, cfg.ai)
    await policy.load()
    if cfg.ai.enabled and cfg.ai.bootstrap_on_startup:
        replayed = await policy.bootstrap(now_ms(), allowed_actions(cfg.enabled_profiles()))
        logger.info("AI bootstrap complete", replayed=replayed, trained_samples=policy.trained_samples)

    risk = RiskGate(db, cfg.risk)
    router = ExecutionRouter(cfg, db, rpc, signer, venues)
    orchestrator = Orchestrator(
        cfg=cfg,
        db=db,
        controls=Controls(db, cfg),
        signer=signer,
        rpc=rpc,
        intelligence=ChainIntelligence(rpc),
        filters=FilterSystem(cfg.filters),
        scoring=ScoringModel(),
        decision=StrategyDecisionEngine(cfg.strategy, cfg.ai, policy),
        policy=policy,
        risk=risk,
        governance=GovernanceGate(db, cfg.governance),
        router=router,
        exit_engine=ExitEngine(cfg, db, router, rpc, prices, risk, policy),
        reconciler=Reconciler(db, rpc),
        error_handler=GracefulErrorHandler(db_log_fn=db.log_thought),
    )

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    _install_asyncio_exception_handler(loop, logger)
    for s in (sig.SIGINT, sig.SIGTERM):
        try:
            loop.add_signal_handler(s, shutdown_event.set)
        except NotImplementedError:
            sig.signal(s, lambda *_: shutdown_event.set())

    try:
        await orchestrator.start()
        await shutdown_event.wait()
        logger.info("Shutdown requested")
    finally:
        await orchestrator.stop()
        for client in (jupiter, prices, signer, rpc):
            await client.close()
        await db.close()
        logger.info("Trading node stopped")


def main() -> None:
    from src.core.config import ConfigManager
    from src.core.logger import get_logger, setup_logging

    if not preflight_checks():
        sys.exit(1)

    config = ConfigManager().config
    setup_logging(log_level=config.app.log_level, log_dir="logs", json_output=config.app.log_json)

    logger = get_logger("main")
    logger.info(
        "Starting trading node",
        version=config.app.version,
        python=sys.version.split()[0],
        mode=config.app.mode,
    )
    if config.app.mode == "live":
        logger.warning("LIVE mode: real transactions will be signed and sent")

    try:
        asyncio.run(run_node())
    except KeyboardInterrupt:
        logger.info("Shutdown requested via keyboard interrupt")


if __name__ == "__main__":
    main()
