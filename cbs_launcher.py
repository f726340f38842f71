#!/usr/bin/env python3
"""Start the CBS Books API server.

Before handing off to uvicorn this sets up logging at the configured
level, makes sure the cache and backup directories exist, and logs a short
pre-flight report (missing settings are warnings, never fatal).

    python3 cbs_launcher.py
    cbs-books                      # console script from pyproject.toml
"""

import logging
import os
import signal
import time
from pathlib import Path

STARTED = time.monotonic()

logger = logging.getLogger("cbs.launcher")

BACKUP_DIR = Path("data/backups")


def setup_logging(level: str = "info"):
    logging.basicConfig(
        level=logging.getLevelName(level.upper()),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _writable(path: Path) -> bool:
    return path.is_dir() and os.access(path, os.W_OK)


def run_preflight(config) -> list[tuple[str, bool]]:
    """Check the settings the ledger cannot work without. Returns (name, ok) pairs."""
    checks = [("remote.base_url", bool(config.remote.base_url))]
    if config.email.transport == "smtp":
        checks.append(("smtp.host", bool(config.smtp.host)))
    else:
        checks.append(("email.endpoint", bool(config.email.endpoint)))
    if config.payments.enabled:
        checks.append(("payments.endpoint", bool(config.payments.endpoint)))
    if config.cache.enabled:
        checks.append((f"writable {config.cache.dir}", _writable(Path(config.cache.dir))))
    checks.append((f"writable {BACKUP_DIR}", _writable(BACKUP_DIR)))
    if config.sender.logo_path:
        checks.append((f"logo {config.sender.logo_path}", Path(config.sender.logo_path).is_file()))

    failed = [name for name, ok in checks if not ok]
    logger.info("Pre-flight: %d of %d checks passed", len(checks) - len(failed), len(checks))
    for name in failed:
        logger.warning("Pre-flight check failed: %s", name)
    if not config.api.api_key:
        logger.warning("api.api_key is empty; the API will not ask for a key")
    return checks


def ensure_data_dirs(config):
    wanted = [BACKUP_DIR]
    if config.cache.enabled:
        wanted.append(Path(config.cache.dir))
    for directory in wanted:
        directory.mkdir(parents=True, exist_ok=True)


def install_signal_handlers():
    """Turn SIGTERM/SIGINT into SystemExit so uvicorn runs the lifespan shutdown."""
    def _stop(signum, frame):
        logger.info("%s received, shutting down", signal.Signals(signum).name)
        raise SystemExit(0)

    for signum in (signal.SIGTERM, signal.SIGINT):
        signal.signal(signum, _stop)


def main():
    from core.config import get_config
    import uvicorn

    config = get_config()
    setup_logging(config.logging.level)

    ensure_data_dirs(config)
    run_preflight(config)
    install_signal_handlers()

    logger.info("CBS Books API on %s:%d (ready in %.2fs)",
                config.api.host, config.api.port, time.monotonic() - STARTED)
    uvicorn.run(
        "interfaces.api.server:create_app",
        factory=True,
        host=config.api.host,
        port=config.api.port,
        log_level=config.logging.level.lower(),
        access_log=False,
    )


if __name__ == "__main__":
    main()
