"""
Worker process: polls for pending jobs and processes them.
"""
import os
import json
import asyncio
import logging
import signal
from dataclasses import replace
from typing import Optional

from .broadcast import BroadcastChannel, build_channel
from .compute import build_delegate
from .config import Settings, settings
from .dispatcher import PollingDispatcher
from .observability import get_metrics_collector
from .pipeline import JobPipeline
from .store import JobStore

logger = logging.getLogger(__name__)

def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )

class ComputeWorker:
    """Wires store, delegate, broadcast channel and dispatcher into one process."""

    def __init__(self, config: Optional[Settings] = None, *, store: Optional[JobStore] = None,
                 channel: Optional[BroadcastChannel] = None):
        self.config = config or settings
        self.store = store or JobStore(self.config.DATABASE_URL)
        self.channel = channel or build_channel(self.config)
        self.delegate = build_delegate(self.config)
        self.pipeline = JobPipeline.build(
            self.store,
            self.delegate,
            self.channel,
            operation_delay=self.config.OPERATION_DELAY_S,
        )
        self.dispatcher = PollingDispatcher(
            self.store,
            self.pipeline,
            poll_interval=self.config.POLL_INTERVAL_S,
            batch_limit=self.config.POLL_BATCH_LIMIT,
        )
        self._shutdown = asyncio.Event()

    def _log_environment(self) -> None:
        logger.info(json.dumps({
            "event": "worker_config",
            "database": "set" if self.config.DATABASE_URL else "missing",
            "openai_api_key": "set" if self.config.OPENAI_API_KEY else "missing",
            "redis_url": "set" if self.config.REDIS_URL else "missing",
            "ws_url": self.config.WS_URL,
            "compute_mode": self.delegate.mode,
            "poll_interval_s": self.config.POLL_INTERVAL_S,
            "poll_batch_limit": self.config.POLL_BATCH_LIMIT,
            "operation_delay_s": self.config.OPERATION_DELAY_S,
        }))

    def request_shutdown(self, signum: Optional[int] = None) -> None:
        """Handle shutdown signals."""
        if signum is not None:
            logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self._shutdown.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig)
            except (NotImplementedError, RuntimeError):
                logger.warning(f"Cannot install handler for signal {sig}")

    async def run(self) -> None:
        """Run the worker until a shutdown is requested."""
        logger.info("Worker starting...")
        self._log_environment()
        self._install_signal_handlers()

        await asyncio.to_thread(self.store.init_schema)
        await self.channel.start()
        await self.dispatcher.start()
        logger.info("Worker fully initialized and ready to process jobs")

        try:
            await self._shutdown.wait()
        finally:
            logger.info("Worker shutting down...")
            await self.dispatcher.stop(drain=True)
            await self.channel.close()
            self.store.dispose()
            logger.info(json.dumps({"event": "worker_metrics", **get_metrics_collector().get_metrics_summary()}))

def main():
    """Main entry point for the worker."""
    import argparse

    parser = argparse.ArgumentParser(description='Compute jobs worker')
    parser.add_argument('--poll-interval', type=float, help='Seconds between polls for pending jobs')
    parser.add_argument('--batch-limit', type=int, help='Maximum jobs started per poll')
    parser.add_argument('--operation-delay', type=float, help='Artificial delay per operation in seconds')
    parser.add_argument('--log-file', default=os.getenv("LOG_FILE"), help='Also write logs to this file')

    args = parser.parse_args()

    config = settings
    overrides = {}
    if args.poll_interval is not None:
        overrides["POLL_INTERVAL_S"] = args.poll_interval
    if args.batch_limit is not None:
        overrides["POLL_BATCH_LIMIT"] = args.batch_limit
    if args.operation_delay is not None:
        overrides["OPERATION_DELAY_S"] = args.operation_delay
    if overrides:
        config = replace(settings, **overrides)

    configure_logging(config.LOG_LEVEL, args.log_file)

    worker = ComputeWorker(config)
    try:
        asyncio.run(worker.run())
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")

if __name__ == '__main__':
    main()
