"""Main entry point - wires the relay components together."""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

import uvicorn
import yaml

from .approvals import ApprovalCoordinator
from .credentials import CredentialStore
from .dispatcher import CommandDispatcher
from .notifier import Notifier
from .resume_store import ResumeIdStore
from .server import create_app
from .session_registry import ChannelSessionRegistry
from .telegram_bot import TelegramBot

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = "~/.local/share/agent-relay"


def load_config(config_path: str) -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path).expanduser()
    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


class RelayApp:
    """Main application orchestrator."""

    def __init__(self, config: dict):
        self.config = config

        # Server config
        self.host = config.get("server", {}).get("host", "127.0.0.1")
        self.port = config.get("server", {}).get("port", 8420)

        # Paths
        paths_config = config.get("paths", {})
        self.resume_file = paths_config.get("resume_file", f"{DEFAULT_STATE_DIR}/resume_ids.json")

        # Core components
        self.notifier = Notifier()
        self.registry = ChannelSessionRegistry(ResumeIdStore(self.resume_file), config=config)
        self.dispatcher = CommandDispatcher(self.registry, self.notifier, config=config)
        self.coordinator = ApprovalCoordinator(self.registry, self.notifier, config=config)
        self.credentials = CredentialStore(config)

        # Telegram bot (optional)
        telegram_config = config.get("telegram", {})
        self.telegram_bot: Optional[TelegramBot] = None
        if telegram_config.get("token"):
            self.telegram_bot = TelegramBot(
                token=telegram_config["token"],
                dispatcher=self.dispatcher,
                coordinator=self.coordinator,
                credentials=self.credentials,
                allowed_chat_ids=telegram_config.get("allowed_chat_ids"),
                allowed_user_ids=telegram_config.get("allowed_user_ids"),
            )
            self.notifier.add_handler(self.telegram_bot.handle_event)
        else:
            logger.info("No telegram.token configured; running with the HTTP API only")

        self.app = create_app(
            registry=self.registry,
            dispatcher=self.dispatcher,
            coordinator=self.coordinator,
            notifier=self.notifier,
            credentials=self.credentials,
            config=config,
        )
        self._server: Optional[uvicorn.Server] = None

    async def start(self):
        """Start all components and serve until shutdown."""
        logger.info("Starting agent relay...")

        restored = self.registry.load()
        logger.info(f"Restored {restored} conversation(s) from {self.resume_file}")

        if self.telegram_bot:
            await self.telegram_bot.start()

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        self._server = uvicorn.Server(config)

        logger.info(f"Starting server on http://{self.host}:{self.port}")
        try:
            await self._server.serve()
        finally:
            await self.stop()

    def request_shutdown(self):
        if self._server:
            self._server.should_exit = True

    async def stop(self):
        """Stop all components."""
        logger.info("Stopping agent relay...")

        if self.telegram_bot:
            await self.telegram_bot.stop()
            self.telegram_bot = None

        await self.dispatcher.shutdown()
        logger.info("Shutdown complete")


def setup_signal_handlers(app: RelayApp):
    """Set up signal handlers for graceful shutdown."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.request_shutdown)


async def main(config_path: str = "config.yaml"):
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = load_config(config_path)

    app = RelayApp(config)
    setup_signal_handlers(app)
    await app.start()


def run(config_path: str = "config.yaml"):
    """Entry point for console script."""
    asyncio.run(main(config_path))


if __name__ == "__main__":
    run()
