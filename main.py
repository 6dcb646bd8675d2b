#!/usr/bin/env python3
"""
FY'S Investment Bot - deterministic startup

Database -> SystemConfig -> services -> Telegram application -> scheduler ->
status server. Polling mode runs the Telegram updater alongside uvicorn in
one event loop; webhook mode lets the FastAPI /webhook route feed updates.
"""

import asyncio
import logging
import sys
from typing import Optional

import uvicorn
from telegram.ext import Application

from config import Config
from database import SessionLocal, create_tables, test_connection

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class StartupManager:
    """Builds every component once and tears them down in reverse order"""

    def __init__(self):
        self.application: Optional[Application] = None
        self.system_config = None
        self.ledger = None
        self.notifier = None
        self.engine = None
        self.deposit_poller = None
        self.scheduler = None
        self.transport_state = None
        self.server: Optional[uvicorn.Server] = None
        self.startup_errors = []

    async def initialize_database(self) -> bool:
        try:
            logger.info("🗄️ Initializing database...")
            if not test_connection():
                raise RuntimeError("Database connection test failed")
            create_tables()
            logger.info("✅ Database initialization complete")
            return True
        except Exception as e:
            logger.error(f"❌ Database initialization failed: {e}")
            self.startup_errors.append(f"Database: {e}")
            return False

    async def load_system_config(self) -> bool:
        from services.system_config import SystemConfig

        try:
            self.system_config = SystemConfig.from_config(Config).load(SessionLocal)
            logger.info(f"🔑 Admin referral code: {self.system_config.admin_referral_code}")
            logger.info(f"🛡️ Admins: {', '.join(sorted(self.system_config.admins))}")
            return True
        except Exception as e:
            logger.error(f"❌ System config load failed: {e}")
            self.startup_errors.append(f"SystemConfig: {e}")
            return False

    async def initialize_services(self) -> bool:
        from handlers.admin_commands import AdminCommandProcessor
        from handlers.router import ConversationEngine
        from handlers.telegram_bot import TransportState
        from services.deposit_poller import DepositPoller
        from services.ledger_service import LedgerService
        from services.notification_service import NotificationService
        from services.payhero_service import PayHeroService
        from services.session_store import InMemorySessionStore

        try:
            logger.info("⚙️ Initializing core services...")
            self.ledger = LedgerService(SessionLocal, self.system_config)
            self.notifier = NotificationService(None, self.ledger)

            provider = PayHeroService()
            if provider.enabled:
                self.deposit_poller = DepositPoller(provider, self.ledger, self.notifier)
            else:
                provider = None
                logger.info("💵 STK push not configured - automatic deposits fall back to manual")

            self.engine = ConversationEngine(
                self.ledger,
                InMemorySessionStore(ttl_minutes=Config.SESSION_TTL_MINUTES),
                self.notifier,
                admin_processor=AdminCommandProcessor(self.ledger, self.notifier, SessionLocal),
                payment_provider=provider,
                deposit_poller=self.deposit_poller,
            )
            self.transport_state = TransportState()
            logger.info("✅ Services initialized")
            return True
        except Exception as e:
            logger.error(f"❌ Service initialization failed: {e}")
            self.startup_errors.append(f"Services: {e}")
            return False

    async def create_application(self) -> bool:
        from handlers.telegram_bot import build_application

        try:
            logger.info("🤖 Creating Telegram application...")
            Config.validate_bot_configuration()
            self.application = build_application(self.engine, self.notifier)
            return True
        except Exception as e:
            logger.error(f"❌ Application creation failed: {e}")
            self.startup_errors.append(f"Application: {e}")
            return False

    async def start_scheduler(self) -> bool:
        from jobs.scheduler import InvestmentScheduler

        try:
            self.scheduler = InvestmentScheduler(self.ledger, self.notifier)
            self.scheduler.start()
            return True
        except Exception as e:
            logger.error(f"❌ Scheduler start failed: {e}")
            self.startup_errors.append(f"Scheduler: {e}")
            return False

    async def start_application(self) -> bool:
        from handlers.telegram_bot import announce_online

        try:
            await self.application.initialize()
            await self.application.start()
            if Config.USE_WEBHOOK:
                logger.info("🔗 Starting in webhook mode...")
                if Config.WEBHOOK_URL:
                    await self.application.bot.set_webhook(url=f"{Config.WEBHOOK_URL.rstrip('/')}/webhook")
            else:
                logger.info("📡 Starting in polling mode...")
                await self.application.updater.start_polling()

            await announce_online(self.application, self.transport_state, self.notifier, self.system_config)
            return True
        except Exception as e:
            logger.error(f"❌ Application start failed: {e}")
            self.startup_errors.append(f"Application start: {e}")
            return False

    async def startup_sequence(self) -> bool:
        logger.info(f"🚀 Starting {Config.BRAND}...")
        Config.log_environment_config()

        startup_steps = [
            ("Database", self.initialize_database),
            ("SystemConfig", self.load_system_config),
            ("Services", self.initialize_services),
            ("Application", self.create_application),
            ("Scheduler", self.start_scheduler),
            ("Start", self.start_application),
        ]

        for step_name, step_func in startup_steps:
            logger.info(f"▶️ Executing step: {step_name}")
            if not await step_func():
                logger.error(f"🚨 Step '{step_name}' failed - cannot continue startup")
                return False

        logger.info("✅ Startup sequence completed successfully")
        return True

    async def serve(self):
        """Run the status server until it is told to exit"""
        import webhook_server

        webhook_server.set_bot_application(self.application, self.transport_state)
        config = uvicorn.Config(webhook_server.app, host="0.0.0.0", port=Config.PORT, log_level="info")
        self.server = uvicorn.Server(config)
        logger.info(f"🌐 Status page listening on port {Config.PORT}")
        await self.server.serve()

    async def shutdown(self):
        logger.info("🔄 Shutting down...")
        if self.transport_state is not None:
            self.transport_state.mark_stopped()
        if self.deposit_poller is not None:
            await self.deposit_poller.shutdown()
        if self.scheduler is not None:
            self.scheduler.shutdown()
        if self.application is not None:
            if self.application.updater and self.application.updater.running:
                await self.application.updater.stop()
            if self.application.running:
                await self.application.stop()
            await self.application.shutdown()
        logger.info("👋 Shutdown complete")


startup_manager = StartupManager()


async def main():
    try:
        if not await startup_manager.startup_sequence():
            for error in startup_manager.startup_errors:
                logger.error(f"  - {error}")
            sys.exit(1)
        await startup_manager.serve()
    finally:
        await startup_manager.shutdown()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("👋 Bot stopped by user")


if __name__ == "__main__":
    run()
