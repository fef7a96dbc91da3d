# src/iot_hub/__main__.py
import asyncio
import os
import signal
import sys
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
from fastapi import FastAPI
from hypercorn.asyncio import serve
from hypercorn.config import Config as HyperConfig
import traceback

from iot_hub.core.event_manager import EventManager
from iot_hub.core.auth import TokenAuthenticator
from iot_hub.core.fanout import FanoutHub
from iot_hub.core.router import IngestionRouter
from iot_hub.core.sweeper import InactivitySweeper
from iot_hub.core.dispatcher import CommandDispatcher
from iot_hub.core.communication_service import CommunicationService
from iot_hub.api.routes import health_router
from iot_hub.api.endpoints.devices import device_router
from iot_hub.api.endpoints.realtime import realtime_router, websocket_router
from iot_hub.storage.base import Store
from iot_hub.storage.hub_database import HubDatabase
from iot_hub.storage.memory import MemoryStore
from iot_hub.utils.logging import setup_logging, get_logger
from iot_hub.utils.exceptions import ConfigurationError, InitializationError


class AppState:
    """Holds application state and components"""
    def __init__(self):
        self.store: Optional[Store] = None
        self.event_manager: Optional[EventManager] = None
        self.hub: Optional[FanoutHub] = None
        self.router: Optional[IngestionRouter] = None
        self.sweeper: Optional[InactivitySweeper] = None
        self.dispatcher: Optional[CommandDispatcher] = None
        self.communication_service: Optional[CommunicationService] = None


class ConfigManager:
    """Manages configuration loading and validation"""

    required_sections = ['api', 'communication', 'database', 'auth', 'monitor', 'logging']

    @staticmethod
    def load_config(config_path: str) -> Dict[str, Any]:
        """Load and validate configuration from YAML file"""
        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError:
            raise ConfigurationError(f"Error parsing configuration file: {traceback.format_exc()}")
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        ConfigManager.validate(config)
        return config

    @staticmethod
    def validate(config: Any) -> None:
        if not isinstance(config, dict):
            raise ConfigurationError("Configuration file is empty or incorrectly formatted")

        # Validate required configuration sections
        missing_sections = [section for section in ConfigManager.required_sections if section not in config]
        if missing_sections:
            raise ConfigurationError(f"Missing required configuration sections: {', '.join(missing_sections)}")

        if 'mqtt' not in config['communication']:
            raise ConfigurationError("Missing communication.mqtt configuration")
        if not config['auth'].get('secret'):
            raise ConfigurationError("auth.secret must be set")
        backend = config['database'].get('backend', 'sqlite')
        if backend not in ('sqlite', 'memory'):
            raise ConfigurationError(f"Unknown database backend: {backend}")


def create_store(config: Dict[str, Any]) -> Store:
    """Store implementation selected by database.backend"""
    database = config['database']
    if database.get('backend', 'sqlite') == 'memory':
        return MemoryStore()
    return HubDatabase(database.get('path', 'iot_hub.db'), max_connections=database.get('pool_size', 5))


class APIServer:
    """Handles API server initialization and management"""

    def __init__(self, config: Dict[str, Any], shutdown_event: asyncio.Event, app_state: AppState):
        self.config = config
        self.shutdown_event = shutdown_event
        self.logger = get_logger("API Server")
        self.app: Optional[FastAPI] = None
        self.app_state = app_state

    async def initialize(self) -> FastAPI:
        """Initialize FastAPI application with routes"""
        try:
            self.app = FastAPI(
                title="IoT Hub API",
                description="Telemetry ingestion, device commands and the realtime dashboard stream",
                version="1.0.0"
            )

            # Store app state for dependency injection
            self.app.state.components = self.app_state

            # Register routes
            self.app.include_router(health_router)
            self.app.include_router(device_router, prefix="/api/v1")
            self.app.include_router(realtime_router, prefix="/api/v1")
            self.app.include_router(websocket_router)

            return self.app
        except Exception:
            raise InitializationError(f"Failed to initialize API server: {traceback.format_exc()}")

    async def start(self):
        """Start the API server"""
        if not self.app:
            await self.initialize()

        hypercorn_config = HyperConfig()
        try:
            host = self.config['api']['host']
            port = self.config['api']['port']
            hypercorn_config.bind = [f"{host}:{port}"]

            async def shutdown_trigger():
                await self.shutdown_event.wait()
                return

            self.logger.info(f"Starting API server on {host}:{port}")
            await serve(self.app, hypercorn_config, shutdown_trigger=shutdown_trigger)
        except Exception:
            self.logger.error(f"Failed to start API server: {traceback.format_exc()}")
            raise


class IoTHubApp:
    """Main IoT Hub application class"""

    def __init__(self, config_path: str):
        self.logger = get_logger("Main App")
        try:
            self.config = ConfigManager.load_config(config_path)
            setup_logging(self.config.get('logging', {}))
        except ConfigurationError:
            self.logger.error(f"Configuration error: {traceback.format_exc()}")
            sys.exit(1)

        # Initialize components
        self.shutdown_event = asyncio.Event()
        self.app_state = AppState()
        self.app_state.event_manager = EventManager(self.config.get('events', {}).get('queue_size', 10000))
        self.api_server = APIServer(self.config, self.shutdown_event, self.app_state)
        self._shutting_down = False

    @property
    def topics(self) -> Dict[str, str]:
        return self.config['communication']['mqtt'].get('topics', {})

    async def initialize_components(self):
        """Initialize all application components"""
        state = self.app_state
        try:
            # Start event processing
            state.event_manager.start()

            # Initialize database
            state.store = create_store(self.config)
            await state.store.initialize()

            # Realtime hub receives everything through the event manager
            state.hub = FanoutHub(TokenAuthenticator(self.config['auth']), self.config.get('realtime', {}))
            await state.hub.attach(state.event_manager)
            state.hub.start()

            state.router = IngestionRouter(state.store, state.event_manager, self.topics)

            # Initialize Communication Service
            state.communication_service = CommunicationService(self.config)
            await state.communication_service.initialize(
                state.router.handle_message,
                state.router.subscription_patterns
            )

            state.dispatcher = CommandDispatcher(
                state.communication_service,
                state.store,
                state.event_manager,
                self.topics
            )

            state.sweeper = InactivitySweeper(state.store, state.event_manager, self.config['monitor'])
            state.sweeper.start()

            self.logger.info("All components initialized successfully")
        except Exception:
            raise InitializationError(f"Failed to initialize components: {traceback.format_exc()}")

    async def shutdown(self):
        """Gracefully shutdown all components"""
        if self._shutting_down:
            return
        self._shutting_down = True
        self.logger.info("Initiating shutdown sequence")
        state = self.app_state
        try:
            # Ingestion first so nothing new reaches a hub that is closing
            if state.router:
                await state.router.stop()
            if state.hub:
                await state.hub.shutdown()
            if state.sweeper:
                await state.sweeper.stop()
            if state.communication_service:
                await state.communication_service.shutdown()
            if state.event_manager:
                await state.event_manager.stop()
            if state.store:
                await state.store.close()

            self.logger.info("Shutdown completed successfully")
        except Exception:
            self.logger.error(f"Error during shutdown: {traceback.format_exc()}")
        finally:
            self.shutdown_event.set()

    def handle_signals(self):
        """Set up signal handlers for graceful shutdown"""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info(f"Received signal {signum}")
            asyncio.create_task(self.shutdown())

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler, sig)

    async def run(self):
        """Main application entry point"""
        try:
            self.handle_signals()
            await self.initialize_components()
            await self.api_server.start()
        except InitializationError:
            self.logger.error(f"Initialization error: {traceback.format_exc()}")
            await self.shutdown()
            sys.exit(1)
        except Exception:
            self.logger.error(f"Unexpected error: {traceback.format_exc()}")
            await self.shutdown()
            sys.exit(1)
        await self.shutdown()


def create_default_config(config_path: Path):
    """Create default configuration file if it doesn't exist"""
    if not config_path.exists():
        example_config = """
api:
  host: "0.0.0.0"
  port: 8000

communication:
  mqtt:
    enabled: true
    host: "localhost"
    port: 1883
    username: null
    password: null
    client_id: "iot_hub"
    keepalive: 60
    reconnect_interval: 5
    max_reconnect_attempts: 0
    connection_timeout: 90
    subscribe_qos: 1
    publish_qos: 1
    topics:
      sensor_data: "SensorData/#"
      gateway_data: "BLEGatewayData/#"
      ota_response: "OTA/+/response"
      command_request: "CommandRequest/{device_id}"
      ota_update: "OTA/{device_id}/update"

database:
  backend: "sqlite"
  path: "data/iot_hub.db"
  pool_size: 5

auth:
  secret: "change-me"
  algorithm: "HS256"
  expires_in: 86400

monitor:
  inactivity_threshold: 300
  check_interval: 60

realtime:
  heartbeat_interval: 30
  send_timeout: 5
  queue_size: 100

logging:
  level: "INFO"
  file: "logs/iot_hub.log"
  max_size: 10
  backup_count: 5
  format: "%(asctime)s - %(name)s - [%(levelname)s] - %(message)s"
"""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(example_config)
        print(f"Created default config at {config_path}")


def main():
    """Application entry point"""
    config_path = Path(os.environ.get("IOT_HUB_CONFIG", "src/config/default.yml"))
    create_default_config(config_path)

    app = IoTHubApp(str(config_path))
    asyncio.run(app.run())


if __name__ == "__main__":
    main()
