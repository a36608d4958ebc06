# src/greenhouse_gateway/__main__.py
import asyncio
import signal
import sys
import yaml
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Callable, Optional
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from hypercorn.asyncio import serve
from hypercorn.config import Config as HyperConfig
from starlette.exceptions import HTTPException as StarletteHTTPException
import traceback

from greenhouse_gateway.adapters.base import UpstreamPlatform
from greenhouse_gateway.adapters.thingsboard import ThingsBoardClient
from greenhouse_gateway.core.audit import AuditLogger
from greenhouse_gateway.core.control_history import ControlHistoryRecorder
from greenhouse_gateway.core.control_service import ControlService
from greenhouse_gateway.core.notification_engine import NotificationEngine
from greenhouse_gateway.core.rpc_dispatcher import RpcDispatcher
from greenhouse_gateway.api.routes import tb_router
from greenhouse_gateway.api.endpoints.notifications import notification_router
from greenhouse_gateway.api.endpoints.control_history import control_history_router
from greenhouse_gateway.storage.gateway_database import GatewayDatabase
from greenhouse_gateway.utils.helpers import utcnow
from greenhouse_gateway.utils.logging import setup_logging, get_logger
from greenhouse_gateway.utils.exceptions import ConfigurationError, InitializationError

class AppState:
    """Holds application state and components"""
    def __init__(self):
        self.db: Optional[GatewayDatabase] = None
        self.upstream: Optional[UpstreamPlatform] = None
        self.notification_engine: Optional[NotificationEngine] = None
        self.control_history: Optional[ControlHistoryRecorder] = None
        self.control_service: Optional[ControlService] = None
        self.audit: Optional[AuditLogger] = None

async def build_components(config: Dict[str, Any], app_state: AppState,
                           upstream: Optional[UpstreamPlatform] = None,
                           clock: Callable[[], datetime] = utcnow,
                           start_cleanup: bool = True) -> AppState:
    """Open the database and wire the control and notification components"""
    db_config = config['database']
    app_state.db = GatewayDatabase(
        db_config.get('path', 'greenhouse_gateway.db'),
        max_connections=db_config.get('pool_size', 5),
        retention_days=db_config.get('retention_days', 30)
    )
    await app_state.db.initialize(start_cleanup=start_cleanup)

    notification_config = config['notifications']
    app_state.upstream = upstream or ThingsBoardClient(
        app_state.db.directory, config['thingsboard'], clock=clock
    )
    app_state.notification_engine = NotificationEngine(app_state.db, notification_config, clock=clock)
    app_state.control_history = ControlHistoryRecorder(
        app_state.db,
        app_state.notification_engine,
        dismiss_after_seconds=notification_config.get('control_dismiss_seconds', 10)
    )
    app_state.audit = AuditLogger(app_state.db.audit)
    app_state.control_service = ControlService(
        app_state.db.directory,
        RpcDispatcher(app_state.upstream, config['thingsboard']),
        app_state.control_history,
        app_state.audit
    )
    return app_state

class ConfigManager:
    """Manages configuration loading and validation"""

    @staticmethod
    def load_config(config_path: str) -> Dict[str, Any]:
        """Load and validate configuration from YAML file"""
        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f)
                if not isinstance(config, dict):
                    raise ConfigurationError("Configuration file is empty or incorrectly formatted")

                # Validate required configuration sections
                required_sections = ['api', 'database', 'thingsboard', 'notifications', 'logging']
                missing_sections = [section for section in required_sections if section not in config]
                if missing_sections:
                    raise ConfigurationError(f"Missing required configuration sections: {', '.join(missing_sections)}")

                return config
        except yaml.YAMLError:
            raise ConfigurationError(f"Error parsing configuration file: {traceback.format_exc()}")
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {config_path}")

async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})

async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
    )
    return JSONResponse(status_code=400, content={"success": False, "error": errors})

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
                title="Greenhouse Gateway API",
                description="Device control and notification service for greenhouse controllers",
                version="1.0.0"
            )

            # Store app state for dependency injection
            self.app.state.components = self.app_state

            self.app.add_exception_handler(StarletteHTTPException, _http_error_handler)
            self.app.add_exception_handler(RequestValidationError, _validation_error_handler)

            # Register routes
            self.app.include_router(tb_router, prefix="/api")
            self.app.include_router(notification_router, prefix="/api")
            self.app.include_router(control_history_router, prefix="/api")

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

class GreenhouseGatewayApp:
    """Main Greenhouse Gateway application class"""

    def __init__(self, config_path: str):
        self.logger = get_logger("Main App")
        try:
            self.config = ConfigManager.load_config(config_path)
            setup_logging(self.config.get('logging', {}))
        except ConfigurationError:
            self.logger.error(f"Configuration error: {traceback.format_exc()}")
            sys.exit(1)

        self.shutdown_event = asyncio.Event()
        self.app_state = AppState()
        self.api_server = APIServer(self.config, self.shutdown_event, self.app_state)

    async def initialize_components(self):
        """Initialize all application components"""
        try:
            await build_components(self.config, self.app_state)
            self.logger.info("All components initialized successfully")
        except Exception:
            raise InitializationError(f"Failed to initialize components: {traceback.format_exc()}")

    async def shutdown(self):
        """Gracefully shutdown all components"""
        self.logger.info("Initiating shutdown sequence")
        try:
            if self.app_state.upstream:
                await self.app_state.upstream.close()
            if self.app_state.db:
                await self.app_state.db.close()

            self.shutdown_event.set()
            self.logger.info("Shutdown completed successfully")
        except Exception:
            self.logger.error(f"Error during shutdown: {traceback.format_exc()}")

    def handle_signals(self):
        """Set up signal handlers for graceful shutdown"""
        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}")
            asyncio.create_task(self.shutdown())

        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, signal_handler)

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

def create_default_config(config_path: Path):
    """Create default configuration file if it doesn't exist"""
    if not config_path.exists():
        example_config = """
api:
  host: "0.0.0.0"
  port: 8000

database:
  path: "greenhouse_gateway.db"
  pool_size: 5
  retention_days: 30

thingsboard:
  request_timeout: 30
  liveness_timeout: 10
  offline_threshold_seconds: 180
  telemetry_fresh_seconds: 120
  token_lifetime_seconds: 9000
  token_expiry_buffer_seconds: 60
  rpc:
    default_timeout_ms: 5000

notifications:
  timezone: "Asia/Bangkok"
  offline_dedup_minutes: 30
  alert_dedup_minutes: 10
  control_dismiss_seconds: 10
  default_dismiss_seconds: 300

logging:
  level: "INFO"
  file: "logs/greenhouse_gateway.log"
  max_size: 10
  backup_count: 5
  format: "%(asctime)s - %(name)s - [%(levelname)s] - %(message)s"
"""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(example_config)
        print(f"Created default config at {config_path}")

def main():
    """Application entry point"""
    config_path = Path("src/config/default.yml")
    create_default_config(config_path)

    app = GreenhouseGatewayApp(str(config_path))
    asyncio.run(app.run())

if __name__ == "__main__":
    main()
