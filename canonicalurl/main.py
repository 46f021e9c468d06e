"""
Entrypoint: load settings, init logging, bind the shared socket,
start the worker pool and supervise it, handle graceful shutdown.
"""

import signal
import sys

import structlog
import uvicorn

from .config import ConfigError, Settings, load_settings
from .logging_setup import configure_supervisor_logging
from .supervisor import Supervisor, serve_worker, spawn


class CanonicalUrlApp:
    """Supervisor-side application: owns the log sink, the socket and the pool."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.running = False
        self.supervisor = None
        self.log_queue = None
        self.log_listener = None
        self.logger = None

    def _setup_logging(self):
        """Initialize logging; workers forward their records to this process."""
        self.log_queue = spawn.Queue()
        self.log_listener = configure_supervisor_logging(
            self.settings.log,
            self.settings.loglevel,
            rotate=self.settings.rotate,
            queue=self.log_queue,
        )
        self.logger = structlog.get_logger(__name__)
        self.logger.info("logging_initialized", path=self.settings.log, level=self.settings.loglevel)

    def _setup_signal_handlers(self):
        """Setup graceful shutdown signal handlers."""
        def signal_handler(signum, frame):
            self.logger.info("signal_received", signum=signum)
            self.stop_app()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def start_app(self):
        """Bind the socket every worker shares and run the pool until stopped."""
        settings = self.settings
        self.logger.info(
            "starting",
            port=settings.port,
            workers=settings.workers,
            timeout=settings.timeout,
            maxsize=settings.maxsize,
            maxredirects=settings.maxredirects,
            fetch_enabled=settings.fetch_enabled,
            server_timeout_ms=settings.server_timeout_ms,
        )

        bind_config = uvicorn.Config("canonicalurl.server:create_app", host=settings.host, port=settings.port)
        sock = bind_config.bind_socket()

        self.supervisor = Supervisor(
            size=settings.workers,
            target=serve_worker,
            args=(settings, [sock], self.log_queue),
        )
        self.running = True
        try:
            self.supervisor.run()
        finally:
            self.running = False
            sock.close()
            self.logger.info("stopped")
            if self.log_listener:
                self.log_listener.stop()

    def stop_app(self):
        if not self.running:
            return
        self.supervisor.stop()


def main(argv=None):
    """Main entry point for the canonicalurl service."""
    try:
        settings = load_settings(argv)
    except ConfigError as e:
        print(f"canonicalurl: configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    app = CanonicalUrlApp(settings)
    app._setup_logging()
    app._setup_signal_handlers()
    app.start_app()


if __name__ == "__main__":
    main()
