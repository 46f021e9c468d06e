"""
load the settings from CLI flags, CANONICALURL_* env vars (and .env),
the JSON/YAML config file and the built-in defaults, in that order
"""

import argparse
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import yaml
from dotenv import load_dotenv

__version__ = "1.0.0"

ENV_PREFIX = "CANONICALURL_"

DEFAULT_CONFIG_FILES = (
    "/etc/canonicalurl/config.json",
    "./canonicalurl.yaml",
    "./canonicalurl.json",
)

USER_AGENT = 'Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)'

LOG_LEVELS = ('debug', 'verbose', 'info', 'warn', 'error')

# added to the inbound request deadline on top of the outbound budget (ms)
SERVER_TIMEOUT_TOLERANCE_MS = 5 * 1000

# older config files and environments name the pool size numcpus
KEY_ALIASES = {'numcpus': 'workers'}


class ConfigError(ValueError):
    """Raised when the configuration sources yield an unusable value."""


def default_values() -> Dict[str, Any]:
    return {
        'host': '0.0.0.0',
        'port': 7171,
        'workers': os.cpu_count() or 1,
        'timeout': 20 * 1000,
        'maxsize': 2 * 1024 * 1024,
        'maxredirects': 4,
        'noget': False,
        'whitelist': './whitelist.txt',
        'shortlist': './shorteners.txt',
        'log': '/tmp/canonicalurl.log',
        'loglevel': 'verbose',
        'rotate': False,
        'user_agent': USER_AGENT,
    }


@dataclass(frozen=True)
class Settings:
    host: str = '0.0.0.0'
    port: int = 7171
    workers: int = 1
    timeout: int = 20 * 1000
    maxsize: int = 2 * 1024 * 1024
    maxredirects: int = 4
    noget: bool = False
    whitelist: Optional[str] = './whitelist.txt'
    shortlist: Optional[str] = './shorteners.txt'
    log: Optional[str] = '/tmp/canonicalurl.log'
    loglevel: str = 'verbose'
    rotate: bool = False
    user_agent: str = USER_AGENT

    def __post_init__(self):
        for name in ('port', 'workers', 'timeout', 'maxsize'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        if not isinstance(self.maxredirects, int) or self.maxredirects < 0:
            raise ConfigError(f"maxredirects must be a non-negative integer, got {self.maxredirects!r}")
        if self.loglevel not in LOG_LEVELS:
            raise ConfigError(f"loglevel must be one of {', '.join(LOG_LEVELS)}, got {self.loglevel!r}")

    @property
    def fetch_enabled(self) -> bool:
        return not self.noget

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000.0

    @property
    def server_timeout_ms(self) -> int:
        """Inbound deadline: every hop of the HEAD (and GET) may use the full timeout."""
        requests = 1 + int(self.fetch_enabled)
        return self.timeout * max(self.maxredirects, 1) * requests + SERVER_TIMEOUT_TOLERANCE_MS


class Config:
    """Configuration loader that layers the config sources into a Settings value."""

    def __init__(self, config_path: str = None, overrides: Dict[str, Any] = None, environ=None):
        """Initialize configuration loader.

        Args:
            config_path: Path to a JSON or YAML config file. If None, the
                        default locations are tried and missing ones skipped.
            overrides: Values taken from the command line, highest precedence.
            environ: Environment mapping, defaults to os.environ.
        """
        self.environ = os.environ if environ is None else environ
        self.config_path = config_path or self.environ.get(ENV_PREFIX + 'CONFIG')
        self.overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
        self._config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load defaults, then config file(s), then environment, then overrides."""
        config = default_values()

        if self.config_path:
            config.update(self._read_file(Path(self.config_path), required=True))
        else:
            for path in DEFAULT_CONFIG_FILES:
                config.update(self._read_file(Path(path), required=False))

        config.update(self._env_overrides(config))
        config.update(self.overrides)
        return config

    def _read_file(self, path: Path, required: bool) -> Dict[str, Any]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            if required:
                raise ConfigError(f"Configuration file not found: {path}")
            return {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid configuration file {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file {path} must hold a mapping")
        return self._resolve_aliases({str(k).lower(): v for k, v in data.items()})

    @staticmethod
    def _resolve_aliases(values: Dict[str, Any]) -> Dict[str, Any]:
        """Fold alias keys onto their canonical name; the canonical key wins."""
        for alias, key in KEY_ALIASES.items():
            if alias in values:
                value = values.pop(alias)
                values.setdefault(key, value)
        return values

    def _env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Pick up CANONICALURL_<KEY> variables for every known key."""
        found = {}
        for key in [*config, *KEY_ALIASES]:
            env_value = self.environ.get(ENV_PREFIX + key.upper())
            if env_value is not None:
                found[key] = self._convert_env_value(env_value)
        return self._resolve_aliases(found)

    def _convert_env_value(self, value: str):
        """Convert environment variable string to appropriate Python type."""
        if value.lower() in ('true', 'false'):
            return value.lower() == 'true'

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def get(self, key: str, default=None):
        return self._config.get(key, default)

    def settings(self) -> Settings:
        """Build the immutable Settings value, dropping keys it does not know."""
        known = Settings.__dataclass_fields__.keys()
        values = {k: v for k, v in self._config.items() if k in known}
        for key in ('whitelist', 'shortlist', 'log'):
            if values.get(key) == '':
                values[key] = None
        return Settings(**values)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='canonicalurl',
        description='Unshortens URLs and extracts canonical (or OpenGraph) URLs.',
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--host', help='Bind address')
    parser.add_argument('--port', type=int, help='Set service port <n>')
    parser.add_argument('--workers', '--numcpus', dest='workers', type=int,
                        help='Number of parallel processes to use')
    parser.add_argument('--timeout', type=int, help='Timeout for HTTP HEAD/GET (ms)')
    parser.add_argument('--maxsize', type=int, help='Max content length for GET (bytes)')
    parser.add_argument('--maxredirects', type=int, help='Max redirects to follow')
    parser.add_argument('--noget', action='store_true', default=None,
                        help='Unshorten with HEAD only, no GET or HTML parsing')
    parser.add_argument('--shortlist', help='Location of the url shorteners list')
    parser.add_argument('--whitelist', help='Location of the white list')
    parser.add_argument('--log', help='Location of the log file to use ("" for stdout)')
    parser.add_argument('--loglevel', choices=LOG_LEVELS, help='Log level e.g. "info"')
    parser.add_argument('--logrotate', dest='rotate', action='store_true', default=None,
                        help='Logs by day')
    parser.add_argument('--config', help='Use specified configuration file')
    return parser


def load_settings(argv: Optional[Sequence[str]] = None, environ=None) -> Settings:
    """Parse the command line and resolve every configuration source."""
    load_dotenv()
    args = vars(build_parser().parse_args(argv))
    config_path = args.pop('config')
    return Config(config_path=config_path, overrides=args, environ=environ).settings()
