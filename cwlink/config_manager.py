#!/usr/bin/env python3
"""
Configuration system for the CW link
Supports YAML files, environment overrides, CLI overrides, and programmatic access

Resolution order (later overrides earlier):
1. Built-in defaults
2. Configuration file (YAML)
3. Environment variables (CWLINK_*)
4. Command line arguments
"""

import argparse
import logging
import math
import os
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from cwlink.callsign import is_callsign


PTT_METHODS = ("cat", "vox", "serial", "none")


@dataclass
class FldigiConfig:
    """Where the decoder lives and how often we poll it"""
    host: str = "127.0.0.1"
    port: int = 7362
    polling_interval: float = 0.25  # seconds between RX buffer polls
    timeout: float = 5.0            # per XML-RPC call, seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            'host': self.host,
            'port': self.port,
            'polling_interval': self.polling_interval,
            'timeout': self.timeout,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FldigiConfig':
        return cls(
            host=data.get('host', '127.0.0.1'),
            port=data.get('port', 7362),
            polling_interval=data.get('polling_interval', 0.25),
            timeout=data.get('timeout', 5.0),
        )


@dataclass
class TransmitConfig:
    """Transmit settings. TX is off unless explicitly enabled."""
    enabled: bool = False
    inhibit: bool = False
    max_duration_seconds: float = 120
    wpm: int = 20                # default speed when no RX speed is known
    callsign: str = ""
    ptt_method: str = "none"     # cat, vox, serial, none

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'inhibit': self.inhibit,
            'max_duration_seconds': self.max_duration_seconds,
            'wpm': self.wpm,
            'callsign': self.callsign,
            'ptt_method': self.ptt_method,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransmitConfig':
        return cls(
            enabled=data.get('enabled', False),
            inhibit=data.get('inhibit', False),
            max_duration_seconds=data.get('max_duration_seconds', 120),
            wpm=data.get('wpm', 20),
            callsign=normalize_callsign(data.get('callsign', '')),
            ptt_method=data.get('ptt_method', 'none'),
        )


@dataclass
class ConsoleConfig:
    """Console messages logging level configuration"""
    verbose: bool = False
    quiet: bool = False


@dataclass
class CwLinkConfig:
    """Complete configuration for one decoder link"""
    frequency: float = 7030000.0  # Hz
    mode: str = "CW"

    fldigi: FldigiConfig = field(default_factory=FldigiConfig)
    tx: TransmitConfig = field(default_factory=TransmitConfig)
    console: ConsoleConfig = field(default_factory=ConsoleConfig)

    config_version: str = "1.0"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for YAML serialization"""
        return {
            'config_version': self.config_version,
            'station': {
                'frequency': self.frequency,
                'mode': self.mode,
            },
            'fldigi': self.fldigi.to_dict(),
            'tx': self.tx.to_dict(),
            'console': {
                'verbose': self.console.verbose,
                'quiet': self.console.quiet,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CwLinkConfig':
        """Create from dictionary (YAML loading). Missing sections keep defaults."""
        config = cls()

        if 'config_version' in data:
            config.config_version = str(data['config_version'])

        station = data.get('station') or {}
        config.frequency = station.get('frequency', config.frequency)
        config.mode = station.get('mode', config.mode)

        if 'fldigi' in data:
            config.fldigi = FldigiConfig.from_dict(data['fldigi'] or {})

        if 'tx' in data:
            config.tx = TransmitConfig.from_dict(data['tx'] or {})

        if 'console' in data:
            console_data = data['console'] or {}
            config.console.verbose = console_data.get('verbose', False)
            config.console.quiet = console_data.get('quiet', False)

        return config


def normalize_callsign(callsign: Optional[str]) -> str:
    return (callsign or "").upper().strip()


# ─── Environment overrides ──────────────────────────────────────────

def _env_string(env: Mapping[str, str], key: str) -> Optional[str]:
    value = env.get(key)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _env_float(env: Mapping[str, str], key: str) -> Optional[float]:
    value = _env_string(env, key)
    if value is None:
        return None
    try:
        parsed = float(value)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def _env_int(env: Mapping[str, str], key: str) -> Optional[int]:
    value = _env_string(env, key)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _env_bool(env: Mapping[str, str], key: str) -> Optional[bool]:
    value = _env_string(env, key)
    if value is None:
        return None
    if value == "1" or value.lower() == "true":
        return True
    if value == "0" or value.lower() == "false":
        return False
    return None


def apply_env_overrides(config: CwLinkConfig, env: Optional[Mapping[str, str]] = None) -> CwLinkConfig:
    """Apply CWLINK_* environment variables. Unparseable values are ignored."""
    env = os.environ if env is None else env

    overrides = {
        'frequency': _env_float(env, "CWLINK_FREQUENCY"),
        'mode': _env_string(env, "CWLINK_MODE"),
        'fldigi.host': _env_string(env, "CWLINK_FLDIGI_HOST"),
        'fldigi.port': _env_int(env, "CWLINK_FLDIGI_PORT"),
        'fldigi.polling_interval': _env_float(env, "CWLINK_FLDIGI_POLLING_INTERVAL"),
        'tx.enabled': _env_bool(env, "CWLINK_TX_ENABLED"),
        'tx.inhibit': _env_bool(env, "CWLINK_TX_INHIBIT"),
        'tx.max_duration_seconds': _env_float(env, "CWLINK_TX_MAX_DURATION_SECONDS"),
        'tx.wpm': _env_int(env, "CWLINK_TX_WPM"),
        'tx.callsign': _env_string(env, "CWLINK_TX_CALLSIGN"),
        'tx.ptt_method': _env_string(env, "CWLINK_TX_PTT_METHOD"),
    }

    ptt_method = overrides['tx.ptt_method']
    if ptt_method is not None:
        overrides['tx.ptt_method'] = ptt_method.lower() if ptt_method.lower() in PTT_METHODS else None

    for key, value in overrides.items():
        if value is not None:
            _set_nested_attr(config, key, value)

    config.tx.callsign = normalize_callsign(config.tx.callsign)
    return config


def _set_nested_attr(obj, attr_path: str, value):
    """Set nested attribute using dot notation"""
    parts = attr_path.split('.')
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


class ConfigurationManager:
    """
    Manages configuration loading, merging, and validation
    """

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        self.config = CwLinkConfig()
        self.config_file_path: Optional[Path] = None
        self.env = env

        self.logger = logging.getLogger(__name__)

        # Standard config file locations (in order of preference)
        self.config_search_paths = [
            Path.cwd() / "cwlink.yaml",
            Path.cwd() / "config" / "cwlink.yaml",
            Path.home() / ".config" / "cwlink" / "config.yaml",
            Path("/etc/cwlink/config.yaml"),
        ]

    def load_config(self, config_file: Optional[str] = None) -> CwLinkConfig:
        """
        Load configuration from file with fallback chain, then apply
        environment overrides

        Args:
            config_file: Specific config file path, or None for auto-discovery

        Returns:
            Loaded configuration object (defaults if nothing usable was found)
        """
        if config_file:
            config_path = Path(config_file)
            if config_path.exists():
                self.config = self._load_yaml_file(config_path)
                self.config_file_path = config_path
                self.logger.info(f"Loaded config from: {config_path}")
            else:
                self.logger.warning(f"Config file not found: {config_path}")
                self.logger.info("Using default configuration")
        else:
            for path in self.config_search_paths:
                if path.exists():
                    self.config = self._load_yaml_file(path)
                    self.config_file_path = path
                    self.logger.info(f"Auto-discovered config: {path}")
                    break
            else:
                self.logger.info("No config file found, using defaults")

        apply_env_overrides(self.config, self.env)
        return self.config

    def _load_yaml_file(self, file_path: Path) -> CwLinkConfig:
        """Load configuration from YAML file. Bad files fall back to defaults."""
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                yaml_data = yaml.safe_load(f) or {}
            if not isinstance(yaml_data, dict):
                self.logger.error(f"Config file {file_path} is not a mapping, using defaults")
                return CwLinkConfig()
            return CwLinkConfig.from_dict(yaml_data)

        except (OSError, yaml.YAMLError, AttributeError, TypeError) as e:
            self.logger.error(f"Error loading config file {file_path}: {e}")
            return CwLinkConfig()

    def merge_cli_args(self, args: argparse.Namespace) -> CwLinkConfig:
        """
        Merge CLI arguments into configuration (CLI takes precedence)

        Args:
            args: Parsed command line arguments

        Returns:
            Updated configuration
        """
        if getattr(args, 'host', None):
            self.config.fldigi.host = args.host
        if getattr(args, 'port', None) is not None:
            self.config.fldigi.port = args.port
        if getattr(args, 'frequency', None) is not None:
            self.config.frequency = args.frequency
        if getattr(args, 'callsign', None):
            self.config.tx.callsign = normalize_callsign(args.callsign)
        if getattr(args, 'enable_tx', False):
            self.config.tx.enabled = True
        if getattr(args, 'verbose', False):
            self.config.console.verbose = True
        if getattr(args, 'quiet', False):
            self.config.console.quiet = True

        return self.config

    def validate_config(self) -> Tuple[bool, List[str]]:
        """
        Validate configuration for common issues

        Returns:
            (is_valid, list_of_errors)
        """
        errors = []
        config = self.config

        if not _is_number(config.frequency) or config.frequency <= 0:
            errors.append("Frequency must be a positive number (Hz)")

        if not config.mode:
            errors.append("Mode is required (e.g. 'CW')")

        if not config.fldigi.host or not str(config.fldigi.host).strip():
            errors.append("fldigi host is required")

        if not isinstance(config.fldigi.port, int) or not (1 <= config.fldigi.port <= 65535):
            errors.append(f"Invalid fldigi port: {config.fldigi.port}")

        if not _is_number(config.fldigi.polling_interval) or config.fldigi.polling_interval < 0.05:
            errors.append("Polling interval must be at least 0.05 seconds")

        if config.tx.enabled and not config.tx.callsign:
            errors.append("Callsign is required when TX is enabled")
        elif config.tx.callsign and not is_callsign(config.tx.callsign):
            errors.append(f"Callsign must match amateur radio format (e.g. PA3XYZ): {config.tx.callsign}")

        if not isinstance(config.tx.wpm, int) or not (5 <= config.tx.wpm <= 60):
            errors.append(f"WPM must be between 5 and 60: {config.tx.wpm}")

        if not _is_number(config.tx.max_duration_seconds) or config.tx.max_duration_seconds < 1:
            errors.append("Max TX duration must be at least 1 second")

        if config.tx.ptt_method not in PTT_METHODS:
            errors.append(f"Invalid ptt_method: {config.tx.ptt_method}. Must be one of {', '.join(PTT_METHODS)}")

        return len(errors) == 0, errors

    def get_config(self) -> CwLinkConfig:
        """Get a copy of the current configuration"""
        return deepcopy(self.config)

    def save_config(self, file_path: Optional[str] = None) -> bool:
        """
        Save current configuration to YAML file

        Args:
            file_path: Target file path, or None to use loaded file path

        Returns:
            True if saved successfully
        """
        if file_path:
            target_path = Path(file_path)
        elif self.config_file_path:
            target_path = self.config_file_path
        else:
            target_path = Path("cwlink.yaml")

        try:
            target_path.parent.mkdir(parents=True, exist_ok=True)

            with open(target_path, 'w', encoding='utf-8') as f:
                f.write("# CW link configuration\n")
                f.write(f"# Version: {self.config.config_version}\n\n")
                yaml.dump(self.config.to_dict(), f,
                          default_flow_style=False,
                          sort_keys=False,
                          indent=2)

            self.logger.info(f"Configuration saved to: {target_path}")
            return True

        except OSError as e:
            self.logger.error(f"Error saving config to {target_path}: {e}")
            return False

    def create_sample_config(self, file_path: str = "cwlink_sample.yaml") -> bool:
        """Create a sample configuration file with comments"""
        try:
            with open(file_path, 'w', encoding='utf-8') as f:
                f.write(self._generate_sample_yaml())
            self.logger.info(f"Sample configuration created: {file_path}")
            return True

        except OSError as e:
            self.logger.error(f"Error creating sample config: {e}")
            return False

    def _generate_sample_yaml(self) -> str:
        """Generate sample YAML with comments"""
        return """# CW link configuration file

# =============================================================================
# STATION SETTINGS
# =============================================================================
station:
  frequency: 7030000              # Operating frequency (Hz)
  mode: "CW"                      # fldigi modem name

# =============================================================================
# DECODER CONNECTION
# =============================================================================
fldigi:
  host: "127.0.0.1"               # fldigi XML-RPC host
  port: 7362                      # fldigi XML-RPC port
  polling_interval: 0.25          # Seconds between RX buffer polls
  timeout: 5.0                    # Per-call timeout (seconds)

# =============================================================================
# TRANSMIT SETTINGS
# =============================================================================
tx:
  enabled: false                  # Transmit is off unless explicitly enabled
  inhibit: false                  # Start with TX inhibited
  callsign: ""                    # Your station callsign (required for TX)
  wpm: 20                         # Default speed when no RX speed is detected (5-60)
  max_duration_seconds: 120       # Watchdog: abort any transmission after this long
  ptt_method: "none"              # cat, vox, serial, none

# =============================================================================
# CONSOLE MESSAGES LOGGING LEVEL
# =============================================================================
console:
  verbose: false                  # Verbose output (more detail)
  quiet: false                    # Quiet mode (minimal output)

config_version: "1.0"
"""


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)
