#!/usr/bin/env python3
"""
cwlink command line: connect to fldigi, print decoded CW messages as they
are framed, until Ctrl+C.
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional, Tuple

from cwlink.config_manager import ConfigurationManager, ConsoleConfig, CwLinkConfig
from cwlink.link_poller import ConnectionState, UtteranceMetadata
from cwlink.service import LinkService


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='cwlink',
        description='CW link to fldigi: decoded Morse in, guarded CW transmit out',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                  # Defaults, or auto-discovered config
  %(prog)s -c my_config.yaml                # Use specific config file
  %(prog)s --host 192.168.1.20 --port 7362  # fldigi on another machine
  %(prog)s --create-config sample.yaml      # Create sample config file

Configuration:
  Configuration is loaded in this order (later overrides earlier):
  1. Built-in defaults
  2. Configuration file (YAML)
  3. Environment variables (CWLINK_*)
  4. Command line arguments

  Config file search order:
  - cwlink.yaml (current directory)
  - config/cwlink.yaml
  - ~/.config/cwlink/config.yaml
  - /etc/cwlink/config.yaml
        """
    )

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument(
        '-c', '--config',
        type=str,
        help='Configuration file path (YAML format)'
    )
    config_group.add_argument(
        '--create-config',
        type=str,
        metavar='FILE',
        help='Create sample configuration file and exit'
    )
    config_group.add_argument(
        '--save-config',
        type=str,
        metavar='FILE',
        help='Save current configuration to file'
    )

    fldigi_group = parser.add_argument_group('fldigi Connection')
    fldigi_group.add_argument(
        '--host',
        type=str,
        help='fldigi XML-RPC host'
    )
    fldigi_group.add_argument(
        '--port',
        type=int,
        help='fldigi XML-RPC port'
    )

    station_group = parser.add_argument_group('Station')
    station_group.add_argument(
        '--frequency',
        type=float,
        metavar='HZ',
        help='Operating frequency in Hz'
    )
    station_group.add_argument(
        '--callsign',
        type=str,
        help='Station callsign (required for TX)'
    )
    station_group.add_argument(
        '--enable-tx',
        action='store_true',
        help='Allow transmitting (still subject to all TX safety checks)'
    )

    debug_group = parser.add_argument_group('Debug Options')
    debug_group.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose debug output'
    )
    debug_group.add_argument(
        '-q', '--quiet',
        action='store_true',
        help='Quiet mode (minimal output)'
    )

    return parser


def configure_logging(console: ConsoleConfig) -> None:
    if console.verbose:
        logging.basicConfig(level=logging.DEBUG, format='🐛 %(message)s')
    elif console.quiet:
        logging.basicConfig(level=logging.WARNING, format='⚠️  %(message)s')
    else:
        logging.basicConfig(level=logging.INFO, format='ℹ️  %(message)s')


def setup_configuration(argv: Optional[List[str]] = None) -> Tuple[Optional[CwLinkConfig], Optional[int]]:
    """
    Parse arguments and build the effective configuration

    Returns:
        (config, exit_code); exit_code is None when the link should run
    """
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    if args.create_config:
        manager = ConfigurationManager()
        if manager.create_sample_config(args.create_config):
            print(f"Sample configuration created: {args.create_config}")
            print(f"Edit the file and run again with: -c {args.create_config}")
            return None, 0
        return None, 1

    manager = ConfigurationManager()
    manager.load_config(args.config)
    config = manager.merge_cli_args(args)

    is_valid, errors = manager.validate_config()
    if not is_valid:
        print("Configuration errors:")
        for error in errors:
            print(f"  ✗ {error}")
        return None, 1

    if args.save_config:
        if manager.save_config(args.save_config):
            print(f"Configuration saved to: {args.save_config}")

    return config, None


def print_utterance(text: str, peer: str, metadata: UtteranceMetadata) -> None:
    print(f"[{peer}] {text}", flush=True)


def print_connection_change(state: ConnectionState) -> None:
    if state is ConnectionState.CONNECTED:
        print("✅ Connected to fldigi", flush=True)
    elif state is ConnectionState.RECONNECTING:
        print("🔄 fldigi unreachable, retrying...", flush=True)


async def run(config: CwLinkConfig) -> None:
    """Run the link until cancelled"""
    service = LinkService(
        config,
        on_utterance=print_utterance,
        on_connection_change=print_connection_change,
    )
    await service.start()
    try:
        await asyncio.Event().wait()
    finally:
        await service.stop()


def main(argv: Optional[List[str]] = None) -> int:
    config, exit_code = setup_configuration(argv)
    if exit_code is not None:
        return exit_code

    configure_logging(config.console)

    print("-=" * 30)
    print(f"CW link: {config.frequency / 1e6:.4f} MHz {config.mode}")
    print(f"fldigi: {config.fldigi.host}:{config.fldigi.port}")
    print(f"TX: {'enabled as ' + config.tx.callsign if config.tx.enabled else 'disabled'}")
    print("⌨️  Press Ctrl+C to exit")
    print("-=" * 30)

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        print("\n🛑 CW link shutting down...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
