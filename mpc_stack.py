"""
Main MPC stack entry point.
Loads configuration and serves the simulator bridge.
"""

import sys
import logging
from pathlib import Path
from typing import Optional

import yaml

# Add paths
sys.path.insert(0, str(Path(__file__).parent))

from bridge.server import configure_bridge, run_server

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config" / "mpc_config.yaml"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Log to the console and to tmp/logs/mpc_stack.log."""
    if log_file is None:
        log_dir = Path(__file__).parent / 'tmp' / 'logs'
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = str(log_dir / 'mpc_stack.log')

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file)
        ],
        force=True,
    )


def load_config(config_path: Optional[str] = None) -> dict:
    """Load configuration from YAML file or use defaults."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
        logger.info(f"Loaded configuration from {config_path}")
        return config or {}
    else:
        logger.warning(f"Config file not found at {config_path}, using defaults")
        return {}


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description='Run MPC bridge server')
    parser.add_argument('--config', type=str, default=None,
                       help='Path to configuration YAML file (default: config/mpc_config.yaml)')
    parser.add_argument('--host', type=str, default=None,
                       help='Bind address (overrides bridge.host)')
    parser.add_argument('--port', type=int, default=None,
                       help='Listen port (overrides bridge.port)')
    parser.add_argument('--log-level', type=str, default=None,
                       help='Logging level (overrides logging.level)')

    args = parser.parse_args()

    config = load_config(args.config)
    logging_cfg = config.get("logging", {}) or {}
    configure_logging(args.log_level or logging_cfg.get("level", "INFO"),
                      logging_cfg.get("file"))

    bridge_cfg = config.get("bridge", {}) or {}
    host = args.host or bridge_cfg.get("host", "0.0.0.0")
    port = args.port or int(bridge_cfg.get("port", 4567))

    configure_bridge(config)
    run_server(host=host, port=port)


if __name__ == "__main__":
    main()
